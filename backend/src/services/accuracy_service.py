"""
Prediction Accuracy Service
Scores each model (and the ensemble average) against backfilled actuals.
"""
import math
import logging
from collections import defaultdict
from typing import Dict, List, Sequence

from models.schemas import AccuracyMetrics, PredictionRecord

logger = logging.getLogger(__name__)


class AccuracyService:
    """
    Computes accuracy metrics from ledger records.

    Only records with a backfilled actual value are scored. Errors are in mg/dL.
    """

    def __init__(self, close_threshold: float = 10.0, near_threshold: float = 20.0):
        self.close_threshold = close_threshold
        self.near_threshold = near_threshold

    def evaluate(self, records: Sequence[PredictionRecord]) -> List[AccuracyMetrics]:
        """
        Group scored records by model index and compute metrics.

        Returns:
            One AccuracyMetrics per model index, aggregate (index 0) first
        """
        errors: Dict[int, List[float]] = defaultdict(list)
        names: Dict[int, str] = {}
        for record in records:
            if not record.has_actual:
                continue
            errors[record.modelIndex].append(abs(record.predictedValueMgdl - record.actualBgMgdl))
            names[record.modelIndex] = record.modelName

        metrics = [
            self._calculate_metrics(index, names[index], errors[index])
            for index in sorted(errors)
        ]
        logger.debug(f"Accuracy evaluated for {len(metrics)} models")
        return metrics

    def _calculate_metrics(self, model_index: int, model_name: str, errors: List[float]) -> AccuracyMetrics:
        """Calculate accuracy metrics from an error list."""
        n = len(errors)
        mae = sum(errors) / n
        rmse = math.sqrt(sum(e ** 2 for e in errors) / n)
        within_10 = sum(1 for e in errors if e <= self.close_threshold) / n * 100
        within_20 = sum(1 for e in errors if e <= self.near_threshold) / n * 100

        return AccuracyMetrics(
            modelIndex=model_index,
            modelName=model_name,
            mae=round(mae, 1),
            rmse=round(rmse, 1),
            within_10_pct=round(within_10, 1),
            within_20_pct=round(within_20, 1),
            sample_count=n
        )
