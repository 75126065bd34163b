"""
Random Forest Inference
Tabular change model: summarizes the recent window into 32 features and
predicts the 20-minute glucose change in mg/dL.
"""
import pickle
import logging
from pathlib import Path
from typing import List, Optional

import numpy as np

from ..models.model_specs import ModelSpec, RANDOM_FOREST_SPEC
from models.schemas import MGDL_PER_MMOL
from services.exceptions import ModelInferenceFailure

logger = logging.getLogger(__name__)


GLUCOSE_STATS_MIN = 40.0   # mg/dL
GLUCOSE_STATS_MAX = 500.0
DOSE_LOOKBACK_STEPS = 8
RATE_STEPS = (1, 2, 3, 4)  # 5, 10, 15, 20 minutes
STEP_MINUTES = 5

RANDOM_FOREST_FEATURE_NAMES = [
    "glucose_current", "glucose_mean", "glucose_std", "glucose_median", "glucose_iqr",
    "rate_5min", "rate_10min", "rate_15min", "rate_20min", "acceleration", "short_trend",
    "carbs_last", "carbs_sum", "carbs_max", "carbs_mean", "carbs_change",
    "insulin_last", "insulin_sum", "insulin_max", "insulin_mean", "insulin_change",
    "hr_last", "hr_sum", "hr_max", "hr_mean", "hr_change",
    "hour_sin", "hour_cos", "day_sin", "day_cos", "hour", "weekday",
]


def _signal_summary(values: np.ndarray, default: float) -> List[float]:
    """last, sum, max, mean and change over the trailing lookback."""
    recent = values[-DOSE_LOOKBACK_STEPS:]
    if len(recent) == 0:
        return [default, 0.0, default, default, 0.0]
    return [
        float(recent[-1]),
        float(recent.sum()),
        float(recent.max()),
        float(recent.mean()),
        float(recent[-1] - recent[0]),
    ]


def extract_change_features(window: np.ndarray, spec: ModelSpec = RANDOM_FOREST_SPEC) -> np.ndarray:
    """
    Build the 32-feature tabular vector from a [T, 6] window.

    Columns follow spec.feature_columns: glucose (mmol/L), carbs, insulin,
    heart rate (bpm), hour of day, weekday.

    Returns:
        Float64 array of shape (32,)
    """
    columns = list(spec.feature_columns)
    glucose = window[:, columns.index("blood_glucose")] * MGDL_PER_MMOL
    carbs = window[:, columns.index("carbs_on_board")]
    insulin = window[:, columns.index("insulin_on_board")]
    heart_rate = window[:, columns.index("heart_rate_bpm")]
    hour = float(window[-1, columns.index("hour_of_day")])
    weekday = float(window[-1, columns.index("weekday")])

    valid = glucose[(glucose >= GLUCOSE_STATS_MIN) & (glucose <= GLUCOSE_STATS_MAX)]
    if len(valid) == 0:
        valid = np.array([glucose[-1]])
    q75, q25 = np.percentile(valid, [75, 25])
    stats = [
        float(valid[-1]),
        float(valid.mean()),
        float(valid.std()),
        float(np.median(valid)),
        float(q75 - q25),
    ]

    rates = []
    for steps in RATE_STEPS:
        if len(valid) > steps:
            rates.append(float(valid[-1] - valid[-1 - steps]) / (steps * STEP_MINUTES))
        else:
            rates.append(0.0)
    if len(valid) > 2:
        previous_rate = float(valid[-2] - valid[-3]) / STEP_MINUTES
        acceleration = rates[0] - previous_rate
    else:
        acceleration = 0.0
    tail = valid[-4:]
    short_trend = float(np.polyfit(np.arange(len(tail)), tail, 1)[0]) if len(tail) >= 2 else 0.0

    time_features = [
        np.sin(2 * np.pi * hour / 24),
        np.cos(2 * np.pi * hour / 24),
        np.sin(2 * np.pi * weekday / 7),
        np.cos(2 * np.pi * weekday / 7),
        hour,
        weekday,
    ]

    features = (
        stats
        + rates + [acceleration, short_trend]
        + _signal_summary(carbs, 0.0)
        + _signal_summary(insulin, 0.0)
        + _signal_summary(heart_rate, 70.0)
        + time_features
    )
    return np.asarray(features, dtype=np.float64)


class RandomForestPredictor:
    """
    Predictor backed by a pickled scikit-learn regressor and feature scaler.

    The orchestrator's input scaling is the identity for this member; the
    fitted StandardScaler is applied to the tabular features instead.
    """

    def __init__(
        self,
        spec: ModelSpec = RANDOM_FOREST_SPEC,
        model_path: Optional[Path] = None,
        scaler_path: Optional[Path] = None,
        model=None,
        feature_scaler=None
    ):
        self.spec = spec
        self.model_path = model_path
        self.scaler_path = scaler_path
        self.model = model
        self.feature_scaler = feature_scaler

    def load(self) -> bool:
        """
        Load regressor and feature scaler from disk.

        Returns:
            True if loading successful, False otherwise
        """
        if not self.model_path or not self.model_path.exists():
            logger.warning(f"Random forest model not found at {self.model_path}")
            return False

        try:
            with open(self.model_path, 'rb') as f:
                self.model = pickle.load(f)
            logger.info("Random forest model loaded")

            if self.scaler_path and self.scaler_path.exists():
                with open(self.scaler_path, 'rb') as f:
                    self.feature_scaler = pickle.load(f)
                logger.info("Random forest feature scaler loaded")
            else:
                logger.warning(f"Feature scaler not found at {self.scaler_path}, using raw features")
            return True
        except (OSError, pickle.UnpicklingError) as e:
            logger.error(f"Failed to load random forest: {e}", exc_info=True)
            return False

    @property
    def is_loaded(self) -> bool:
        return self.model is not None

    def predict(self, inputs: np.ndarray) -> float:
        """
        Predict the 20-minute glucose change.

        Returns:
            Change in mg/dL
        """
        if not self.is_loaded:
            raise ModelInferenceFailure(self.spec.index, "model not loaded")

        features = extract_change_features(np.asarray(inputs, dtype=np.float64), self.spec)
        row = features.reshape(1, -1)
        if self.feature_scaler is not None:
            row = self.feature_scaler.transform(row)
        prediction = self.model.predict(row)
        return float(np.asarray(prediction).reshape(-1)[0])


def create_random_forest_predictor(models_dir: Path) -> Optional[RandomForestPredictor]:
    """
    Factory function to create and load the random forest member.

    Returns:
        Loaded predictor, or None if the artifact is unavailable
    """
    predictor = RandomForestPredictor(
        model_path=models_dir / RANDOM_FOREST_SPEC.artifact,
        scaler_path=models_dir / "random_forest_scaler.pkl",
    )
    if not predictor.load():
        logger.warning("Random forest unavailable - excluded from ensemble")
        return None
    return predictor
