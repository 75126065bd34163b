"""
Ensemble Prediction Orchestrator
Fans a feature window out to every ensemble member, tolerates per-model
failure and averages the survivors in absolute glucose space.
"""
import math
import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from ml.feature_engineering import FeatureWindow
from ml.inference.predictor import Predictor
from ml.models.model_specs import ModelSpec
from ml.scaling import ModelScaler
from models.schemas import (
    DoseTiming,
    EnsembleResult,
    PredictionRecord,
    mgdl_to_mmol,
    mmol_to_mgdl,
)
from services.exceptions import ModelInferenceFailure, NoValidPredictions

logger = logging.getLogger(__name__)


DEFAULT_MODEL_TIMEOUT_SECONDS = 5.0
CYCLE_DEADLINE_REASON = "cycle deadline exceeded"


@dataclass(frozen=True)
class EnsembleMember:
    """A predictor paired with the scaler built from its spec."""
    predictor: Predictor
    scaler: ModelScaler = field(default=None)

    def __post_init__(self):
        if self.scaler is None:
            object.__setattr__(self, "scaler", ModelScaler.from_spec(self.predictor.spec))

    @property
    def spec(self) -> ModelSpec:
        return self.predictor.spec

    @property
    def index(self) -> int:
        return self.predictor.spec.index


class EnsembleOrchestrator:
    """
    Runs N independent models concurrently against private copies of one window.

    max_concurrency bounds how many members run at once (None = all,
    1 = strictly sequential). Each inference call runs in an executor thread
    under a per-model timeout. A timed-out thread is abandoned, not killed.
    """

    def __init__(
        self,
        members: Iterable[EnsembleMember],
        max_concurrency: Optional[int] = None,
        model_timeout_seconds: float = DEFAULT_MODEL_TIMEOUT_SECONDS,
        executor: Optional[Executor] = None
    ):
        self.members: List[EnsembleMember] = sorted(members, key=lambda m: m.index)
        indices = [m.index for m in self.members]
        if len(set(indices)) != len(indices):
            raise ValueError(f"Duplicate model indices in ensemble: {indices}")
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.model_timeout_seconds = model_timeout_seconds
        self._executor = executor

    @classmethod
    def from_predictors(cls, predictors: Iterable[Predictor], **kwargs) -> "EnsembleOrchestrator":
        return cls([EnsembleMember(p) for p in predictors], **kwargs)

    @property
    def model_count(self) -> int:
        return len(self.members)

    async def _run_member(
        self,
        member: EnsembleMember,
        window: FeatureWindow,
        current_bg_mmol: float,
        semaphore: asyncio.Semaphore
    ) -> Tuple[float, float]:
        """Returns (raw output, clamped absolute mmol/L)."""
        async with semaphore:
            inputs = window.model_input(member.spec)  # private copy
            scaled = member.scaler.normalize(inputs)

            loop = asyncio.get_running_loop()
            try:
                raw = await asyncio.wait_for(
                    loop.run_in_executor(self._executor, member.predictor.predict, scaled),
                    timeout=self.model_timeout_seconds
                )
            except asyncio.TimeoutError:
                raise ModelInferenceFailure(
                    member.index, f"timed out after {self.model_timeout_seconds}s"
                ) from None
            except ModelInferenceFailure:
                raise
            except Exception as e:
                raise ModelInferenceFailure(member.index, f"{type(e).__name__}: {e}") from e

        try:
            raw = float(raw)
        except (TypeError, ValueError):
            raise ModelInferenceFailure(member.index, f"malformed output {raw!r}") from None
        if not math.isfinite(raw):
            raise ModelInferenceFailure(member.index, f"non-finite output {raw}")

        return raw, member.scaler.denormalize(raw, current_bg_mmol)

    async def run_ensemble(
        self,
        window: FeatureWindow,
        current_bg_mgdl: float,
        timestamp: Optional[datetime] = None,
        cycle_timeout: Optional[float] = None
    ) -> EnsembleResult:
        """
        Run every member and average the survivors.

        Only `cycle_timeout` keeps partial results: members finished by the
        deadline are averaged. External cancellation of this coroutine cancels
        every member and discards results already computed.

        Args:
            window: Shared read-only window for this cycle
            current_bg_mgdl: Glucose at prediction time
            timestamp: Cycle timestamp (default: window.built_at)
            cycle_timeout: Whole-cycle deadline; unfinished members count as failed

        Returns:
            EnsembleResult built from the successful members

        Raises:
            NoValidPredictions: If no member succeeded
        """
        timestamp = timestamp or window.built_at or datetime.now(timezone.utc)
        current_bg_mmol = mgdl_to_mmol(current_bg_mgdl)
        failures: Dict[int, str] = {}

        if not self.members:
            raise NoValidPredictions(failures)

        semaphore = asyncio.Semaphore(self.max_concurrency or len(self.members))
        tasks = {
            asyncio.ensure_future(self._run_member(member, window, current_bg_mmol, semaphore)): member
            for member in self.members
        }

        try:
            done, pending = await asyncio.wait(tasks.keys(), timeout=cycle_timeout)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if pending:
            for task in pending:
                task.cancel()
                failures[tasks[task].index] = CYCLE_DEADLINE_REASON
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cycle deadline hit with {len(pending)} models unfinished")

        predictions: Dict[int, float] = {}
        raw_outputs: Dict[int, float] = {}
        for task in done:
            member = tasks[task]
            error = task.exception()
            if error is not None:
                failures[member.index] = str(error)
                logger.warning(f"{member.spec.name} excluded from ensemble: {error}")
                continue
            raw_outputs[member.index], predictions[member.index] = task.result()

        if not predictions:
            logger.error(f"All {len(self.members)} ensemble models failed")
            raise NoValidPredictions(failures)

        ordered = [predictions[i] for i in sorted(predictions)]
        average = sum(ordered) / len(ordered)

        logger.info(
            f"Ensemble: {len(predictions)}/{len(self.members)} models, "
            f"average {average:.2f} mmol/L ({mmol_to_mgdl(average):.0f} mg/dL)"
        )
        return EnsembleResult(
            timestamp=timestamp,
            currentBgMmol=current_bg_mmol,
            predictions=dict(sorted(predictions.items())),
            rawOutputs=dict(sorted(raw_outputs.items())),
            modelNames={m.index: m.spec.name for m in self.members if m.index in predictions},
            failures=failures,
            averageMmol=average,
            usedFallback=window.used_fallback,
        )


def build_records(
    result: EnsembleResult,
    cycle_id: str,
    timing: Optional[DoseTiming] = None,
    horizon_minutes: int = 20,
    patient_id: str = "default"
) -> List[PredictionRecord]:
    """
    One record per successful model plus the aggregate (modelIndex 0).

    All records share the cycle timestamp and cycle id; the ledger assigns
    their shared sequenceCount. The aggregate's rawOutput is the mean delta.
    """
    timing = timing or DoseTiming()
    current_mgdl = mmol_to_mgdl(result.currentBgMmol)
    common = dict(
        patientId=patient_id,
        cycleId=cycle_id,
        timestamp=result.timestamp,
        currentBgMmol=result.currentBgMmol,
        currentBgMgdl=current_mgdl,
        horizonMinutes=horizon_minutes,
        usedFallback=result.usedFallback,
        lastCarbTimestamp=timing.lastCarbTimestamp,
        lastInsulinTimestamp=timing.lastInsulinTimestamp,
    )

    records = [
        PredictionRecord(
            rawOutput=result.rawOutputs[index],
            predictedValueMmol=value,
            predictedValueMgdl=mmol_to_mgdl(value),
            modelIndex=index,
            modelName=result.modelNames.get(index, f"model{index}"),
            isAggregate=False,
            modelCount=1,
            **common
        )
        for index, value in sorted(result.predictions.items())
    ]
    records.append(
        PredictionRecord(
            rawOutput=result.averageMmol - result.currentBgMmol,
            predictedValueMmol=result.averageMmol,
            predictedValueMgdl=result.average_mgdl,
            modelIndex=0,
            modelName="average",
            isAggregate=True,
            modelCount=result.model_count,
            **common
        )
    )
    return records
