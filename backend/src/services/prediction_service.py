"""
Prediction Service
Runs one ensemble prediction cycle end to end: window build with
primary/secondary source fallback, ensemble inference, ledger append and
notification.
"""
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Tuple
from uuid import uuid4

from config import Settings
from database.cosmos_client import CosmosDBManager
from database.repositories import (
    DoseCacheRepository,
    InMemoryPredictionStore,
    PredictionRepository,
    SampleCacheRepository,
)
from ml.feature_engineering import FeatureWindow, FeatureWindowBuilder
from ml.inference.random_forest_inference import create_random_forest_predictor
from ml.inference.wavenet_inference import create_wavenet_predictors
from models.schemas import (
    AccuracyMetrics,
    CycleResult,
    DoseKind,
    DoseTiming,
    PredictionEvent,
    PredictionRecord,
    SignalKind,
)
from services.accuracy_service import AccuracyService
from services.cache_source import LocalCacheSource
from services.ensemble_service import EnsembleOrchestrator, build_records
from services.exceptions import DataUnavailable
from services.ledger_service import PredictionLedger
from services.nightscout_service import NightscoutService
from services.notification_service import (
    LoggingNotificationSink,
    NotificationSink,
    create_notification_sink,
    deliver,
)
from services.time_series_source import InMemoryTimeSeriesSource, TimeSeriesSourceAdapter

logger = logging.getLogger(__name__)


class PredictionService:
    """
    Orchestrates prediction cycles over a primary and a secondary source.

    The primary source is tried first. On any error the whole window is
    rebuilt from the secondary, never mixing the two within one cycle.
    """

    def __init__(
        self,
        primary: Optional[TimeSeriesSourceAdapter],
        secondary: Optional[TimeSeriesSourceAdapter],
        builder: FeatureWindowBuilder,
        orchestrator: EnsembleOrchestrator,
        ledger: PredictionLedger,
        sink: Optional[NotificationSink] = None,
        accuracy: Optional[AccuracyService] = None,
        cycle_timeout_seconds: Optional[float] = 60.0,
        min_full_ensemble_models: int = 3,
        carb_lookback_hours: float = 5.0,
        insulin_lookback_hours: float = 4.0,
        export_timezone: str = "UTC",
        patient_id: str = "default"
    ):
        if primary is None and secondary is None:
            raise ValueError("At least one time series source is required")
        self.primary = primary
        self.secondary = secondary
        self.builder = builder
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.sink = sink or LoggingNotificationSink()
        self.accuracy = accuracy or AccuracyService()
        self.cycle_timeout_seconds = cycle_timeout_seconds
        self.min_full_ensemble_models = min_full_ensemble_models
        self.carb_lookback_hours = carb_lookback_hours
        self.insulin_lookback_hours = insulin_lookback_hours
        self.export_timezone = export_timezone
        self.patient_id = patient_id
        self.cosmos_manager: Optional[CosmosDBManager] = None

    @property
    def ready(self) -> bool:
        """True when at least one model is loaded."""
        return self.orchestrator.model_count > 0

    async def _inputs_from(
        self,
        source: TimeSeriesSourceAdapter,
        now: datetime
    ) -> Tuple[FeatureWindow, float, DoseTiming]:
        window = await self.builder.build_window(now, source, allow_defaults=source.is_fallback)
        current_bg = await source.fetch_latest(SignalKind.GLUCOSE, now)
        timing = await self.dose_timing(source, now)
        return window, current_bg, timing

    async def build_inputs(
        self,
        now: datetime
    ) -> Tuple[TimeSeriesSourceAdapter, FeatureWindow, float, DoseTiming]:
        """
        Build the cycle's window, current glucose and dose timing from a single source.

        Returns:
            (source used, window, current BG in mg/dL, dose timing)

        Raises:
            DataUnavailable: If neither source yields usable inputs
        """
        if self.primary is not None:
            try:
                window, current_bg, timing = await self._inputs_from(self.primary, now)
                return self.primary, window, current_bg, timing
            except DataUnavailable:
                if self.secondary is None:
                    raise
                logger.warning(f"No data from {self.primary.name}, using {self.secondary.name}")
            except Exception as e:
                if self.secondary is None:
                    raise DataUnavailable(f"Source {self.primary.name} failed: {e}") from e
                logger.warning(f"Primary source {self.primary.name} failed ({e}), using {self.secondary.name}")

        try:
            window, current_bg, timing = await self._inputs_from(self.secondary, now)
            return self.secondary, window, current_bg, timing
        except DataUnavailable:
            raise
        except Exception as e:
            raise DataUnavailable(f"Secondary source {self.secondary.name} failed: {e}") from e

    async def dose_timing(self, source: TimeSeriesSourceAdapter, now: datetime) -> DoseTiming:
        """Most recent carb (5 h) and insulin (4 h) entries at prediction time."""
        return DoseTiming(
            lastCarbTimestamp=await source.last_dose_timestamp(DoseKind.CARBS, now, self.carb_lookback_hours),
            lastInsulinTimestamp=await source.last_dose_timestamp(DoseKind.INSULIN, now, self.insulin_lookback_hours),
        )

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleResult:
        """
        Run one prediction cycle.

        Args:
            now: Prediction time (default: current UTC time)

        Returns:
            CycleResult with the stored records and the published event

        Raises:
            DataUnavailable: No glucose from either source (ledger untouched)
            NoValidPredictions: Every model failed (ledger untouched)
            LedgerWriteFailure: The cycle could not be recorded
        """
        now = now or datetime.now(timezone.utc)
        cycle_id = uuid4().hex

        source, window, current_bg, timing = await self.build_inputs(now)
        result = await self.orchestrator.run_ensemble(
            window,
            current_bg,
            timestamp=now,
            cycle_timeout=self.cycle_timeout_seconds
        )

        records = build_records(
            result,
            cycle_id,
            timing,
            horizon_minutes=self.ledger.horizon_minutes,
            patient_id=self.patient_id
        )
        stored = await self.ledger.append(records)

        aggregate = next(r for r in stored if r.isAggregate)
        event = PredictionEvent(
            aggregateValueMgdl=aggregate.predictedValueMgdl,
            aggregateValueMmol=aggregate.predictedValueMmol,
            timestamp=aggregate.timestamp,
            modelSuccessCount=aggregate.modelCount,
            sequenceCount=aggregate.sequenceCount,
            isPartial=aggregate.modelCount < self.min_full_ensemble_models,
        )
        await deliver(self.sink, event)

        logger.info(
            f"Cycle #{aggregate.sequenceCount} from {source.name}: "
            f"{aggregate.predictedValueMgdl:.0f} mg/dL in {self.ledger.horizon_minutes} min "
            f"({aggregate.modelCount}/{self.orchestrator.model_count} models)"
        )
        return CycleResult(records=stored, event=event, usedFallback=source.is_fallback)

    async def backfill(self) -> int:
        """Backfill actual glucose, preferring the primary source."""
        if self.primary is not None:
            try:
                return await self.ledger.backfill_actual(self.primary)
            except Exception as e:
                if self.secondary is None:
                    raise
                logger.warning(f"Backfill from {self.primary.name} failed ({e}), using {self.secondary.name}")
        return await self.ledger.backfill_actual(self.secondary)

    async def sync_cache(self, hours: float = 6.0, now: Optional[datetime] = None) -> dict:
        """Copy recent primary data into the local cache, if both exist."""
        if self.primary is None or self.secondary is None:
            return {}
        cache = self.secondary.source
        if not isinstance(cache, LocalCacheSource):
            return {}
        end = now or datetime.now(timezone.utc)
        return await cache.sync_from(self.primary, end - timedelta(hours=hours), end)

    async def export_csv(self, timezone_name: Optional[str] = None) -> str:
        return await self.ledger.export_csv(timezone_name or self.export_timezone)

    async def latest(self) -> Optional[PredictionRecord]:
        return await self.ledger.latest_aggregate()

    async def accuracy_metrics(self) -> List[AccuracyMetrics]:
        return self.accuracy.evaluate(await self.ledger.records())


def load_predictors(settings: Settings) -> list:
    """Load every available ensemble member from the models directory."""
    models_dir = Path(settings.models_dir)
    if not models_dir.exists():
        logger.warning(f"Models directory not found: {models_dir}. Ensemble is empty.")
        return []

    predictors = list(create_wavenet_predictors(models_dir, settings.model_device))
    random_forest = create_random_forest_predictor(models_dir)
    if random_forest is not None:
        predictors.append(random_forest)
    logger.info(f"Loaded {len(predictors)} ensemble models from {models_dir}")
    return predictors


def create_prediction_service(settings: Settings, predictors: Optional[list] = None) -> PredictionService:
    """
    Wire a PredictionService from settings.

    Without a Cosmos endpoint the ledger and the secondary source are in-memory.
    Without a Nightscout URL the secondary source is the only source.
    """
    primary = None
    if settings.nightscout_url:
        primary = TimeSeriesSourceAdapter(
            NightscoutService(
                settings.nightscout_url,
                api_secret=settings.nightscout_api_secret,
                api_token=settings.nightscout_api_token,
                timeout=settings.nightscout_timeout_seconds,
            ),
            name="nightscout",
            glucose_min=settings.glucose_min_valid,
            glucose_max=settings.glucose_max_valid,
        )

    manager = None
    if settings.cosmos_enabled:
        manager = CosmosDBManager(settings)
        cache = LocalCacheSource(
            SampleCacheRepository(manager, settings.patient_id),
            DoseCacheRepository(manager, settings.patient_id),
        )
        store = PredictionRepository(manager, settings.patient_id)
    else:
        cache = InMemoryTimeSeriesSource(supported=LocalCacheSource.SUPPORTED_SIGNALS)
        store = InMemoryPredictionStore()

    secondary = TimeSeriesSourceAdapter(
        cache,
        name="local_cache",
        glucose_min=settings.glucose_min_valid,
        glucose_max=settings.glucose_max_valid,
        is_fallback=True,
    )

    if predictors is None:
        predictors = load_predictors(settings)
    orchestrator = EnsembleOrchestrator.from_predictors(
        predictors,
        max_concurrency=settings.max_concurrency_or_none,
        model_timeout_seconds=settings.model_timeout_seconds,
    )

    service = PredictionService(
        primary=primary,
        secondary=secondary,
        builder=FeatureWindowBuilder.from_settings(settings),
        orchestrator=orchestrator,
        ledger=PredictionLedger.from_settings(store, settings),
        sink=create_notification_sink(settings.notification_webhook_url),
        cycle_timeout_seconds=settings.cycle_timeout_seconds,
        min_full_ensemble_models=settings.min_full_ensemble_models,
        carb_lookback_hours=settings.carb_lookback_hours,
        insulin_lookback_hours=settings.insulin_lookback_hours,
        export_timezone=settings.export_timezone,
        patient_id=settings.patient_id,
    )
    service.cosmos_manager = manager
    return service
