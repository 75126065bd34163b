"""
End-to-end tests for the prediction cycle: sources, ensemble, ledger, notification.
"""
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from conftest import StubPredictor, delta_spec, make_adapter, make_dose, make_glucose
from services.time_series_source import InMemoryTimeSeriesSource


def make_service(primary, secondary=None, predictors=None, sink=None, **kwargs):
    from database.repositories import InMemoryPredictionStore
    from ml.feature_engineering import FeatureWindowBuilder
    from services.ensemble_service import EnsembleOrchestrator
    from services.ledger_service import PredictionLedger
    from services.prediction_service import PredictionService

    if predictors is None:
        predictors = [
            StubPredictor(delta_spec(1), 0.2),
            StubPredictor(delta_spec(2), -0.1),
            StubPredictor(delta_spec(3), 0.4),
        ]
    return PredictionService(
        primary=primary,
        secondary=secondary,
        builder=FeatureWindowBuilder(),
        orchestrator=EnsembleOrchestrator.from_predictors(predictors),
        ledger=PredictionLedger(InMemoryPredictionStore()),
        sink=sink or AsyncMock(),
        **kwargs
    )


class FlakyDoseSource(InMemoryTimeSeriesSource):
    """In-memory source whose dose lookups fail after `healthy_calls` calls."""

    def __init__(self, samples, healthy_calls):
        super().__init__(samples=samples)
        self.healthy_calls = healthy_calls
        self.dose_calls = 0

    async def fetch_doses(self, kind, start, end):
        self.dose_calls += 1
        if self.dose_calls > self.healthy_calls:
            raise RuntimeError("nightscout 502")
        return await super().fetch_doses(kind, start, end)


class TestPredictionCycle:
    """The documented end-to-end scenario and its failure modes."""

    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self, now, rising_glucose):
        """Deltas +0.2, -0.1, +0.4 at 130 mg/dL average to 7.39 mmol/L (133 mg/dL)."""
        sink = AsyncMock()
        service = make_service(make_adapter(rising_glucose), sink=sink)

        result = await service.run_cycle(now)

        assert len(result.records) == 4
        assert {r.sequenceCount for r in result.records} == {1}
        assert sum(1 for r in result.records if r.isAggregate) == 1

        aggregate = result.aggregate
        assert aggregate.predictedValueMmol == pytest.approx(7.39, abs=0.005)
        assert round(aggregate.predictedValueMgdl) == 133
        assert aggregate.modelCount == 3
        assert aggregate.currentBgMgdl == 130.0
        assert not result.usedFallback

        sink.publish.assert_awaited_once()
        event = sink.publish.await_args.args[0]
        assert event.sequenceCount == 1
        assert event.modelSuccessCount == 3
        assert not event.isPartial
        assert round(event.aggregateValueMgdl) == 133

        assert await service.ledger.count() == 4

    @pytest.mark.asyncio
    async def test_consecutive_cycles_increment_sequence(self, now, rising_glucose):
        """Each completed cycle takes the next sequence number."""
        service = make_service(make_adapter(rising_glucose))

        first = await service.run_cycle(now)
        second = await service.run_cycle(now + timedelta(minutes=5))

        assert first.event.sequenceCount == 1
        assert second.event.sequenceCount == 2

    @pytest.mark.asyncio
    async def test_primary_failure_falls_back_wholesale(self, now, rising_glucose):
        """Any primary error rebuilds the whole window from the secondary."""
        primary = make_adapter([], name="live", error=ConnectionError("timeout"))
        secondary = make_adapter(rising_glucose, name="cache", is_fallback=True)
        service = make_service(primary, secondary)

        result = await service.run_cycle(now)

        assert result.usedFallback
        assert all(r.usedFallback for r in result.records)
        assert round(result.aggregate.predictedValueMgdl) == 133

    @pytest.mark.asyncio
    async def test_primary_without_glucose_falls_back(self, now, rising_glucose):
        """Absence of data on the primary also triggers the fallback."""
        secondary = make_adapter(rising_glucose, name="cache", is_fallback=True)
        service = make_service(make_adapter([]), secondary)

        result = await service.run_cycle(now)
        assert result.usedFallback

    @pytest.mark.asyncio
    async def test_no_glucose_anywhere_leaves_ledger_untouched(self, now):
        """DataUnavailable aborts the cycle before anything is stored or sent."""
        from services.exceptions import DataUnavailable

        sink = AsyncMock()
        service = make_service(
            make_adapter([], error=ConnectionError("down")),
            make_adapter([], name="cache", is_fallback=True),
            sink=sink,
        )

        with pytest.raises(DataUnavailable):
            await service.run_cycle(now)
        assert await service.ledger.count() == 0
        sink.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_models_failing_persists_nothing(self, now, rising_glucose):
        """NoValidPredictions leaves the ledger empty and sends no event."""
        from services.exceptions import NoValidPredictions

        sink = AsyncMock()
        predictors = [StubPredictor(delta_spec(i), error=RuntimeError("bad")) for i in range(1, 6)]
        service = make_service(make_adapter(rising_glucose), predictors=predictors, sink=sink)

        with pytest.raises(NoValidPredictions):
            await service.run_cycle(now)
        assert await service.ledger.count() == 0
        sink.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_partial_ensemble_flagged(self, now, rising_glucose):
        """Fewer survivors than the full-ensemble minimum marks the event partial."""
        predictors = [
            StubPredictor(delta_spec(1), 0.2),
            StubPredictor(delta_spec(2), error=RuntimeError("bad")),
            StubPredictor(delta_spec(3), error=RuntimeError("bad")),
        ]
        service = make_service(make_adapter(rising_glucose), predictors=predictors)

        result = await service.run_cycle(now)

        assert result.event.isPartial
        assert result.aggregate.modelCount == 1
        assert len(result.records) == 2

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_fail_cycle(self, now, rising_glucose):
        """A broken notification sink is logged, the cycle still completes."""
        sink = AsyncMock()
        sink.publish.side_effect = RuntimeError("webhook down")
        service = make_service(make_adapter(rising_glucose), sink=sink)

        result = await service.run_cycle(now)

        assert result.event.sequenceCount == 1
        assert await service.ledger.count() == 4

    @pytest.mark.asyncio
    async def test_dose_timing_recorded(self, now, rising_glucose):
        """Last carb (5 h) and insulin (4 h) timestamps are stored on every record."""
        carb_time = now - timedelta(hours=1)
        doses = [
            make_dose("carbs", 30, carb_time),
            make_dose("insulin", 2.0, now - timedelta(hours=5)),
        ]
        service = make_service(make_adapter(rising_glucose, doses))

        result = await service.run_cycle(now)

        assert all(r.lastCarbTimestamp == carb_time for r in result.records)
        assert all(r.lastInsulinTimestamp is None for r in result.records)

    @pytest.mark.asyncio
    async def test_dose_timing_failure_falls_back(self, now, rising_glucose):
        """A dose lookup failing after the window build still falls back wholesale."""
        from services.time_series_source import TimeSeriesSourceAdapter

        primary = TimeSeriesSourceAdapter(FlakyDoseSource(rising_glucose, healthy_calls=2), name="live")
        secondary = make_adapter(rising_glucose, name="cache", is_fallback=True)
        service = make_service(primary, secondary)

        result = await service.run_cycle(now)

        assert primary.source.dose_calls > 2
        assert result.usedFallback
        assert await service.ledger.count() == 4

    @pytest.mark.asyncio
    async def test_dose_timing_failure_without_fallback(self, now, rising_glucose):
        """With no secondary the failure surfaces as DataUnavailable and nothing is stored."""
        from services.exceptions import DataUnavailable
        from services.time_series_source import TimeSeriesSourceAdapter

        sink = AsyncMock()
        primary = TimeSeriesSourceAdapter(FlakyDoseSource(rising_glucose, healthy_calls=2), name="live")
        service = make_service(primary, sink=sink)

        with pytest.raises(DataUnavailable):
            await service.run_cycle(now)
        assert await service.ledger.count() == 0
        sink.publish.assert_not_awaited()


class TestServiceOperations:
    """Backfill, export and accuracy through the service."""

    @pytest.mark.asyncio
    async def test_backfill_then_accuracy(self, now, rising_glucose):
        """Actuals attach after the horizon and feed accuracy metrics."""
        later = make_glucose([133], now + timedelta(minutes=20))
        service = make_service(make_adapter(rising_glucose + later))

        await service.run_cycle(now)
        assert await service.backfill() == 4

        metrics = {m.modelIndex: m for m in await service.accuracy_metrics()}
        assert set(metrics) == {0, 1, 2, 3}
        assert metrics[0].sample_count == 1
        assert metrics[0].mae == pytest.approx(0.0, abs=0.1)

    @pytest.mark.asyncio
    async def test_backfill_falls_back_to_secondary(self, now, rising_glucose):
        """If the primary fails during backfill, the secondary is used."""
        later = make_glucose([140], now + timedelta(minutes=20))
        primary = make_adapter(rising_glucose, name="live")
        secondary = make_adapter(rising_glucose + later, name="cache", is_fallback=True)
        service = make_service(primary, secondary)
        await service.run_cycle(now)

        primary.source.error = ConnectionError("offline")
        assert await service.backfill() == 4
        assert (await service.latest()).actualBgMgdl == 140.0

    @pytest.mark.asyncio
    async def test_export_csv(self, now, rising_glucose):
        """The export has one row per cycle."""
        service = make_service(make_adapter(rising_glucose))
        await service.run_cycle(now)
        await service.run_cycle(now + timedelta(minutes=5))

        content = await service.export_csv()
        lines = content.strip("\r\n").split("\r\n")

        assert len(lines) == 3
        assert lines[1].split(",")[1] == "1"

    def test_requires_a_source(self):
        """A service without any source cannot be built."""
        with pytest.raises(ValueError):
            make_service(None, None)


class TestFactory:
    """Wiring from settings."""

    def test_in_memory_wiring(self, tmp_path):
        """Without Nightscout or Cosmos the service runs on in-memory stores."""
        from config import Settings
        from database.repositories import InMemoryPredictionStore
        from services.prediction_service import create_prediction_service

        settings = Settings(nightscout_url="", cosmos_endpoint="", models_dir=str(tmp_path))
        service = create_prediction_service(settings)

        assert service.primary is None
        assert service.secondary.is_fallback
        assert isinstance(service.ledger.store, InMemoryPredictionStore)
        assert service.cosmos_manager is None
        assert not service.ready

    def test_nightscout_primary(self, tmp_path):
        """A configured Nightscout URL becomes the primary source."""
        from config import Settings
        from services.nightscout_service import NightscoutService
        from services.prediction_service import create_prediction_service

        settings = Settings(
            nightscout_url="https://ns.example.com",
            cosmos_endpoint="",
            models_dir=str(tmp_path),
        )
        service = create_prediction_service(settings, predictors=[StubPredictor(delta_spec(1))])

        assert isinstance(service.primary.source, NightscoutService)
        assert service.ready
