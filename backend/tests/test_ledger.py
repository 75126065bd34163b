"""
Tests for the prediction ledger: sequencing, backfill and renumbering.
"""
import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

from conftest import make_adapter, make_glucose


def make_cycle(timestamp, values=(7.4, 7.1), current_mmol=7.2, sequence=0):
    """Per-model records plus the aggregate for one cycle."""
    from models.schemas import PredictionRecord

    cycle_id = uuid4().hex
    common = dict(
        cycleId=cycle_id,
        timestamp=timestamp,
        currentBgMmol=current_mmol,
        currentBgMgdl=current_mmol * 18.0,
        sequenceCount=sequence,
    )
    records = [
        PredictionRecord(
            rawOutput=value - current_mmol,
            predictedValueMmol=value,
            predictedValueMgdl=value * 18.0,
            modelIndex=index,
            modelName=f"wavenet{index}",
            **common
        )
        for index, value in enumerate(values, start=1)
    ]
    average = sum(values) / len(values)
    records.append(PredictionRecord(
        rawOutput=average - current_mmol,
        predictedValueMmol=average,
        predictedValueMgdl=average * 18.0,
        modelIndex=0,
        modelName="average",
        isAggregate=True,
        modelCount=len(values),
        **common
    ))
    return records


class GatedGlucoseSource:
    """Glucose source that blocks inside fetch_range until released."""

    def __init__(self, samples):
        self.samples = samples
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_range(self, signal, start, end, limit=None):
        self.entered.set()
        await self.release.wait()
        return [s for s in self.samples if start <= s.timestamp <= end]


def new_ledger(store=None):
    from database.repositories import InMemoryPredictionStore
    from services.ledger_service import PredictionLedger

    return PredictionLedger(store or InMemoryPredictionStore())


class TestAppend:
    """Cycle-atomic append with single-writer sequencing."""

    @pytest.mark.asyncio
    async def test_sequences_start_at_one_and_increase(self, now):
        """N appends produce sequences 1..N, shared within each cycle."""
        ledger = new_ledger()
        for minutes in (0, 5, 10):
            await ledger.append(make_cycle(now + timedelta(minutes=minutes)))

        records = await ledger.records()
        by_cycle = {}
        for record in records:
            by_cycle.setdefault(record.cycleId, set()).add(record.sequenceCount)

        assert sorted(seq for seqs in by_cycle.values() for seq in seqs) == [1, 2, 3]
        assert all(len(seqs) == 1 for seqs in by_cycle.values())
        assert await ledger.count() == 9

    @pytest.mark.asyncio
    async def test_concurrent_appends_get_distinct_sequences(self, now):
        """Racing triggers never share a sequence number."""
        ledger = new_ledger()
        stored = await asyncio.gather(*[
            ledger.append(make_cycle(now + timedelta(minutes=5 * i))) for i in range(5)
        ])

        assert sorted(cycle[0].sequenceCount for cycle in stored) == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_store_failure_raises_ledger_write_failure(self, now):
        """Store errors are wrapped and nothing is recorded."""
        from database.repositories import InMemoryPredictionStore
        from services.exceptions import LedgerWriteFailure

        store = InMemoryPredictionStore()
        store.insert_cycle = AsyncMock(side_effect=OSError("disk full"))
        ledger = new_ledger(store)

        with pytest.raises(LedgerWriteFailure):
            await ledger.append(make_cycle(now))
        assert await ledger.count() == 0

    @pytest.mark.asyncio
    async def test_mixed_cycles_rejected(self, now):
        """Records from two cycles cannot be appended together."""
        ledger = new_ledger()
        with pytest.raises(ValueError):
            await ledger.append(make_cycle(now) + make_cycle(now + timedelta(minutes=5)))

    @pytest.mark.asyncio
    async def test_latest_aggregate(self, now):
        """The newest aggregate record is returned."""
        ledger = new_ledger()
        await ledger.append(make_cycle(now))
        await ledger.append(make_cycle(now + timedelta(minutes=5), values=(8.0, 8.2)))

        latest = await ledger.latest_aggregate()
        assert latest.isAggregate
        assert latest.sequenceCount == 2
        assert latest.predictedValueMmol == pytest.approx(8.1)


class TestBackfill:
    """Matching actual glucose at the forecast horizon."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("minutes_after,expected", [(14, None), (20, 133.0), (26, None)])
    async def test_backfill_window(self, now, minutes_after, expected):
        """Only readings 15-25 minutes after the prediction qualify."""
        ledger = new_ledger()
        await ledger.append(make_cycle(now))
        source = make_adapter(make_glucose([133], now + timedelta(minutes=minutes_after)))

        await ledger.backfill_actual(source)
        aggregate = await ledger.latest_aggregate()

        assert aggregate.actualBgMgdl == expected
        if expected is not None:
            assert aggregate.actualBgMmol == pytest.approx(133 / 18.0)
            assert aggregate.actualBgTimestamp == now + timedelta(minutes=20)

    @pytest.mark.asyncio
    async def test_closest_reading_wins(self, now):
        """Of several candidates, the one nearest prediction + 20 min is chosen."""
        ledger = new_ledger()
        await ledger.append(make_cycle(now))
        readings = make_glucose([120, 125, 130], now + timedelta(minutes=23), step_minutes=4)

        updated = await ledger.backfill_actual(make_adapter(readings))
        aggregate = await ledger.latest_aggregate()

        assert updated == 3
        assert aggregate.actualBgMgdl == 125.0

    @pytest.mark.asyncio
    async def test_reading_at_prediction_time_not_used(self, now):
        """Candidates must be strictly after the prediction."""
        from services.ledger_service import PredictionLedger
        from database.repositories import InMemoryPredictionStore

        ledger = PredictionLedger(InMemoryPredictionStore(), horizon_minutes=0, min_minutes=0)
        await ledger.append(make_cycle(now))

        await ledger.backfill_actual(make_adapter(make_glucose([110], now)))
        assert (await ledger.latest_aggregate()).actualBgMgdl is None

    @pytest.mark.asyncio
    async def test_stale_match_is_cleared(self, now):
        """A previously attached actual outside the window is removed."""
        ledger = new_ledger()
        cycle = make_cycle(now)
        cycle = [r.model_copy(update={
            "actualBgMgdl": 150.0,
            "actualBgMmol": 150 / 18.0,
            "actualBgTimestamp": now + timedelta(minutes=40),
        }) for r in cycle]
        await ledger.append(cycle)

        updated = await ledger.backfill_actual(make_adapter([]))
        aggregate = await ledger.latest_aggregate()

        assert updated == 3
        assert aggregate.actualBgMgdl is None
        assert aggregate.actualBgTimestamp is None

    @pytest.mark.asyncio
    async def test_backfill_is_idempotent(self, now):
        """A second pass with the same data changes nothing."""
        ledger = new_ledger()
        await ledger.append(make_cycle(now))
        source = make_adapter(make_glucose([133], now + timedelta(minutes=20)))

        assert await ledger.backfill_actual(source) == 3
        assert await ledger.backfill_actual(source) == 0

    @pytest.mark.asyncio
    async def test_empty_ledger(self, now):
        """Nothing to backfill."""
        assert await new_ledger().backfill_actual(make_adapter([])) == 0


class TestMaintenance:
    """Renumbering and reset."""

    @pytest.mark.asyncio
    async def test_renumber_sequences_chronologically(self, now):
        """Out-of-order sequence numbers are rewritten to 1..N by time."""
        from database.repositories import InMemoryPredictionStore

        store = InMemoryPredictionStore()
        await store.insert_cycle(make_cycle(now + timedelta(minutes=10), sequence=7))
        await store.insert_cycle(make_cycle(now, sequence=9))
        await store.insert_cycle(make_cycle(now + timedelta(minutes=5), sequence=2))
        ledger = new_ledger(store)

        assert await ledger.renumber_sequences() == 3

        records = await ledger.records()
        ordered = sorted({(r.timestamp, r.sequenceCount) for r in records})
        assert [seq for _, seq in ordered] == [1, 2, 3]

        stored = await ledger.append(make_cycle(now + timedelta(minutes=15)))
        assert stored[0].sequenceCount == 4

    @pytest.mark.asyncio
    async def test_renumber_during_backfill_is_kept(self, now):
        """Renumbering committed while backfill waits on its source survives the backfill."""
        from database.repositories import InMemoryPredictionStore

        store = InMemoryPredictionStore()
        await store.insert_cycle(make_cycle(now, sequence=2))
        await store.insert_cycle(make_cycle(now + timedelta(minutes=10), sequence=1))
        ledger = new_ledger(store)
        source = GatedGlucoseSource(make_glucose([130, 133, 135], now + timedelta(minutes=30)))

        backfill = asyncio.ensure_future(ledger.backfill_actual(source))
        await source.entered.wait()
        assert await ledger.renumber_sequences() == 2
        source.release.set()

        assert await backfill == 6
        records = await ledger.records()
        assert sorted({(r.timestamp, r.sequenceCount) for r in records}) == [
            (now, 1),
            (now + timedelta(minutes=10), 2),
        ]
        assert all(r.has_actual for r in records)

    @pytest.mark.asyncio
    async def test_reset(self, now):
        """Reset deletes every record."""
        ledger = new_ledger()
        await ledger.append(make_cycle(now))

        assert await ledger.reset() == 3
        assert await ledger.count() == 0
