"""
Prediction Ledger
Append-only store of per-model and aggregate predictions, backfilled with
the actual glucose observed at the forecast horizon.
"""
import asyncio
import logging
from datetime import timedelta
from typing import List, Optional, Sequence

from models.schemas import PredictionRecord, Sample, SignalKind, mgdl_to_mmol
from services.csv_export_service import export_predictions_csv, group_cycles
from services.exceptions import LedgerWriteFailure

logger = logging.getLogger(__name__)


BACKFILL_FETCH_LIMIT = 100000


class PredictionLedger:
    """
    Single-writer ledger over a PredictionStore.

    Writes (append, backfill commits, renumbering, reset) are serialized by
    an asyncio lock. Reads work on store snapshots and never take it.
    """

    def __init__(
        self,
        store,
        horizon_minutes: int = 20,
        tolerance_minutes: float = 5.0,
        min_minutes: float = 15.0,
        max_minutes: float = 25.0
    ):
        """
        Args:
            store: PredictionStore implementation
            horizon_minutes: Forecast horizon the actual value is matched at
            tolerance_minutes: Max distance between a sample and the target time
            min_minutes: Earliest accepted match after the prediction
            max_minutes: Latest accepted match after the prediction
        """
        self.store = store
        self.horizon_minutes = horizon_minutes
        self.tolerance_minutes = tolerance_minutes
        self.min_minutes = min_minutes
        self.max_minutes = max_minutes
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, store, settings) -> "PredictionLedger":
        return cls(
            store,
            horizon_minutes=settings.prediction_horizon_minutes,
            tolerance_minutes=settings.backfill_tolerance_minutes,
            min_minutes=settings.backfill_min_minutes,
            max_minutes=settings.backfill_max_minutes,
        )

    async def append(self, records: Sequence[PredictionRecord]) -> List[PredictionRecord]:
        """
        Persist one cycle's records under the next sequence number.

        Returns:
            The stored records, stamped with their shared sequenceCount

        Raises:
            ValueError: If the records do not form exactly one cycle
            LedgerWriteFailure: If the store rejects the write
        """
        if not records:
            raise ValueError("Cannot append an empty cycle")
        if len({r.cycleId for r in records}) != 1 or len({r.timestamp for r in records}) != 1:
            raise ValueError("All records in an append must share one cycle id and timestamp")

        async with self._write_lock:
            try:
                sequence = await self.store.max_sequence() + 1
                stamped = [r.model_copy(update={"sequenceCount": sequence}) for r in records]
                await self.store.insert_cycle(stamped)
            except Exception as e:
                logger.error(f"Ledger append failed: {e}")
                raise LedgerWriteFailure(f"Could not record cycle {records[0].cycleId}: {e}") from e

        logger.info(f"Ledger cycle #{sequence}: {len(stamped)} records")
        return stamped

    async def records(self) -> List[PredictionRecord]:
        return await self.store.list_all()

    async def count(self) -> int:
        return await self.store.count()

    async def latest_aggregate(self) -> Optional[PredictionRecord]:
        aggregates = [r for r in await self.store.list_all() if r.isAggregate]
        return max(aggregates, key=lambda r: (r.timestamp, r.sequenceCount)) if aggregates else None

    def find_actual(self, record: PredictionRecord, samples: Sequence[Sample]) -> Optional[Sample]:
        """
        Closest sample to prediction time + horizon.

        Only samples strictly after the prediction and within the tolerance
        are candidates; the winner must fall [min_minutes, max_minutes] after it.
        """
        target = record.timestamp + timedelta(minutes=self.horizon_minutes)
        tolerance = timedelta(minutes=self.tolerance_minutes)
        candidates = [
            s for s in samples
            if s.timestamp > record.timestamp and abs(s.timestamp - target) <= tolerance
        ]
        if not candidates:
            return None
        best = min(candidates, key=lambda s: (abs(s.timestamp - target), s.timestamp))
        minutes_after = (best.timestamp - record.timestamp).total_seconds() / 60.0
        if not self.min_minutes <= minutes_after <= self.max_minutes:
            return None
        return best

    def _match_in_window(self, record: PredictionRecord) -> bool:
        minutes_after = (record.actualBgTimestamp - record.timestamp).total_seconds() / 60.0
        return self.min_minutes <= minutes_after <= self.max_minutes

    def _with_actual(self, record: PredictionRecord, samples: Sequence[Sample]) -> Optional[PredictionRecord]:
        """Record with refreshed actualBg* fields, or None when nothing changes."""
        match = self.find_actual(record, samples)
        if match is not None:
            if record.actualBgTimestamp == match.timestamp and record.actualBgMgdl == match.value:
                return None
            return record.model_copy(update={
                "actualBgMgdl": match.value,
                "actualBgMmol": mgdl_to_mmol(match.value),
                "actualBgTimestamp": match.timestamp,
            })
        if record.has_actual and (record.actualBgTimestamp is None or not self._match_in_window(record)):
            return record.model_copy(update={
                "actualBgMgdl": None,
                "actualBgMmol": None,
                "actualBgTimestamp": None,
            })
        return None

    async def backfill_actual(self, source) -> int:
        """
        Attach observed glucose to records and clear matches that no longer qualify.

        Glucose is fetched without holding the write lock. The records are
        re-read under the lock and only their actualBg* fields change, so
        writes committed meanwhile (e.g. renumbering) are kept.

        Args:
            source: TimeSeriesSourceAdapter providing validated glucose

        Returns:
            Number of records changed
        """
        snapshot = await self.store.list_all()
        if not snapshot:
            return 0

        start = min(r.timestamp for r in snapshot)
        end = max(r.timestamp for r in snapshot) + timedelta(minutes=self.max_minutes)
        samples = await source.fetch_range(SignalKind.GLUCOSE, start, end, limit=BACKFILL_FETCH_LIMIT)
        covered = {r.id for r in snapshot}

        async with self._write_lock:
            current = [r for r in await self.store.list_all() if r.id in covered]
            changed = [r for r in (self._with_actual(record, samples) for record in current) if r is not None]
            if changed:
                try:
                    await self.store.update_many(changed)
                except Exception as e:
                    raise LedgerWriteFailure(f"Backfill update failed: {e}") from e

        matched = sum(1 for r in changed if r.actualBgMmol is not None)
        logger.info(f"Backfill: {matched} matched, {len(changed) - matched} cleared")
        return len(changed)

    async def renumber_sequences(self) -> int:
        """
        Migration pass: renumber cycles 1..N in chronological order.

        Returns:
            Number of cycles in the ledger
        """
        async with self._write_lock:
            cycles = group_cycles(await self.store.list_all())
            changed = []
            for number, cycle in enumerate(cycles, start=1):
                changed += [r.model_copy(update={"sequenceCount": number}) for r in cycle if r.sequenceCount != number]
            if changed:
                try:
                    await self.store.update_many(changed)
                except Exception as e:
                    raise LedgerWriteFailure(f"Renumbering failed: {e}") from e

        logger.info(f"Renumbered {len(cycles)} cycles ({len(changed)} records changed)")
        return len(cycles)

    async def export_csv(self, timezone_name: str = "UTC") -> str:
        """Chronological CSV dump of the current snapshot (ledger unchanged)."""
        snapshot = await self.store.list_all()
        return export_predictions_csv(snapshot, timezone_name, self.horizon_minutes)

    async def reset(self) -> int:
        """Explicit data reset: delete every record."""
        async with self._write_lock:
            removed = await self.store.clear()
        logger.warning(f"Ledger reset: {removed} records deleted")
        return removed
