"""
Prediction Ledger and Cache Repositories
Store backends for prediction records and the local sample/dose cache.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Protocol

from azure.cosmos import exceptions
from azure.cosmos.container import ContainerProxy

from database.cosmos_client import DOSE_CACHE, PREDICTIONS, SAMPLE_CACHE, CosmosDBManager
from models.schemas import Dose, DoseKind, PredictionRecord, Sample, SignalKind

logger = logging.getLogger(__name__)


def to_epoch_ms(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * 1000)


def from_epoch_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class PredictionStore(Protocol):
    """Access pattern the ledger needs: insert, range/sort, count."""

    async def insert_cycle(self, records: List[PredictionRecord]) -> None:
        """Insert every record of one cycle, or none of them."""
        ...

    async def max_sequence(self) -> int:
        ...

    async def list_all(self) -> List[PredictionRecord]:
        """Snapshot of every record, oldest first."""
        ...

    async def update_many(self, records: List[PredictionRecord]) -> None:
        ...

    async def count(self) -> int:
        ...

    async def clear(self) -> int:
        ...


class InMemoryPredictionStore:
    """Process-local PredictionStore; reads return deep copies."""

    def __init__(self):
        self._records: Dict[str, PredictionRecord] = {}

    async def insert_cycle(self, records: List[PredictionRecord]) -> None:
        ids = [r.id for r in records]
        if len(set(ids)) != len(ids) or any(i in self._records for i in ids):
            raise ValueError("Duplicate prediction record id")
        for record in records:
            self._records[record.id] = record.model_copy(deep=True)

    async def max_sequence(self) -> int:
        return max((r.sequenceCount for r in self._records.values()), default=0)

    async def list_all(self) -> List[PredictionRecord]:
        ordered = sorted(self._records.values(), key=lambda r: (r.timestamp, r.sequenceCount, r.modelIndex))
        return [r.model_copy(deep=True) for r in ordered]

    async def update_many(self, records: List[PredictionRecord]) -> None:
        missing = [r.id for r in records if r.id not in self._records]
        if missing:
            raise KeyError(f"Unknown prediction records: {missing}")
        for record in records:
            self._records[record.id] = record.model_copy(deep=True)

    async def count(self) -> int:
        return len(self._records)

    async def clear(self) -> int:
        removed = len(self._records)
        self._records.clear()
        return removed


class BaseRepository:
    """Base repository scoped to one patient partition."""

    def __init__(self, manager: CosmosDBManager, container_name: str, patient_id: str):
        self.manager = manager
        self.container_name = container_name
        self.patient_id = patient_id

    @property
    def container(self) -> ContainerProxy:
        return self.manager.get_container(self.container_name)

    def _query(self, query: str, parameters: Optional[list] = None) -> list:
        params = [{"name": "@patientId", "value": self.patient_id}] + (parameters or [])
        return list(self.container.query_items(
            query=query,
            parameters=params,
            partition_key=self.patient_id
        ))


class PredictionRepository(BaseRepository):
    """CosmosDB PredictionStore; one transactional batch per cycle."""

    def __init__(self, manager: CosmosDBManager, patient_id: str = "default"):
        super().__init__(manager, PREDICTIONS, patient_id)

    async def insert_cycle(self, records: List[PredictionRecord]) -> None:
        operations = [
            ("create", (record.model_copy(update={"patientId": self.patient_id}).model_dump(mode='json'),))
            for record in records
        ]
        try:
            self.container.execute_item_batch(
                batch_operations=operations,
                partition_key=self.patient_id
            )
        except exceptions.CosmosBatchOperationError as e:
            logger.error(f"Batch insert failed at operation {e.error_index}: {e}")
            raise
        logger.info(f"Inserted cycle of {len(records)} prediction records")

    async def max_sequence(self) -> int:
        items = self._query(
            "SELECT VALUE MAX(c.sequenceCount) FROM c WHERE c.patientId = @patientId"
        )
        return int(items[0]) if items and items[0] is not None else 0

    async def list_all(self) -> List[PredictionRecord]:
        items = self._query("""
            SELECT *
            FROM c
            WHERE c.patientId = @patientId
            ORDER BY c.timestamp ASC
        """)
        return [PredictionRecord(**item) for item in items]

    async def update_many(self, records: List[PredictionRecord]) -> None:
        for record in records:
            self.container.upsert_item(body=record.model_dump(mode='json'))
        logger.info(f"Updated {len(records)} prediction records")

    async def count(self) -> int:
        items = self._query("SELECT VALUE COUNT(1) FROM c WHERE c.patientId = @patientId")
        return int(items[0]) if items else 0

    async def clear(self) -> int:
        ids = self._query("SELECT VALUE c.id FROM c WHERE c.patientId = @patientId")
        for item_id in ids:
            self.container.delete_item(item=item_id, partition_key=self.patient_id)
        logger.info(f"Deleted {len(ids)} prediction records")
        return len(ids)


class SampleCacheRepository(BaseRepository):
    """Local cache of source samples, queried by epoch milliseconds."""

    def __init__(self, manager: CosmosDBManager, patient_id: str = "default"):
        super().__init__(manager, SAMPLE_CACHE, patient_id)

    def _document(self, sample: Sample) -> dict:
        epoch_ms = to_epoch_ms(sample.timestamp)
        return {
            "id": f"{self.patient_id}_{sample.signal.value}_{epoch_ms}",
            "patientId": self.patient_id,
            "signal": sample.signal.value,
            "epochMs": epoch_ms,
            "value": sample.value,
        }

    @staticmethod
    def _sample(item: dict) -> Sample:
        return Sample(
            timestamp=from_epoch_ms(item["epochMs"]),
            value=item["value"],
            signal=SignalKind(item["signal"])
        )

    async def upsert_many(self, samples: Iterable[Sample]) -> int:
        """Bulk upsert samples; ids are deterministic so re-syncs overwrite."""
        count = 0
        for sample in samples:
            self.container.upsert_item(body=self._document(sample))
            count += 1
        logger.info(f"Cached {count} samples")
        return count

    async def get_latest(self, signal: SignalKind, as_of: datetime) -> Optional[Sample]:
        items = self._query(
            """
            SELECT TOP 1 *
            FROM c
            WHERE c.patientId = @patientId
              AND c.signal = @signal
              AND c.epochMs <= @asOf
            ORDER BY c.epochMs DESC
            """,
            [
                {"name": "@signal", "value": signal.value},
                {"name": "@asOf", "value": to_epoch_ms(as_of)},
            ]
        )
        return self._sample(items[0]) if items else None

    async def get_range(
        self,
        signal: SignalKind,
        start: datetime,
        end: datetime,
        limit: int = 1000
    ) -> List[Sample]:
        """Samples within [start, end], newest first."""
        items = self._query(
            """
            SELECT TOP @limit *
            FROM c
            WHERE c.patientId = @patientId
              AND c.signal = @signal
              AND c.epochMs >= @start
              AND c.epochMs <= @end
            ORDER BY c.epochMs DESC
            """,
            [
                {"name": "@signal", "value": signal.value},
                {"name": "@start", "value": to_epoch_ms(start)},
                {"name": "@end", "value": to_epoch_ms(end)},
                {"name": "@limit", "value": limit},
            ]
        )
        return [self._sample(item) for item in items]


class DoseCacheRepository(BaseRepository):
    """Local cache of insulin and carb doses."""

    def __init__(self, manager: CosmosDBManager, patient_id: str = "default"):
        super().__init__(manager, DOSE_CACHE, patient_id)

    async def upsert_many(self, doses: Iterable[Dose]) -> int:
        count = 0
        for dose in doses:
            epoch_ms = to_epoch_ms(dose.timestamp)
            self.container.upsert_item(body={
                "id": f"{self.patient_id}_{dose.kind.value}_{epoch_ms}",
                "patientId": self.patient_id,
                "kind": dose.kind.value,
                "epochMs": epoch_ms,
                "amount": dose.amount,
            })
            count += 1
        logger.info(f"Cached {count} doses")
        return count

    async def get_range(self, kind: DoseKind, start: datetime, end: datetime) -> List[Dose]:
        items = self._query(
            """
            SELECT *
            FROM c
            WHERE c.patientId = @patientId
              AND c.kind = @kind
              AND c.epochMs >= @start
              AND c.epochMs <= @end
            ORDER BY c.epochMs ASC
            """,
            [
                {"name": "@kind", "value": kind.value},
                {"name": "@start", "value": to_epoch_ms(start)},
                {"name": "@end", "value": to_epoch_ms(end)},
            ]
        )
        return [
            Dose(timestamp=from_epoch_ms(item["epochMs"]), amount=item["amount"], kind=kind)
            for item in items
        ]
