"""
Local Cache Source
TimeSeriesSource backed by the Cosmos sample and dose cache, used as the
secondary source when the live API is unreachable.
"""
import logging
from datetime import datetime
from typing import List, Optional

from database.repositories import DoseCacheRepository, SampleCacheRepository
from models.schemas import Dose, DoseKind, Sample, SignalKind
from services.time_series_source import DEFAULT_RANGE_LIMIT

logger = logging.getLogger(__name__)


SYNC_RANGE_LIMIT = 100000


class LocalCacheSource:
    """Cache of glucose, insulin and carbs. Heart rate is never cached."""

    SUPPORTED_SIGNALS = {SignalKind.GLUCOSE, SignalKind.INSULIN, SignalKind.CARBS}

    def __init__(self, sample_repo: SampleCacheRepository, dose_repo: DoseCacheRepository):
        self.sample_repo = sample_repo
        self.dose_repo = dose_repo

    def supports(self, signal: SignalKind) -> bool:
        return signal in self.SUPPORTED_SIGNALS

    async def fetch_latest(self, signal: SignalKind, as_of: datetime) -> Optional[Sample]:
        if not self.supports(signal):
            return None
        return await self.sample_repo.get_latest(signal, as_of)

    async def fetch_range(
        self,
        signal: SignalKind,
        start: datetime,
        end: datetime,
        limit: int = DEFAULT_RANGE_LIMIT
    ) -> List[Sample]:
        if not self.supports(signal):
            return []
        return await self.sample_repo.get_range(signal, start, end, limit)

    async def fetch_doses(self, kind: DoseKind, start: datetime, end: datetime) -> List[Dose]:
        return await self.dose_repo.get_range(kind, start, end)

    async def sync_from(self, adapter, start: datetime, end: datetime) -> dict:
        """
        Copy validated samples and doses from another source into the cache.

        Args:
            adapter: TimeSeriesSourceAdapter over the live source
            start: Range start
            end: Range end

        Returns:
            Counts of cached items per signal
        """
        samples = await adapter.fetch_range(SignalKind.GLUCOSE, start, end, limit=SYNC_RANGE_LIMIT)
        counts = {SignalKind.GLUCOSE.value: await self.sample_repo.upsert_many(samples)}

        hours = (end - start).total_seconds() / 3600
        for kind in DoseKind:
            doses = await adapter.fetch_recent_doses(kind, hours, as_of=end)
            counts[kind.value] = await self.dose_repo.upsert_many(doses)

        logger.info(f"Cache sync {start.isoformat()} -> {end.isoformat()}: {counts}")
        return counts
