"""
Time Series Source Adapter
Backend-agnostic access to glucose, heart rate, insulin and carb data.

Backends (live Nightscout, local cache, in-memory replay) implement the
TimeSeriesSource protocol. TimeSeriesSourceAdapter wraps one backend and
applies validation so that downstream code never sees sensor artifacts.
"""
import math
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from models.schemas import Dose, DoseKind, Sample, SignalKind
from services.exceptions import DataUnavailable

logger = logging.getLogger(__name__)


GLUCOSE_MIN_VALID = 20.0   # mg/dL
GLUCOSE_MAX_VALID = 600.0  # mg/dL
LATEST_LOOKBACK_HOURS = 24
DEFAULT_RANGE_LIMIT = 1000


@runtime_checkable
class TimeSeriesSource(Protocol):
    """Raw data capability implemented by each backend."""

    def supports(self, signal: SignalKind) -> bool:
        ...

    async def fetch_latest(self, signal: SignalKind, as_of: datetime) -> Optional[Sample]:
        ...

    async def fetch_range(
        self,
        signal: SignalKind,
        start: datetime,
        end: datetime,
        limit: int = DEFAULT_RANGE_LIMIT
    ) -> List[Sample]:
        ...

    async def fetch_doses(self, kind: DoseKind, start: datetime, end: datetime) -> List[Dose]:
        ...


class TimeSeriesSourceAdapter:
    """
    Validating wrapper around a TimeSeriesSource backend.

    Glucose outside [glucose_min, glucose_max] or non-finite is dropped, not
    clamped. Other signals drop non-finite and negative values.
    """

    def __init__(
        self,
        source: TimeSeriesSource,
        name: str,
        glucose_min: float = GLUCOSE_MIN_VALID,
        glucose_max: float = GLUCOSE_MAX_VALID,
        is_fallback: bool = False
    ):
        self.source = source
        self.name = name
        self.glucose_min = glucose_min
        self.glucose_max = glucose_max
        self.is_fallback = is_fallback

    def supports(self, signal: SignalKind) -> bool:
        return self.source.supports(signal)

    def is_valid(self, sample: Sample) -> bool:
        value = sample.value
        if value is None or not math.isfinite(value):
            return False
        if sample.signal == SignalKind.GLUCOSE:
            return self.glucose_min <= value <= self.glucose_max
        return value >= 0

    def _valid(self, samples: Iterable[Sample]) -> List[Sample]:
        kept = []
        for sample in samples:
            if self.is_valid(sample):
                kept.append(sample)
            else:
                logger.debug(
                    f"[{self.name}] dropped {sample.signal.value} sample "
                    f"{sample.value} at {sample.timestamp.isoformat()}"
                )
        return kept

    async def fetch_range(
        self,
        signal: SignalKind,
        start: datetime,
        end: datetime,
        limit: int = DEFAULT_RANGE_LIMIT
    ) -> List[Sample]:
        """
        Get validated samples in [start, end].

        Returns:
            Samples sorted newest first, at most `limit` of them
        """
        if not self.supports(signal):
            return []
        raw = await self.source.fetch_range(signal, start, end, limit)
        samples = [s for s in self._valid(raw) if start <= s.timestamp <= end]
        samples.sort(key=lambda s: s.timestamp, reverse=True)
        return samples[:limit]

    async def fetch_latest_sample(self, signal: SignalKind, as_of: datetime) -> Optional[Sample]:
        """Nearest valid sample at or before `as_of`, or None."""
        if not self.supports(signal):
            return None
        latest = await self.source.fetch_latest(signal, as_of)
        if latest is not None and latest.timestamp <= as_of and self.is_valid(latest):
            return latest

        # Latest raw value was invalid; search back for the nearest valid one
        start = as_of - timedelta(hours=LATEST_LOOKBACK_HOURS)
        recent = await self.fetch_range(signal, start, as_of)
        return recent[0] if recent else None

    async def fetch_latest(self, signal: SignalKind, as_of: datetime) -> Optional[float]:
        """
        Nearest valid value at or before `as_of`.

        Raises:
            DataUnavailable: If the signal is glucose and nothing usable exists
        """
        sample = await self.fetch_latest_sample(signal, as_of)
        if sample is None:
            if signal == SignalKind.GLUCOSE:
                raise DataUnavailable(f"No glucose available from {self.name} at {as_of.isoformat()}")
            return None
        return sample.value

    async def fetch_recent_doses(
        self,
        kind: DoseKind,
        hours_back: float,
        as_of: Optional[datetime] = None
    ) -> List[Dose]:
        """Doses in (as_of - hours_back, as_of], oldest first."""
        end = as_of or datetime.now(timezone.utc)
        start = end - timedelta(hours=hours_back)
        if not self.supports(kind.signal):
            return []
        doses = await self.source.fetch_doses(kind, start, end)
        kept = [
            d for d in doses
            if start <= d.timestamp <= end and math.isfinite(d.amount) and d.amount > 0
        ]
        kept.sort(key=lambda d: d.timestamp)
        return kept

    async def last_dose_timestamp(
        self,
        kind: DoseKind,
        as_of: datetime,
        hours_back: float
    ) -> Optional[datetime]:
        doses = await self.fetch_recent_doses(kind, hours_back, as_of)
        return doses[-1].timestamp if doses else None


class InMemoryTimeSeriesSource:
    """
    TimeSeriesSource over in-process lists.

    Used for replaying exported data and in tests. Signals absent from
    `supported` behave like a backend that cannot provide them.
    """

    def __init__(
        self,
        samples: Optional[Iterable[Sample]] = None,
        doses: Optional[Iterable[Dose]] = None,
        supported: Optional[Iterable[SignalKind]] = None,
        error: Optional[Exception] = None
    ):
        self._samples: Dict[SignalKind, List[Sample]] = {kind: [] for kind in SignalKind}
        self._doses: Dict[DoseKind, List[Dose]] = {kind: [] for kind in DoseKind}
        self._supported = set(supported) if supported is not None else set(SignalKind)
        self.error = error
        for sample in samples or []:
            self.add_sample(sample)
        for dose in doses or []:
            self.add_dose(dose)

    def add_sample(self, sample: Sample) -> None:
        self._samples[sample.signal].append(sample)

    def add_dose(self, dose: Dose) -> None:
        self._doses[dose.kind].append(dose)

    def supports(self, signal: SignalKind) -> bool:
        return signal in self._supported

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    async def fetch_latest(self, signal: SignalKind, as_of: datetime) -> Optional[Sample]:
        self._check()
        candidates = [s for s in self._samples[signal] if s.timestamp <= as_of]
        return max(candidates, key=lambda s: s.timestamp) if candidates else None

    async def fetch_range(
        self,
        signal: SignalKind,
        start: datetime,
        end: datetime,
        limit: int = DEFAULT_RANGE_LIMIT
    ) -> List[Sample]:
        self._check()
        in_range = [s for s in self._samples[signal] if start <= s.timestamp <= end]
        in_range.sort(key=lambda s: s.timestamp, reverse=True)
        return in_range[:limit]

    async def fetch_doses(self, kind: DoseKind, start: datetime, end: datetime) -> List[Dose]:
        self._check()
        return [d for d in self._doses[kind] if start <= d.timestamp <= end]
