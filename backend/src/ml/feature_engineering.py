"""
Feature Window Builder

Assembles the fixed-shape [timesteps, features] window fed to every ensemble
member: binned glucose and heart rate, decayed insulin/carb activity,
momentum and circadian encodings.
"""
import math
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import FrozenSet, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

import numpy as np
import pandas as pd

from models.schemas import DoseKind, Sample, SignalKind, MGDL_PER_MMOL
from services.exceptions import DataUnavailable, ShapeMismatch
from services.iob_cob_service import IOBCOBService

logger = logging.getLogger(__name__)


# Window configuration matching the trained ensemble
SAMPLING_MIN = 5        # Bin spacing in minutes
SEQ_LENGTH = 24         # 120 min / 5 min = 24 steps
LEGACY_SEQ_LENGTH = 8   # 40 min / 5 min = 8 steps
SAMPLE_LOOKBACK_MIN = 30
RESTING_HEART_RATE = 70.0
DEFAULT_GLUCOSE_MGDL = 100.0
HEART_RATE_SCALE = 30.0
GLUCOSE_FEATURE_MIN = 40.0   # mg/dL
GLUCOSE_FEATURE_MAX = 500.0  # mg/dL

# Canonical column order for the 24x8 window
FEATURE_COLUMNS = [
    "blood_glucose",     # mmol/L
    "insulin_on_board",  # units
    "carbs_on_board",    # grams
    "heart_rate",        # (bpm - 70) / 30
    "bg_trend",          # mmol/L per minute
    "hr_trend",          # bpm per minute
    "hour_sin",
    "hour_cos",
]

# Smaller legacy model family (8x4)
LEGACY_FEATURE_COLUMNS = [
    "heart_rate",
    "blood_glucose",
    "insulin_on_board",
    "carbs_on_board",
]


class CircadianMode(str, Enum):
    NOW = "now"          # hour of `now`, broadcast to every timestep
    PER_BIN = "per_bin"  # each bin's own hour


def sincos(hour_fraction, period: float = 24.0):
    """Convert a cyclical value (scalar or array) to sin/cos components."""
    theta = 2 * np.pi * np.asarray(hour_fraction, dtype=np.float64) / period
    return np.sin(theta), np.cos(theta)


def hour_fraction(ts: datetime, tz: tzinfo) -> float:
    """Hour of day plus minutes as a fraction, in the given zone."""
    local = ts.astimezone(tz)
    return local.hour + local.minute / 60.0


def circadian_columns(
    bin_times: Sequence[datetime],
    built_at: datetime,
    mode: CircadianMode,
    tz: tzinfo
) -> Tuple[np.ndarray, np.ndarray]:
    """hour_sin/hour_cos columns for a window under the given convention."""
    if mode == CircadianMode.PER_BIN:
        hours = np.array([hour_fraction(t, tz) for t in bin_times])
    else:
        hours = np.full(len(bin_times), hour_fraction(built_at, tz))
    return sincos(hours, 24.0)


@dataclass(frozen=True, eq=False)
class FeatureWindow:
    """
    Immutable feature window shared by all ensemble members in a cycle.

    The backing array is read-only; model_input() and to_array() always
    return fresh copies so members can scale in place without racing.
    """
    values: np.ndarray
    columns: Tuple[str, ...]
    bin_times: Tuple[datetime, ...]
    built_at: datetime
    circadian: CircadianMode = CircadianMode.NOW
    tz: tzinfo = timezone.utc
    source_name: str = ""
    used_fallback: bool = False
    defaulted: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        frozen = np.array(self.values, dtype=np.float64, copy=True)
        frozen.setflags(write=False)
        object.__setattr__(self, "values", frozen)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    def to_array(self) -> np.ndarray:
        return self.values.copy()

    def column(self, name: str, circadian: Optional[CircadianMode] = None) -> np.ndarray:
        """
        Copy of one column, computing time-derived columns on demand.

        Args:
            name: Window column, or hour_sin, hour_cos, hour_of_day, weekday or heart_rate_bpm
            circadian: Convention for hour_sin/hour_cos (default: the window's)

        Raises:
            ShapeMismatch: If the column is neither stored nor derivable
        """
        mode = circadian or self.circadian
        if name in ("hour_sin", "hour_cos") and (mode != self.circadian or name not in self.columns):
            sin_col, cos_col = circadian_columns(self.bin_times, self.built_at, mode, self.tz)
            return sin_col if name == "hour_sin" else cos_col
        if name == "hour_of_day":
            return np.array([t.astimezone(self.tz).hour for t in self.bin_times], dtype=np.float64)
        if name == "weekday":
            return np.array([t.astimezone(self.tz).weekday() for t in self.bin_times], dtype=np.float64)
        if name == "heart_rate_bpm" and "heart_rate" in self.columns:
            return self.values[:, self.columns.index("heart_rate")] * HEART_RATE_SCALE + RESTING_HEART_RATE
        if name in self.columns:
            return self.values[:, self.columns.index(name)].copy()
        raise ShapeMismatch(f"Window has no column '{name}'")

    def model_input(self, spec) -> np.ndarray:
        """
        Private float32 copy of the window laid out for one model.

        Takes the last `timesteps` rows, the model's columns in its own order
        and its own circadian convention.

        Raises:
            ShapeMismatch: If the result does not equal spec.input_shape
        """
        timesteps, n_features = spec.input_shape
        if timesteps > len(self.bin_times):
            raise ShapeMismatch(
                f"Model {spec.index} expects {timesteps} timesteps, window has {len(self.bin_times)}"
            )
        if len(spec.feature_columns) != n_features:
            raise ShapeMismatch(
                f"Model {spec.index} declares {n_features} features but lists {len(spec.feature_columns)}"
            )
        columns = [self.column(name, spec.circadian)[-timesteps:] for name in spec.feature_columns]
        matrix = np.column_stack(columns).astype(np.float32)
        if matrix.shape != tuple(spec.input_shape):
            raise ShapeMismatch(f"Model {spec.index} expects {spec.input_shape}, got {matrix.shape}")
        if not np.all(np.isfinite(matrix)):
            raise ShapeMismatch(f"Model {spec.index} input contains non-finite values")
        return matrix


def _to_utc_index(times: Sequence[datetime]) -> pd.DatetimeIndex:
    return pd.DatetimeIndex(pd.to_datetime(list(times), utc=True))


def resample_nearest_before(samples: Sequence[Sample], bin_times: Sequence[datetime]) -> np.ndarray:
    """
    Value of the nearest sample at or before each bin time.

    Leading bins with no earlier sample are padded with the oldest available
    value. Returns NaN everywhere if `samples` is empty.
    """
    if not samples:
        return np.full(len(bin_times), np.nan)

    series = pd.Series(
        [s.value for s in samples],
        index=_to_utc_index([s.timestamp for s in samples]),
        dtype=np.float64,
    ).sort_index()
    series = series[~series.index.duplicated(keep="last")]

    binned = series.reindex(_to_utc_index(bin_times), method="ffill")
    binned = binned.bfill()
    return binned.to_numpy(dtype=np.float64)


def first_difference_rate(values: np.ndarray, step_minutes: float) -> np.ndarray:
    """Per-minute first difference; the first bin's trend is 0."""
    if len(values) == 0:
        return values.copy()
    return np.concatenate([[0.0], np.diff(values)]) / step_minutes


class FeatureWindowBuilder:
    """
    Builds FeatureWindows from a TimeSeriesSourceAdapter.

    Parameterized by (timesteps, columns) so the same code serves the 24x8
    ensemble and the 8x4 legacy family.
    """

    def __init__(
        self,
        timesteps: int = SEQ_LENGTH,
        columns: Sequence[str] = tuple(FEATURE_COLUMNS),
        step_minutes: int = SAMPLING_MIN,
        circadian: CircadianMode = CircadianMode.NOW,
        iob_cob: Optional[IOBCOBService] = None,
        default_heart_rate: float = RESTING_HEART_RATE,
        default_glucose_mgdl: float = DEFAULT_GLUCOSE_MGDL,
        local_tz: tzinfo = timezone.utc,
        sample_lookback_min: int = SAMPLE_LOOKBACK_MIN
    ):
        unknown = [c for c in columns if c not in FEATURE_COLUMNS]
        if unknown:
            raise ValueError(f"Unknown feature columns: {unknown}")
        if timesteps < 1:
            raise ValueError("timesteps must be at least 1")
        self.timesteps = timesteps
        self.columns = tuple(columns)
        self.step_minutes = step_minutes
        self.circadian = circadian
        self.iob_cob = iob_cob or IOBCOBService()
        self.default_heart_rate = default_heart_rate
        self.default_glucose_mgdl = default_glucose_mgdl
        self.local_tz = local_tz
        self.sample_lookback_min = sample_lookback_min

    @classmethod
    def from_settings(cls, settings, **overrides) -> "FeatureWindowBuilder":
        """Create a builder from application settings."""
        params = dict(
            timesteps=settings.window_timesteps,
            step_minutes=settings.window_step_minutes,
            iob_cob=IOBCOBService.from_settings(settings),
            default_heart_rate=settings.default_heart_rate,
            default_glucose_mgdl=settings.default_glucose_mgdl,
            local_tz=ZoneInfo(settings.local_timezone),
        )
        params.update(overrides)
        return cls(**params)

    @property
    def expected_shape(self) -> Tuple[int, int]:
        return self.timesteps, len(self.columns)

    def bin_times(self, now: datetime) -> List[datetime]:
        """Evenly spaced bin centres ending at `now`, oldest first."""
        step = timedelta(minutes=self.step_minutes)
        return [now - step * (self.timesteps - 1 - i) for i in range(self.timesteps)]

    async def _binned_signal(
        self,
        source,
        signal: SignalKind,
        bin_times: List[datetime],
        now: datetime
    ) -> np.ndarray:
        start = bin_times[0] - timedelta(minutes=self.sample_lookback_min)
        samples = await source.fetch_range(signal, start, now)
        values = resample_nearest_before(samples, bin_times)
        if np.all(np.isnan(values)):
            # Nothing inside the window; reuse the last reading before it
            latest = await source.fetch_latest_sample(signal, bin_times[0])
            if latest is not None:
                values = np.full(len(bin_times), latest.value, dtype=np.float64)
        return values

    def _dose_bins(self, doses, bin_times: List[datetime]) -> Tuple[np.ndarray, datetime]:
        """Per-bin dose totals; bin i covers (t_i - step, t_i]."""
        first_edge = bin_times[0] - timedelta(minutes=self.step_minutes)
        amounts = np.zeros(len(bin_times), dtype=np.float64)
        for dose in doses:
            if dose.timestamp <= first_edge or dose.timestamp > bin_times[-1]:
                continue
            offset_min = (dose.timestamp - first_edge).total_seconds() / 60.0
            index = min(max(math.ceil(offset_min / self.step_minutes) - 1, 0), len(bin_times) - 1)
            amounts[index] += dose.amount
        return amounts, first_edge

    async def _dose_activity(self, source, kind: DoseKind, bin_times: List[datetime]) -> np.ndarray:
        span_hours = (bin_times[-1] - bin_times[0]).total_seconds() / 3600.0
        hours_back = self.iob_cob.window_hours(kind) + span_hours + self.step_minutes / 60.0
        doses = await source.fetch_recent_doses(kind, hours_back, as_of=bin_times[-1])

        amounts, first_edge = self._dose_bins(doses, bin_times)
        history = self.iob_cob.history_contribution(doses, bin_times[0], kind, before=first_edge)
        return self.iob_cob.propagate(amounts, history, kind, self.step_minutes)

    async def build_frame(self, now: datetime, source, allow_defaults: bool = False) -> Tuple[pd.DataFrame, FrozenSet[str]]:
        """
        Build every canonical feature column for the bins ending at `now`.

        Args:
            now: Time of the last bin
            source: TimeSeriesSourceAdapter to read from
            allow_defaults: Permit a device-default glucose when no history exists

        Returns:
            (DataFrame indexed by bin time, set of signals filled with defaults)

        Raises:
            DataUnavailable: If no glucose exists and defaults are not allowed
        """
        bin_times = self.bin_times(now)
        defaulted = set()

        glucose = await self._binned_signal(source, SignalKind.GLUCOSE, bin_times, now)
        if np.all(np.isnan(glucose)):
            if not allow_defaults:
                raise DataUnavailable(f"No glucose history from {source.name}")
            logger.warning(f"No glucose history from {source.name}, using {self.default_glucose_mgdl} mg/dL")
            glucose = np.full(len(bin_times), self.default_glucose_mgdl)
            defaulted.add(SignalKind.GLUCOSE.value)
        glucose = np.clip(glucose, GLUCOSE_FEATURE_MIN, GLUCOSE_FEATURE_MAX)
        glucose_mmol = glucose / MGDL_PER_MMOL

        heart_rate = await self._binned_signal(source, SignalKind.HEART_RATE, bin_times, now)
        if np.all(np.isnan(heart_rate)):
            logger.info(f"No heart rate from {source.name}, using resting {self.default_heart_rate} bpm")
            heart_rate = np.full(len(bin_times), self.default_heart_rate)
            defaulted.add(SignalKind.HEART_RATE.value)

        iob = await self._dose_activity(source, DoseKind.INSULIN, bin_times)
        cob = await self._dose_activity(source, DoseKind.CARBS, bin_times)
        hour_sin, hour_cos = circadian_columns(bin_times, now, self.circadian, self.local_tz)

        frame = pd.DataFrame(
            {
                "blood_glucose": glucose_mmol,
                "insulin_on_board": iob,
                "carbs_on_board": cob,
                "heart_rate": (heart_rate - RESTING_HEART_RATE) / HEART_RATE_SCALE,
                "bg_trend": first_difference_rate(glucose_mmol, self.step_minutes),
                "hr_trend": first_difference_rate(heart_rate, self.step_minutes),
                "hour_sin": hour_sin,
                "hour_cos": hour_cos,
            },
            index=_to_utc_index(bin_times),
        )
        return frame[FEATURE_COLUMNS], frozenset(defaulted)

    async def build_window(self, now: datetime, source, allow_defaults: bool = False) -> FeatureWindow:
        """
        Build the window ending at `now`.

        Raises:
            DataUnavailable: If no usable glucose exists
            ShapeMismatch: If the result is not (timesteps, len(columns)) or not finite
        """
        frame, defaulted = await self.build_frame(now, source, allow_defaults)
        values = frame[list(self.columns)].to_numpy(dtype=np.float64)

        if values.shape != self.expected_shape or values.size != self.timesteps * len(self.columns):
            raise ShapeMismatch(f"Built window {values.shape}, expected {self.expected_shape}")
        if not np.all(np.isfinite(values)):
            raise ShapeMismatch("Built window contains non-finite values")

        logger.debug(
            f"Built {values.shape} window from {source.name} "
            f"(fallback={source.is_fallback}, defaults={sorted(defaulted)})"
        )
        return FeatureWindow(
            values=values,
            columns=self.columns,
            bin_times=tuple(self.bin_times(now)),
            built_at=now,
            circadian=self.circadian,
            tz=self.local_tz,
            source_name=source.name,
            used_fallback=source.is_fallback,
            defaulted=defaulted,
        )


def legacy_window_builder(**kwargs) -> FeatureWindowBuilder:
    """Builder for the 8x4 legacy model family."""
    kwargs.setdefault("timesteps", LEGACY_SEQ_LENGTH)
    kwargs.setdefault("columns", tuple(LEGACY_FEATURE_COLUMNS))
    return FeatureWindowBuilder(**kwargs)
