"""
IOB/COB Decay Engine for Glucose Ensemble

Implements:
- Normalized-window exponential decay for long lookback (history contribution)
- Exponential-rate propagation through regular feature bins
- Bilinear insulin activity and linear carb absorption curves
- Insulin on Board / Carbs on Board with physiological clamping
"""
import math
import logging
from datetime import datetime
from typing import List, Optional, Sequence

import numpy as np

from models.schemas import Dose, DoseKind
from config import get_settings

logger = logging.getLogger(__name__)


DEFAULT_EPSILON = 0.01          # fraction left at the window boundary
DEFAULT_MIN_THRESHOLD = 0.01    # decayed amounts at or below this are inactive
DEFAULT_RATE_PER_HOUR = 0.028   # per-hour constant for bin-to-bin propagation
MAX_INSULIN_ON_BOARD = 10.0     # units
MAX_CARBS_ON_BOARD = 100.0      # grams


def hours_between(earlier: datetime, later: datetime) -> float:
    """Hours from `earlier` to `later` (negative if `earlier` is in the future)."""
    return (later - earlier).total_seconds() / 3600.0


class ExponentialRateKernel:
    """
    Fixed-rate exponential decay, exp(-rate * hours).

    Used for rolling propagation through evenly spaced bins, where the
    history contribution has already been injected at the oldest bin.
    """

    def __init__(self, rate_per_hour: float = DEFAULT_RATE_PER_HOUR):
        if rate_per_hour < 0:
            raise ValueError("rate_per_hour must be non-negative")
        self.rate_per_hour = rate_per_hour

    def factor(self, hours_elapsed: float) -> float:
        if hours_elapsed < 0:
            return 0.0
        return math.exp(-self.rate_per_hour * hours_elapsed)

    def is_active(self, amount: float, hours_elapsed: float) -> bool:
        return hours_elapsed >= 0 and amount > 0

    def propagate(self, amounts: Sequence[float], step_minutes: float = 5.0) -> np.ndarray:
        """
        Carry activity forward bin by bin.

        Index 0 is the OLDEST bin: out[i] = out[i-1] * exp(-rate * dt) + amounts[i].

        Args:
            amounts: Per-bin dose amounts, oldest first
            step_minutes: Spacing between bins

        Returns:
            Array of accumulated activity, oldest first
        """
        step_decay = self.factor(step_minutes / 60.0)
        out = np.zeros(len(amounts), dtype=np.float64)
        running = 0.0
        for i, amount in enumerate(amounts):
            running = running * step_decay + float(amount)
            out[i] = running
        return out


class NormalizedWindowKernel:
    """
    Exponential decay normalized so that `epsilon` remains at the window edge.

    k = ln(1/epsilon) / window_hours, active(t) = amount * exp(-k * t).
    Doses outside [0, window_hours] or decayed below `min_threshold`
    contribute exactly zero.
    """

    def __init__(
        self,
        window_hours: float,
        epsilon: float = DEFAULT_EPSILON,
        min_threshold: float = DEFAULT_MIN_THRESHOLD
    ):
        if window_hours <= 0:
            raise ValueError("window_hours must be positive")
        if not 0 < epsilon < 1:
            raise ValueError("epsilon must be in (0, 1)")
        self.window_hours = window_hours
        self.epsilon = epsilon
        self.min_threshold = min_threshold
        self.decay_constant = math.log(1.0 / epsilon) / window_hours

    def factor(self, hours_elapsed: float) -> float:
        if hours_elapsed < 0:
            return 0.0
        return math.exp(-self.decay_constant * max(0.0, hours_elapsed))

    def is_active(self, amount: float, hours_elapsed: float) -> bool:
        if hours_elapsed < 0 or hours_elapsed > self.window_hours:
            return False
        return amount * self.factor(hours_elapsed) > self.min_threshold


class BilinearInsulinKernel:
    """Insulin activity: 1 -> 0.5 over the first hour, 0.5 -> 0 by hour 4."""

    window_hours = 4.0

    def factor(self, hours_elapsed: float) -> float:
        h = hours_elapsed
        if h < 0:
            return 0.0
        if h < 1.0:
            return 1.0 - 0.5 * h
        if h < 4.0:
            return 0.5 - 0.5 * (h - 1.0) / 3.0
        return 0.0

    def is_active(self, amount: float, hours_elapsed: float) -> bool:
        return 0 <= hours_elapsed < self.window_hours and amount > 0


class LinearCarbKernel:
    """Carbs absorbed linearly over `absorption_hours`."""

    def __init__(self, absorption_hours: float = 4.0):
        self.window_hours = absorption_hours

    def factor(self, hours_elapsed: float) -> float:
        if hours_elapsed < 0:
            return 0.0
        return max(0.0, 1.0 - hours_elapsed / self.window_hours)

    def is_active(self, amount: float, hours_elapsed: float) -> bool:
        return 0 <= hours_elapsed < self.window_hours and amount > 0


def active_amount(doses: Sequence[Dose], as_of: datetime, kernel) -> float:
    """
    Sum the still-active portion of each dose at `as_of`.

    Args:
        doses: Doses of a single kind
        as_of: Evaluation time
        kernel: Any kernel exposing factor() and is_active()

    Returns:
        Unclamped active amount
    """
    total = 0.0
    for dose in doses:
        hours = hours_between(dose.timestamp, as_of)
        if kernel.is_active(dose.amount, hours):
            total += dose.amount * kernel.factor(hours)
    return total


class IOBCOBService:
    """Service for calculating Insulin on Board and Carbs on Board."""

    def __init__(
        self,
        insulin_window_hours: float = 4.0,
        carb_window_hours: float = 3.0,
        epsilon: float = DEFAULT_EPSILON,
        min_threshold: float = DEFAULT_MIN_THRESHOLD,
        recent_rate_per_hour: float = DEFAULT_RATE_PER_HOUR,
        max_iob: float = MAX_INSULIN_ON_BOARD,
        max_cob: float = MAX_CARBS_ON_BOARD
    ):
        """
        Initialize IOB/COB service with configurable parameters.

        Args:
            insulin_window_hours: Lookback for insulin history (default: 4h)
            carb_window_hours: Lookback for carb history (default: 3h)
            epsilon: Fraction remaining at the window boundary
            min_threshold: Decayed amounts at or below this are inactive
            recent_rate_per_hour: Decay rate used for bin-to-bin propagation
            max_iob: Upper clamp for insulin on board (units)
            max_cob: Upper clamp for carbs on board (grams)
        """
        self.insulin_kernel = NormalizedWindowKernel(insulin_window_hours, epsilon, min_threshold)
        self.carb_kernel = NormalizedWindowKernel(carb_window_hours, epsilon, min_threshold)
        self.rate_kernel = ExponentialRateKernel(recent_rate_per_hour)
        self.max_iob = max_iob
        self.max_cob = max_cob

    @classmethod
    def from_settings(cls, settings=None) -> "IOBCOBService":
        """Create service instance from application settings."""
        settings = settings or get_settings()
        return cls(
            insulin_window_hours=settings.insulin_window_hours,
            carb_window_hours=settings.carb_window_hours,
            epsilon=settings.decay_epsilon,
            min_threshold=settings.decay_min_threshold,
            recent_rate_per_hour=settings.recent_decay_rate_per_hour,
            max_iob=settings.max_insulin_on_board,
            max_cob=settings.max_carbs_on_board
        )

    def kernel_for(self, kind: DoseKind) -> NormalizedWindowKernel:
        return self.insulin_kernel if kind == DoseKind.INSULIN else self.carb_kernel

    def window_hours(self, kind: DoseKind) -> float:
        return self.kernel_for(kind).window_hours

    def clamp(self, value: float, kind: DoseKind) -> float:
        """Clamp to the physiological bound for the dose kind."""
        upper = self.max_iob if kind == DoseKind.INSULIN else self.max_cob
        if not math.isfinite(value):
            logger.warning(f"Non-finite {kind.value} activity {value}, using 0")
            return 0.0
        return min(max(value, 0.0), upper)

    def calculate_iob(self, doses: List[Dose], at_time: datetime) -> float:
        """
        Calculate Insulin on Board at a specific time.

        Args:
            doses: Insulin doses (other kinds are ignored)
            at_time: Time to calculate IOB for

        Returns:
            Total IOB in units, clamped to [0, max_iob]
        """
        insulin = [d for d in doses if d.kind == DoseKind.INSULIN]
        return round(self.clamp(active_amount(insulin, at_time, self.insulin_kernel), DoseKind.INSULIN), 3)

    def calculate_cob(self, doses: List[Dose], at_time: datetime) -> float:
        """
        Calculate Carbs on Board at a specific time.

        Args:
            doses: Carb doses (other kinds are ignored)
            at_time: Time to calculate COB for

        Returns:
            Total COB in grams, clamped to [0, max_cob]
        """
        carbs = [d for d in doses if d.kind == DoseKind.CARBS]
        return round(self.clamp(active_amount(carbs, at_time, self.carb_kernel), DoseKind.CARBS), 2)

    def history_contribution(
        self,
        doses: Sequence[Dose],
        as_of: datetime,
        kind: DoseKind,
        before: Optional[datetime] = None
    ) -> float:
        """
        Long-window activity at `as_of` from doses at or before `before`.

        Used once per window, at the earliest bin.
        """
        cutoff = before or as_of
        relevant = [d for d in doses if d.kind == kind and d.timestamp <= cutoff]
        return active_amount(relevant, as_of, self.kernel_for(kind))

    def propagate(
        self,
        per_bin_amounts: Sequence[float],
        history: float,
        kind: DoseKind,
        step_minutes: float = 5.0
    ) -> np.ndarray:
        """
        Inject `history` at bin 0 (oldest) and propagate forward.

        Returns:
            Clamped per-bin activity, oldest first
        """
        amounts = np.asarray(per_bin_amounts, dtype=np.float64).copy()
        if len(amounts) == 0:
            return amounts
        amounts[0] += history
        activity = self.rate_kernel.propagate(amounts, step_minutes)
        upper = self.max_iob if kind == DoseKind.INSULIN else self.max_cob
        return np.clip(activity, 0.0, upper)
