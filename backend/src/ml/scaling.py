"""
Per-model Scaler
Z-score input normalization and output de-normalization with clamping.
"""
import math
import logging
from typing import Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class ModelScaler:
    """
    Scaler bound to one ensemble member's constants.

    normalize:   (x - input_mean[f]) / input_scale[f] per feature column
    denormalize: raw * output_scale + output_mean (+ current BG for delta
                 models), then clamped to [min_bound, max_bound]
    """

    def __init__(
        self,
        input_mean: Sequence[float],
        input_scale: Sequence[float],
        output_mean: float = 0.0,
        output_scale: float = 1.0,
        min_bound: float = -math.inf,
        max_bound: float = math.inf,
        is_delta: bool = True
    ):
        self.input_mean = np.asarray(input_mean, dtype=np.float64)
        self.input_scale = np.asarray(input_scale, dtype=np.float64)
        if self.input_mean.shape != self.input_scale.shape:
            raise ValueError("input_mean and input_scale must have the same length")
        if np.any(self.input_scale == 0):
            raise ValueError("input_scale must not contain zeros")
        if output_scale == 0:
            raise ValueError("output_scale must not be zero")
        if min_bound > max_bound:
            raise ValueError("min_bound must not exceed max_bound")
        self.output_mean = float(output_mean)
        self.output_scale = float(output_scale)
        self.min_bound = float(min_bound)
        self.max_bound = float(max_bound)
        self.is_delta = is_delta

    @classmethod
    def from_spec(cls, spec) -> "ModelScaler":
        return cls(
            input_mean=spec.input_mean,
            input_scale=spec.input_scale,
            output_mean=spec.output_mean,
            output_scale=spec.output_scale,
            min_bound=spec.min_bound,
            max_bound=spec.max_bound,
            is_delta=spec.is_delta,
        )

    @property
    def n_features(self) -> int:
        return len(self.input_mean)

    def normalize(self, window: np.ndarray) -> np.ndarray:
        """
        Normalize a [T, F] window (or a single [F] row).

        Returns:
            New float32 array; the input is never modified
        """
        values = np.asarray(window, dtype=np.float64)
        if values.shape[-1] != self.n_features:
            raise ValueError(f"Expected {self.n_features} features, got {values.shape[-1]}")
        return ((values - self.input_mean) / self.input_scale).astype(np.float32)

    def normalize_inverse(self, normalized: np.ndarray) -> np.ndarray:
        """Undo normalize()."""
        return np.asarray(normalized, dtype=np.float64) * self.input_scale + self.input_mean

    def clamp(self, value: float) -> float:
        return min(max(value, self.min_bound), self.max_bound)

    def denormalize(self, raw: float, current_bg_mmol: Optional[float] = None) -> float:
        """
        Convert a raw model output to an absolute physiological value.

        Args:
            raw: Scalar returned by the predictor
            current_bg_mmol: Baseline added for delta models

        Returns:
            Clamped absolute value
        """
        value = raw * self.output_scale + self.output_mean
        if self.is_delta:
            if current_bg_mmol is None:
                raise ValueError("current_bg_mmol is required for delta models")
            value += current_bg_mmol
        return self.clamp(value)

    def normalize_output(self, value: float, current_bg_mmol: Optional[float] = None) -> float:
        """Raw output that denormalize() maps back to `value` (before clamping)."""
        if self.is_delta:
            if current_bg_mmol is None:
                raise ValueError("current_bg_mmol is required for delta models")
            value -= current_bg_mmol
        return (value - self.output_mean) / self.output_scale
