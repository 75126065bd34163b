"""
Predictor capability shared by every ensemble member.
"""
from typing import Protocol, runtime_checkable

import numpy as np

from ..models.model_specs import ModelSpec


@runtime_checkable
class Predictor(Protocol):
    """A trained model: fixed-shape scaled window in, one raw scalar out."""

    spec: ModelSpec

    def predict(self, inputs: np.ndarray) -> float:
        """
        Args:
            inputs: Scaled float32 array of shape spec.input_shape (private copy)

        Returns:
            Raw output in the model's normalized units
        """
        ...
