"""
Prediction pipeline errors.

Per-model errors (ShapeMismatch, ModelInferenceFailure) are recovered inside
the orchestrator. The rest end the cycle and propagate to the trigger.
"""


class PredictionError(Exception):
    """Base class for prediction pipeline failures."""


class DataUnavailable(PredictionError):
    """No usable glucose reading from either the primary or fallback source."""


class ShapeMismatch(PredictionError):
    """Assembled tensor does not match a model's declared input shape."""


class ModelInferenceFailure(PredictionError):
    """A single model raised, timed out or returned malformed output."""

    def __init__(self, model_index: int, reason: str):
        super().__init__(f"Model {model_index} failed: {reason}")
        self.model_index = model_index
        self.reason = reason


class NoValidPredictions(PredictionError):
    """Zero ensemble members produced a usable prediction."""

    def __init__(self, failures: dict = None):
        failures = failures or {}
        super().__init__(f"No valid predictions ({len(failures)} models failed)")
        self.failures = failures


class LedgerWriteFailure(PredictionError):
    """A computed cycle could not be durably recorded."""
