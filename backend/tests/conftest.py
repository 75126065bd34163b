"""
Pytest configuration and fixtures for Glucose Ensemble tests.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import numpy as np

# Add src to path
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    """Fixed, timezone-aware prediction time."""
    return NOW


@pytest.fixture
def mock_settings():
    """Mock application settings."""
    with patch("config.get_settings") as mock:
        settings = MagicMock()
        settings.cosmos_endpoint = "https://test.documents.azure.com:443/"
        settings.cosmos_key = "test_key"
        settings.cosmos_database = "test_db"
        settings.insulin_window_hours = 4.0
        settings.carb_window_hours = 3.0
        settings.decay_epsilon = 0.01
        settings.decay_min_threshold = 0.01
        settings.recent_decay_rate_per_hour = 0.028
        settings.max_insulin_on_board = 10.0
        settings.max_carbs_on_board = 100.0
        mock.return_value = settings
        yield settings


def make_glucose(values, end, step_minutes=5):
    """Glucose samples (mg/dL) ending at `end`, oldest first."""
    from models.schemas import Sample, SignalKind

    count = len(values)
    return [
        Sample(
            timestamp=end - timedelta(minutes=step_minutes * (count - 1 - i)),
            value=float(value),
            signal=SignalKind.GLUCOSE
        )
        for i, value in enumerate(values)
    ]


def make_dose(kind, amount, at):
    from models.schemas import Dose, DoseKind

    return Dose(timestamp=at, amount=amount, kind=DoseKind(kind))


def make_adapter(samples=None, doses=None, name="primary", is_fallback=False, **kwargs):
    """TimeSeriesSourceAdapter over an in-memory backend."""
    from services.time_series_source import InMemoryTimeSeriesSource, TimeSeriesSourceAdapter

    backend = InMemoryTimeSeriesSource(samples=samples, doses=doses, **kwargs)
    return TimeSeriesSourceAdapter(backend, name=name, is_fallback=is_fallback)


class StubPredictor:
    """Predictor returning a fixed raw output, or raising."""

    def __init__(self, spec, output=0.0, error=None, delay=0.0):
        self.spec = spec
        self.output = output
        self.error = error
        self.delay = delay
        self.calls = []

    def predict(self, inputs: np.ndarray) -> float:
        import time

        self.calls.append(inputs)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.output


def delta_spec(index, **overrides):
    """
    Delta-output spec with an identity output scale, so raw output == mmol/L change.
    """
    from ml.models.model_specs import get_model_spec
    from dataclasses import replace

    params = dict(output_mean=0.0, output_scale=1.0)
    params.update(overrides)
    return replace(get_model_spec(index), **params)


@pytest.fixture
def rising_glucose(now):
    """[120, 122, 125, 128, 130] mg/dL over the last 20 minutes."""
    return make_glucose([120, 122, 125, 128, 130], now)


@pytest.fixture
def mock_cosmos_container():
    """Mock CosmosDB container."""
    container = MagicMock()
    manager = MagicMock()
    manager.get_container.return_value = container
    yield manager, container
