"""
Tests for the IOB (Insulin on Board) / COB (Carbs on Board) decay engine.
These calculations feed two columns of every feature window.
"""
import math
import pytest
from datetime import datetime, timedelta, timezone

import numpy as np

from conftest import make_dose


NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


class TestIOBCOBService:
    """Test the IOB/COB service class."""

    def test_service_creation(self):
        """Test service instantiation with default values."""
        from services.iob_cob_service import IOBCOBService

        service = IOBCOBService()
        assert service.insulin_kernel.window_hours == 4.0
        assert service.carb_kernel.window_hours == 3.0
        assert service.max_iob == 10.0
        assert service.max_cob == 100.0

    def test_service_from_settings(self, mock_settings):
        """Settings drive windows, thresholds and clamps."""
        from services.iob_cob_service import IOBCOBService
        from models.schemas import DoseKind

        mock_settings.insulin_window_hours = 5.0
        mock_settings.max_carbs_on_board = 80.0
        service = IOBCOBService.from_settings(mock_settings)

        assert service.window_hours(DoseKind.INSULIN) == 5.0
        assert service.window_hours(DoseKind.CARBS) == 3.0
        assert service.max_cob == 80.0

    def test_decay_constant_leaves_epsilon_at_window_edge(self):
        """k = ln(1/epsilon) / window so exactly epsilon remains at the boundary."""
        from services.iob_cob_service import NormalizedWindowKernel

        kernel = NormalizedWindowKernel(window_hours=4.0, epsilon=0.01)
        assert kernel.decay_constant == pytest.approx(math.log(100) / 4.0)
        assert kernel.factor(4.0) == pytest.approx(0.01)


class TestIOBCalculations:
    """Test IOB calculations using the service."""

    def test_iob_empty_doses(self):
        """Empty dose list should return 0 IOB."""
        from services.iob_cob_service import IOBCOBService

        assert IOBCOBService().calculate_iob([], NOW) == 0.0

    def test_iob_fresh_dose(self):
        """A dose given right now is fully active."""
        from services.iob_cob_service import IOBCOBService

        iob = IOBCOBService().calculate_iob([make_dose("insulin", 3.0, NOW)], NOW)
        assert iob == pytest.approx(3.0)

    def test_iob_monotonically_decreasing(self):
        """IOB never increases as time passes with no new doses."""
        from services.iob_cob_service import IOBCOBService

        service = IOBCOBService()
        doses = [make_dose("insulin", 4.0, NOW - timedelta(minutes=10))]
        values = [service.calculate_iob(doses, NOW + timedelta(minutes=m)) for m in range(0, 300, 5)]

        assert all(later <= earlier for earlier, later in zip(values, values[1:]))

    def test_iob_zero_beyond_window(self):
        """Doses older than the insulin window contribute exactly zero."""
        from services.iob_cob_service import IOBCOBService

        dose = make_dose("insulin", 8.0, NOW - timedelta(hours=4, minutes=1))
        assert IOBCOBService().calculate_iob([dose], NOW) == 0.0

    def test_future_dose_is_inactive(self):
        """Doses after the evaluation time are ignored."""
        from services.iob_cob_service import IOBCOBService

        dose = make_dose("insulin", 2.0, NOW + timedelta(minutes=5))
        assert IOBCOBService().calculate_iob([dose], NOW) == 0.0

    def test_iob_ignores_carb_doses(self):
        """Carb entries do not count as insulin."""
        from services.iob_cob_service import IOBCOBService

        assert IOBCOBService().calculate_iob([make_dose("carbs", 50, NOW)], NOW) == 0.0

    def test_iob_clamped_to_maximum(self):
        """Stacked boluses are clamped to the physiological bound."""
        from services.iob_cob_service import IOBCOBService

        doses = [make_dose("insulin", 6.0, NOW - timedelta(minutes=m)) for m in (0, 5, 10)]
        assert IOBCOBService().calculate_iob(doses, NOW) == 10.0


class TestCOBCalculations:
    """Test COB calculations using the service."""

    def test_cob_half_window_decay(self):
        """Carbs decay exponentially within the 3 hour window."""
        from services.iob_cob_service import IOBCOBService

        service = IOBCOBService()
        cob = service.calculate_cob([make_dose("carbs", 40, NOW - timedelta(hours=1.5))], NOW)
        assert cob == pytest.approx(40 * math.exp(-math.log(100) / 3.0 * 1.5), abs=0.01)

    def test_cob_clamped_to_maximum(self):
        """COB never exceeds the configured maximum."""
        from services.iob_cob_service import IOBCOBService

        service = IOBCOBService(max_cob=100.0)
        assert service.calculate_cob([make_dose("carbs", 250, NOW)], NOW) == 100.0

    def test_tiny_remainder_below_threshold_is_inactive(self):
        """Decayed amounts at or below the threshold contribute nothing."""
        from services.iob_cob_service import IOBCOBService

        service = IOBCOBService(min_threshold=0.5)
        cob = service.calculate_cob([make_dose("carbs", 1.0, NOW - timedelta(hours=2))], NOW)
        assert cob == 0.0


class TestClamp:
    """Clamping of computed activity."""

    def test_non_finite_becomes_zero(self):
        """NaN and infinity are treated as zero activity."""
        from services.iob_cob_service import IOBCOBService
        from models.schemas import DoseKind

        service = IOBCOBService()
        assert service.clamp(float("nan"), DoseKind.INSULIN) == 0.0
        assert service.clamp(float("inf"), DoseKind.CARBS) == 0.0

    def test_negative_clamped_to_zero(self):
        """Activity is never negative."""
        from services.iob_cob_service import IOBCOBService
        from models.schemas import DoseKind

        assert IOBCOBService().clamp(-1.0, DoseKind.INSULIN) == 0.0


class TestKernels:
    """Alternative activity curves."""

    def test_bilinear_insulin_shape(self):
        """1.0 at dose time, 0.5 after one hour, 0 at four hours."""
        from services.iob_cob_service import BilinearInsulinKernel

        kernel = BilinearInsulinKernel()
        assert kernel.factor(0.0) == 1.0
        assert kernel.factor(1.0) == pytest.approx(0.5)
        assert kernel.factor(2.5) == pytest.approx(0.25)
        assert kernel.factor(4.0) == 0.0
        assert kernel.factor(-0.1) == 0.0

    def test_linear_carb_absorption(self):
        """Carbs absorb linearly over the absorption period."""
        from services.iob_cob_service import LinearCarbKernel, active_amount

        kernel = LinearCarbKernel(absorption_hours=4.0)
        doses = [make_dose("carbs", 40, NOW - timedelta(hours=1))]
        assert active_amount(doses, NOW, kernel) == pytest.approx(30.0)
        assert active_amount(doses, NOW + timedelta(hours=3), kernel) == 0.0

    def test_exponential_rate_propagation(self):
        """Each bin carries the previous bin forward, decayed, plus its own dose."""
        from services.iob_cob_service import ExponentialRateKernel

        kernel = ExponentialRateKernel(rate_per_hour=0.028)
        out = kernel.propagate([2.0, 0.0, 1.0], step_minutes=5)
        step = math.exp(-0.028 * 5 / 60)

        assert out[0] == pytest.approx(2.0)
        assert out[1] == pytest.approx(2.0 * step)
        assert out[2] == pytest.approx(2.0 * step * step + 1.0)

    def test_propagation_without_doses_is_non_increasing(self):
        """With only history injected at the oldest bin, activity only decays."""
        from services.iob_cob_service import IOBCOBService
        from models.schemas import DoseKind

        activity = IOBCOBService().propagate(np.zeros(24), 3.0, DoseKind.INSULIN)
        assert activity[0] == pytest.approx(3.0)
        assert np.all(np.diff(activity) <= 0)

    def test_history_contribution_respects_cutoff(self):
        """Only doses at or before the cutoff count toward history."""
        from services.iob_cob_service import IOBCOBService
        from models.schemas import DoseKind

        service = IOBCOBService()
        doses = [
            make_dose("insulin", 2.0, NOW - timedelta(hours=1)),
            make_dose("insulin", 5.0, NOW - timedelta(minutes=2)),
        ]
        history = service.history_contribution(doses, NOW, DoseKind.INSULIN, before=NOW - timedelta(minutes=5))
        expected = 2.0 * math.exp(-math.log(100) / 4.0 * 1.0)
        assert history == pytest.approx(expected)
