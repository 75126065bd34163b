"""
Tests for the HTTP surface: prediction endpoints and health checks.
"""
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient

from conftest import NOW, StubPredictor, delta_spec, make_adapter, make_glucose


def build_service(samples, predictors=None):
    from database.repositories import InMemoryPredictionStore
    from ml.feature_engineering import FeatureWindowBuilder
    from services.ensemble_service import EnsembleOrchestrator
    from services.ledger_service import PredictionLedger
    from services.prediction_service import PredictionService

    if predictors is None:
        predictors = [
            StubPredictor(delta_spec(1), 0.2),
            StubPredictor(delta_spec(2), -0.1),
            StubPredictor(delta_spec(3), 0.4),
        ]
    return PredictionService(
        primary=make_adapter(samples),
        secondary=None,
        builder=FeatureWindowBuilder(),
        orchestrator=EnsembleOrchestrator.from_predictors(predictors),
        ledger=PredictionLedger(InMemoryPredictionStore()),
        sink=AsyncMock(),
    )


@pytest.fixture
def service():
    samples = make_glucose([120, 122, 125, 128, 130], NOW) + make_glucose([133], NOW + timedelta(minutes=20))
    return build_service(samples)


@pytest.fixture
def client_for():
    """TestClient over the app with a pre-built prediction service."""
    from main import app

    clients = []

    def _client(service):
        app.state.prediction_service = service
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _client

    for client in clients:
        client.__exit__(None, None, None)
    del app.state.prediction_service


class TestHealth:
    """Liveness and readiness."""

    def test_health(self, client_for, service):
        """Health returns status and version."""
        response = client_for(service).get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_ready_with_models(self, client_for, service):
        """Ready when the in-memory ledger and at least one model are present."""
        response = client_for(service).get("/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {"database": True, "ml_service": True}

    def test_not_ready_without_models(self, client_for):
        """An empty ensemble is not ready."""
        response = client_for(build_service([], predictors=[])).get("/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["ml_service"] is False


class TestCycleEndpoint:
    """POST /api/v1/predictions/cycle."""

    def test_cycle_success(self, client_for, service):
        """A successful cycle returns the event and the stored records."""
        response = client_for(service).post(
            "/api/v1/predictions/cycle",
            json={"timestamp": NOW.isoformat()}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["event"]["sequenceCount"] == 1
        assert round(data["event"]["aggregateValueMgdl"]) == 133
        assert len(data["records"]) == 4
        assert data["used_fallback"] is False

    def test_no_glucose_is_503(self, client_for):
        """Missing glucose maps to 503 with a stable message."""
        response = client_for(build_service([])).post(
            "/api/v1/predictions/cycle",
            json={"timestamp": NOW.isoformat()}
        )

        assert response.status_code == 503
        assert response.json()["detail"] == "No prediction available"

    def test_all_models_failing_is_503(self, client_for):
        """NoValidPredictions maps to 503."""
        predictors = [StubPredictor(delta_spec(1), error=RuntimeError("bad"))]
        response = client_for(build_service(make_glucose([130], NOW), predictors)).post(
            "/api/v1/predictions/cycle",
            json={"timestamp": NOW.isoformat()}
        )

        assert response.status_code == 503

    def test_ledger_failure_is_500(self, client_for, service):
        """A failed ledger write maps to 500."""
        service.ledger.store.insert_cycle = AsyncMock(side_effect=OSError("disk full"))

        response = client_for(service).post(
            "/api/v1/predictions/cycle",
            json={"timestamp": NOW.isoformat()}
        )

        assert response.status_code == 500


class TestLedgerEndpoints:
    """Backfill, export, accuracy and latest."""

    def test_latest_empty_is_404(self, client_for, service):
        """No cycles yet means no latest prediction."""
        response = client_for(service).get("/api/v1/predictions/latest")
        assert response.status_code == 404

    def test_cycle_backfill_latest_accuracy(self, client_for, service):
        """The full ledger lifecycle over HTTP."""
        client = client_for(service)
        client.post("/api/v1/predictions/cycle", json={"timestamp": NOW.isoformat()})

        backfill = client.post("/api/v1/predictions/backfill")
        assert backfill.status_code == 200
        assert backfill.json() == {"updated": 4, "total_records": 4}

        latest = client.get("/api/v1/predictions/latest").json()
        assert latest["isAggregate"] is True
        assert latest["actualBgMgdl"] == 133.0

        accuracy = client.get("/api/v1/predictions/accuracy").json()
        assert accuracy["total_records"] == 4
        assert {m["modelIndex"] for m in accuracy["models"]} == {0, 1, 2, 3}

    def test_export_csv(self, client_for, service):
        """The export is served as a CSV attachment."""
        client = client_for(service)
        client.post("/api/v1/predictions/cycle", json={"timestamp": NOW.isoformat()})

        response = client.get("/api/v1/predictions/export.csv", params={"tz": "America/Chicago"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        assert response.text.startswith("Timestamp_America_Chicago,Prediction_Count")

    def test_export_invalid_timezone_is_400(self, client_for, service):
        """Unknown zone names are rejected."""
        response = client_for(service).get(
            "/api/v1/predictions/export.csv",
            params={"tz": "Mars/Olympus_Mons"}
        )
        assert response.status_code == 400


class TestMiddleware:
    """Rate limiting of manual triggers."""

    def test_post_triggers_are_rate_limited(self):
        """POSTs beyond the per-minute limit get 429; GETs are unaffected."""
        from fastapi import FastAPI
        from main import RateLimitMiddleware

        app = FastAPI()
        app.add_middleware(RateLimitMiddleware, requests_per_minute=2)

        @app.post("/trigger")
        async def trigger():
            return {"ok": True}

        @app.get("/read")
        async def read():
            return {"ok": True}

        client = TestClient(app)
        statuses = [client.post("/trigger").status_code for _ in range(3)]

        assert statuses == [200, 200, 429]
        assert client.get("/read").status_code == 200

    def test_ready_reports_unreachable_database(self, client_for, service):
        """A failing Cosmos ping makes the service not ready."""
        manager = MagicMock()
        manager.ping.return_value = False
        manager.initialize_containers = AsyncMock()
        service.cosmos_manager = manager

        response = client_for(service).get("/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["database"] is False


class TestScheduler:
    """Background trigger loop."""

    @pytest.mark.asyncio
    async def test_cycle_failure_does_not_stop_round(self):
        """A failed cycle is logged; backfill still runs and the loop sleeps."""
        import asyncio
        from unittest.mock import patch
        from main import run_scheduler
        from services.exceptions import DataUnavailable

        service = MagicMock()
        service.sync_cache = AsyncMock(return_value={})
        service.run_cycle = AsyncMock(side_effect=DataUnavailable("no glucose"))
        service.backfill = AsyncMock(return_value=0)

        with patch("main.asyncio.sleep", AsyncMock(side_effect=asyncio.CancelledError)) as sleep:
            with pytest.raises(asyncio.CancelledError):
                await run_scheduler(service, interval_minutes=5)

        service.sync_cache.assert_awaited_once()
        service.run_cycle.assert_awaited_once()
        service.backfill.assert_awaited_once()
        sleep.assert_awaited_once_with(300)
