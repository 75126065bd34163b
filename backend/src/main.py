"""
Glucose Ensemble Backend - FastAPI Application
20-minute blood glucose forecasting with a multi-model ensemble.
"""
import asyncio
import logging
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import Callable, Deque, Dict

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config import get_settings
from services.exceptions import PredictionError
from services.prediction_service import PredictionService, create_prediction_service


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding one-minute limit on manual triggers.

    Only POSTs are counted: each one runs a cycle or rewrites the ledger.
    Reads (latest, export, health) are never limited.
    """

    def __init__(self, app, requests_per_minute: int = 60):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.history: Dict[str, Deque[float]] = defaultdict(deque)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method != "POST":
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.monotonic()
        window = self.history[client_ip]
        while window and now - window[0] >= 60:
            window.popleft()

        if len(window) >= self.requests_per_minute:
            logger.warning(f"Rate limit hit for {client_ip} on {request.url.path}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."}
            )

        window.append(now)
        return await call_next(request)


# Configure logging
settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def run_scheduler(service: PredictionService, interval_minutes: int) -> None:
    """
    Periodic trigger: sync the cache, run a cycle, then backfill.

    Cycle errors are logged and the loop keeps running.
    """
    logger.info(f"Prediction scheduler started (every {interval_minutes} min)")
    while True:
        try:
            await service.sync_cache()
        except Exception as e:
            logger.warning(f"Cache sync failed: {e}")

        try:
            await service.run_cycle()
        except PredictionError as e:
            logger.error(f"Scheduled cycle failed: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error in scheduled cycle: {e}")

        try:
            await service.backfill()
        except Exception as e:
            logger.warning(f"Scheduled backfill failed: {e}")

        await asyncio.sleep(interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the prediction service, prepare storage and start the scheduler."""
    settings = get_settings()
    logger.info(f"Starting {settings.app_name} v{settings.app_version} (device={settings.model_device})")

    service = getattr(app.state, "prediction_service", None)
    if service is None:
        service = create_prediction_service(settings)
        app.state.prediction_service = service

    if service.cosmos_manager is not None:
        try:
            await service.cosmos_manager.initialize_containers()
        except Exception as e:
            logger.warning(f"CosmosDB initialization failed: {e}")
    else:
        logger.info("CosmosDB not configured - using in-memory ledger")

    logger.info(f"Prediction service initialized - {service.orchestrator.model_count} models")

    scheduler = None
    if settings.schedule_interval_minutes > 0:
        scheduler = asyncio.create_task(run_scheduler(service, settings.schedule_interval_minutes))

    yield

    if scheduler is not None:
        scheduler.cancel()
        try:
            await scheduler
        except asyncio.CancelledError:
            pass
    if service.cosmos_manager is not None:
        service.cosmos_manager.close()
    logger.info(f"Shutting down {settings.app_name}...")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="20-minute blood glucose forecasting with a multi-model ensemble",
    lifespan=lifespan
)

# Security middleware (order matters - last added runs first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RateLimitMiddleware, requests_per_minute=settings.rate_limit_per_minute)

cors_origins = settings.cors_origins_list
if settings.debug:
    cors_origins.append("*")  # Allow all in debug mode

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With"],
)


@app.get("/health")
async def health_check():
    """Liveness check."""
    return {"status": "healthy", "version": settings.app_version}


@app.get("/ready")
async def readiness_check(request: Request):
    """Ready when the ledger store answers and at least one model is loaded."""
    service = getattr(request.app.state, "prediction_service", None)
    manager = getattr(service, "cosmos_manager", None)
    checks = {
        "database": service is not None and (manager is None or manager.ping()),
        "ml_service": bool(service is not None and service.ready),
    }

    all_ready = all(checks.values())
    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={"ready": all_ready, "checks": checks}
    )


@app.get("/")
async def root():
    return {
        "app": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs"
    }


# Import and register API routers
from api.v1 import predictions

app.include_router(predictions.router, prefix="/api/v1", tags=["Predictions"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
