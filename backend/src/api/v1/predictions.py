"""
Predictions API Endpoints
Manual cycle trigger, backfill, CSV export and accuracy for the ensemble ledger.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from models.schemas import AccuracyMetrics, PredictionEvent, PredictionRecord
from services.exceptions import DataUnavailable, LedgerWriteFailure, NoValidPredictions
from services.prediction_service import PredictionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/predictions", tags=["predictions"])

NO_PREDICTION_DETAIL = "No prediction available"


# Request/Response Models
class CycleRequest(BaseModel):
    """Optional prediction time for a manual cycle (replay)."""
    timestamp: Optional[datetime] = Field(None, description="Prediction time (default: now)")


class CycleResponse(BaseModel):
    """Response for a completed prediction cycle."""
    event: PredictionEvent
    records: List[PredictionRecord]
    used_fallback: bool


class BackfillResponse(BaseModel):
    updated: int
    total_records: int


class AccuracyResponse(BaseModel):
    """Per-model accuracy against backfilled actuals."""
    models: List[AccuracyMetrics]
    total_records: int


# Dependencies
async def get_pred_service(request: Request) -> PredictionService:
    """Get the prediction service built at startup."""
    service = getattr(request.app.state, "prediction_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Prediction service not initialized")
    return service


# Endpoints
@router.post("/cycle", response_model=CycleResponse)
async def run_prediction_cycle(
    request: Optional[CycleRequest] = None,
    pred_service: PredictionService = Depends(get_pred_service),
):
    """
    Run one ensemble prediction cycle and record it in the ledger.

    Returns 503 when no glucose is available or every model failed.
    """
    now = request.timestamp if request else None
    try:
        result = await pred_service.run_cycle(now)
    except (DataUnavailable, NoValidPredictions) as e:
        logger.warning(f"Prediction cycle produced no result: {e}")
        raise HTTPException(status_code=503, detail=NO_PREDICTION_DETAIL)
    except LedgerWriteFailure as e:
        logger.error(f"Prediction cycle could not be recorded: {e}")
        raise HTTPException(status_code=500, detail="Prediction could not be recorded")

    return CycleResponse(event=result.event, records=result.records, used_fallback=result.usedFallback)


@router.post("/backfill", response_model=BackfillResponse)
async def backfill_actuals(pred_service: PredictionService = Depends(get_pred_service)):
    """Attach observed glucose at the forecast horizon to ledger records."""
    try:
        updated = await pred_service.backfill()
    except LedgerWriteFailure as e:
        logger.error(f"Backfill failed: {e}")
        raise HTTPException(status_code=500, detail="Backfill could not be recorded")
    return BackfillResponse(updated=updated, total_records=await pred_service.ledger.count())


@router.get("/export.csv")
async def export_predictions(
    tz: Optional[str] = Query(None, description="IANA timezone for timestamps"),
    pred_service: PredictionService = Depends(get_pred_service),
):
    """Download the ledger as CSV, one row per cycle."""
    try:
        content = await pred_service.export_csv(tz)
    except (KeyError, ValueError) as e:
        # ZoneInfo raises ZoneInfoNotFoundError (a KeyError) for unknown names
        raise HTTPException(status_code=400, detail=f"Invalid timezone: {tz}") from e
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="predictions.csv"'}
    )


@router.get("/accuracy", response_model=AccuracyResponse)
async def get_accuracy(pred_service: PredictionService = Depends(get_pred_service)):
    """MAE, RMSE and within-10/20 mg/dL rates per model."""
    return AccuracyResponse(
        models=await pred_service.accuracy_metrics(),
        total_records=await pred_service.ledger.count()
    )


@router.get("/latest", response_model=PredictionRecord)
async def get_latest_prediction(pred_service: PredictionService = Depends(get_pred_service)):
    """Most recent ensemble (aggregate) prediction."""
    latest = await pred_service.latest()
    if latest is None:
        raise HTTPException(status_code=404, detail=NO_PREDICTION_DETAIL)
    return latest
