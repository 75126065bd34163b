"""
Pydantic Models/Schemas for Glucose Ensemble
Defines data structures for samples, doses, prediction records and events.
"""
from datetime import datetime
from typing import Optional, List, Dict
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


MGDL_PER_MMOL = 18.0


def mmol_to_mgdl(value: float) -> float:
    return value * MGDL_PER_MMOL


def mgdl_to_mmol(value: float) -> float:
    return value / MGDL_PER_MMOL


# ==================== Enums ====================

class SignalKind(str, Enum):
    GLUCOSE = "glucose"        # mg/dL
    HEART_RATE = "heart_rate"  # bpm
    INSULIN = "insulin"        # units
    CARBS = "carbs"            # grams


class DoseKind(str, Enum):
    INSULIN = "insulin"
    CARBS = "carbs"

    @property
    def signal(self) -> SignalKind:
        return SignalKind(self.value)


# ==================== Source Models ====================

class Sample(BaseModel):
    """A single timestamped reading of one signal."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Reading timestamp")
    value: float = Field(..., description="Reading value in the signal's native unit")
    signal: SignalKind = Field(..., description="Which signal this sample belongs to")


class Dose(BaseModel):
    """An insulin or carbohydrate event."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Dose timestamp")
    amount: float = Field(..., ge=0, description="Units of insulin or grams of carbs")
    kind: DoseKind = Field(..., description="Insulin or carbs")


# ==================== Prediction Models ====================

class PredictionRecord(BaseModel):
    """One model's (or the aggregate's) forecast for a prediction cycle."""
    id: str = Field(default_factory=lambda: uuid4().hex, description="Unique identifier")
    patientId: str = Field(default="default", description="Partition key")
    cycleId: str = Field(..., description="Shared by every record of one cycle")
    timestamp: datetime = Field(..., description="Cycle timestamp")
    rawOutput: float = Field(..., description="Model output in normalized units")
    predictedValueMmol: float = Field(..., description="Absolute forecast in mmol/L")
    predictedValueMgdl: float = Field(..., description="Absolute forecast in mg/dL")
    currentBgMmol: float
    currentBgMgdl: float
    modelIndex: int = Field(..., ge=0, description="0 for the aggregate")
    modelName: str
    isAggregate: bool = False
    modelCount: int = Field(default=1, ge=1, description="Models contributing to this value")
    sequenceCount: int = Field(default=0, ge=0)
    horizonMinutes: int = 20
    usedFallback: bool = False

    # Backfilled ground truth
    actualBgMmol: Optional[float] = None
    actualBgMgdl: Optional[float] = None
    actualBgTimestamp: Optional[datetime] = None

    # Dose timing metadata
    lastCarbTimestamp: Optional[datetime] = None
    lastInsulinTimestamp: Optional[datetime] = None

    @property
    def has_actual(self) -> bool:
        return self.actualBgMmol is not None


class EnsembleResult(BaseModel):
    """Transient aggregate of one prediction cycle's successful models."""
    timestamp: datetime
    currentBgMmol: float
    predictions: Dict[int, float] = Field(default_factory=dict, description="Model index -> absolute mmol/L")
    rawOutputs: Dict[int, float] = Field(default_factory=dict)
    modelNames: Dict[int, str] = Field(default_factory=dict)
    failures: Dict[int, str] = Field(default_factory=dict, description="Model index -> failure reason")
    averageMmol: float
    usedFallback: bool = False

    @property
    def model_count(self) -> int:
        return len(self.predictions)

    @property
    def average_mgdl(self) -> float:
        return mmol_to_mgdl(self.averageMmol)


class DoseTiming(BaseModel):
    """Most recent dose timestamps at prediction time."""
    lastCarbTimestamp: Optional[datetime] = None
    lastInsulinTimestamp: Optional[datetime] = None


class PredictionEvent(BaseModel):
    """Outbound notification emitted once per completed cycle."""
    aggregateValueMgdl: float
    aggregateValueMmol: float
    timestamp: datetime
    modelSuccessCount: int
    sequenceCount: int
    isPartial: bool = False


class CycleResult(BaseModel):
    """Everything a trigger needs after a completed cycle."""
    records: List[PredictionRecord]
    event: PredictionEvent
    usedFallback: bool = False

    @property
    def aggregate(self) -> PredictionRecord:
        return next(r for r in self.records if r.isAggregate)


class AccuracyMetrics(BaseModel):
    """Accuracy of one model index against backfilled actuals."""
    modelIndex: int
    modelName: str
    mae: float = 0.0      # mg/dL
    rmse: float = 0.0     # mg/dL
    within_10_pct: float = 0.0  # % of predictions within 10 mg/dL
    within_20_pct: float = 0.0
    sample_count: int = 0
