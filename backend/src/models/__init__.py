# Glucose Ensemble Models Package
from models.schemas import (
    MGDL_PER_MMOL,
    mmol_to_mgdl,
    mgdl_to_mmol,
    SignalKind,
    DoseKind,
    Sample,
    Dose,
    PredictionRecord,
    EnsembleResult,
    DoseTiming,
    PredictionEvent,
    CycleResult,
    AccuracyMetrics
)

__all__ = [
    "MGDL_PER_MMOL",
    "mmol_to_mgdl",
    "mgdl_to_mmol",
    "SignalKind",
    "DoseKind",
    "Sample",
    "Dose",
    "PredictionRecord",
    "EnsembleResult",
    "DoseTiming",
    "PredictionEvent",
    "CycleResult",
    "AccuracyMetrics"
]
