# Glucose Ensemble Services Package
# Note: Import specific items as needed to avoid circular imports

__all__ = [
    # Sources
    "TimeSeriesSourceAdapter",
    "InMemoryTimeSeriesSource",
    "NightscoutService",
    "LocalCacheSource",
    # IOB/COB
    "IOBCOBService",
    # Ensemble
    "EnsembleOrchestrator",
    # Ledger
    "PredictionLedger",
    # Predictions
    "PredictionService",
    "create_prediction_service",
    # Accuracy
    "AccuracyService",
]

_LOCATIONS = {
    "TimeSeriesSourceAdapter": "services.time_series_source",
    "InMemoryTimeSeriesSource": "services.time_series_source",
    "NightscoutService": "services.nightscout_service",
    "LocalCacheSource": "services.cache_source",
    "IOBCOBService": "services.iob_cob_service",
    "EnsembleOrchestrator": "services.ensemble_service",
    "PredictionLedger": "services.ledger_service",
    "PredictionService": "services.prediction_service",
    "create_prediction_service": "services.prediction_service",
    "AccuracyService": "services.accuracy_service",
}


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    if name in _LOCATIONS:
        import importlib
        return getattr(importlib.import_module(_LOCATIONS[name]), name)
    raise AttributeError(f"module 'services' has no attribute '{name}'")
