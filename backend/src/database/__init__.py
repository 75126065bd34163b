# Glucose Ensemble Database Package
from database.cosmos_client import CosmosDBManager
from database.repositories import (
    PredictionStore,
    InMemoryPredictionStore,
    PredictionRepository,
    SampleCacheRepository,
    DoseCacheRepository
)

__all__ = [
    "CosmosDBManager",
    "PredictionStore",
    "InMemoryPredictionStore",
    "PredictionRepository",
    "SampleCacheRepository",
    "DoseCacheRepository"
]
