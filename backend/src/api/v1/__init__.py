# Glucose Ensemble API v1
from api.v1 import predictions

__all__ = [
    "predictions",
]
