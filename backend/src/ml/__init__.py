# Glucose Ensemble ML Package
# Contains feature engineering, scaling, model wrappers and inference code

from .feature_engineering import (
    FeatureWindow,
    FeatureWindowBuilder,
    CircadianMode,
    FEATURE_COLUMNS,
    SEQ_LENGTH,
)
from .scaling import ModelScaler
from .models import ModelSpec, MODEL_SPECS, get_model_spec, WaveNetRegressor
from .inference import (
    Predictor,
    WaveNetPredictor,
    RandomForestPredictor,
)

__all__ = [
    # Feature Engineering
    "FeatureWindow",
    "FeatureWindowBuilder",
    "CircadianMode",
    "FEATURE_COLUMNS",
    "SEQ_LENGTH",
    # Scaling
    "ModelScaler",
    # Models
    "ModelSpec",
    "MODEL_SPECS",
    "get_model_spec",
    "WaveNetRegressor",
    # Inference
    "Predictor",
    "WaveNetPredictor",
    "RandomForestPredictor",
]
