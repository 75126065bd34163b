# Glucose Ensemble ML Inference Package
from .predictor import Predictor
from .wavenet_inference import WaveNetPredictor, create_wavenet_predictors
from .random_forest_inference import RandomForestPredictor, create_random_forest_predictor

__all__ = [
    "Predictor",
    "WaveNetPredictor",
    "create_wavenet_predictors",
    "RandomForestPredictor",
    "create_random_forest_predictor",
]
