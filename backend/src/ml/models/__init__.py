# Glucose Ensemble ML Models Package
from .model_specs import ModelSpec, OutputKind, MODEL_SPECS, RANDOM_FOREST_SPEC, get_model_spec, wavenet_specs
from .wavenet import WaveNetRegressor, WAVENET_MODEL_CONFIG

__all__ = [
    "ModelSpec",
    "OutputKind",
    "MODEL_SPECS",
    "RANDOM_FOREST_SPEC",
    "get_model_spec",
    "wavenet_specs",
    "WaveNetRegressor",
    "WAVENET_MODEL_CONFIG",
]
