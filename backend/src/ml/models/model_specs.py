"""
Ensemble Model Specs
Static per-member configuration: input layout, scaler constants, output
de-normalization and physiological bounds.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple

from ..feature_engineering import CircadianMode, SEQ_LENGTH
from models.schemas import MGDL_PER_MMOL


class OutputKind(str, Enum):
    DELTA = "delta"        # change from current BG, added before clamping
    ABSOLUTE = "absolute"  # absolute BG


@dataclass(frozen=True)
class ModelSpec:
    """
    Immutable description of one ensemble member.

    input_mean/input_scale hold one value per entry of feature_columns, in
    the same order. Outputs are in mmol/L after de-normalization.
    """
    index: int
    name: str
    input_shape: Tuple[int, int]
    feature_columns: Tuple[str, ...]
    input_mean: Tuple[float, ...]
    input_scale: Tuple[float, ...]
    output_mean: float = 0.0
    output_scale: float = 1.0
    min_bound: float = 2.0    # mmol/L
    max_bound: float = 25.0   # mmol/L
    output_kind: OutputKind = OutputKind.DELTA
    circadian: CircadianMode = CircadianMode.NOW
    family: str = "wavenet"
    artifact: str = ""

    def __post_init__(self):
        if self.index < 1:
            raise ValueError("Model index 0 is reserved for the aggregate")
        n_features = self.input_shape[1]
        if not (len(self.feature_columns) == len(self.input_mean) == len(self.input_scale) == n_features):
            raise ValueError(f"Spec {self.name}: feature columns and scaler constants must match input_shape")

    @property
    def is_delta(self) -> bool:
        return self.output_kind == OutputKind.DELTA


# WaveNet models were trained on heart rate in bpm, first column
WAVENET_FEATURE_COLUMNS = (
    "heart_rate_bpm",
    "blood_glucose",
    "insulin_on_board",
    "carbs_on_board",
    "bg_trend",
    "hr_trend",
    "hour_sin",
    "hour_cos",
)
WAVENET_INPUT_MEAN = (70.0, 7.0, 2.0, 30.0, 0.0, 0.0, 0.0, 0.0)
WAVENET_INPUT_STD = (20.0, 3.0, 5.0, 40.0, 1.0, 1.0, 1.0, 1.0)

# Tabular change model reads glucose, doses, heart rate and time
RANDOM_FOREST_FEATURE_COLUMNS = (
    "blood_glucose",
    "carbs_on_board",
    "insulin_on_board",
    "heart_rate_bpm",
    "hour_of_day",
    "weekday",
)


def _wavenet(index: int, circadian: CircadianMode) -> ModelSpec:
    return ModelSpec(
        index=index,
        name=f"wavenet{index}",
        input_shape=(SEQ_LENGTH, len(WAVENET_FEATURE_COLUMNS)),
        feature_columns=WAVENET_FEATURE_COLUMNS,
        input_mean=WAVENET_INPUT_MEAN,
        input_scale=WAVENET_INPUT_STD,
        circadian=circadian,
        artifact=f"wavenet{index}.pth",
    )


RANDOM_FOREST_SPEC = ModelSpec(
    index=6,
    name="random_forest",
    input_shape=(SEQ_LENGTH, len(RANDOM_FOREST_FEATURE_COLUMNS)),
    feature_columns=RANDOM_FOREST_FEATURE_COLUMNS,
    input_mean=(0.0,) * len(RANDOM_FOREST_FEATURE_COLUMNS),
    input_scale=(1.0,) * len(RANDOM_FOREST_FEATURE_COLUMNS),
    output_scale=1.0 / MGDL_PER_MMOL,  # model predicts a change in mg/dL
    family="random_forest",
    artifact="random_forest.pkl",
)


MODEL_SPECS: Dict[int, ModelSpec] = {
    1: _wavenet(1, CircadianMode.NOW),
    2: _wavenet(2, CircadianMode.NOW),
    3: _wavenet(3, CircadianMode.NOW),
    4: _wavenet(4, CircadianMode.PER_BIN),
    5: _wavenet(5, CircadianMode.PER_BIN),
    6: RANDOM_FOREST_SPEC,
}


def get_model_spec(index: int) -> ModelSpec:
    """Look up a registered spec by model index."""
    try:
        return MODEL_SPECS[index]
    except KeyError:
        raise KeyError(f"No model spec registered for index {index}") from None


def wavenet_specs() -> List[ModelSpec]:
    return [spec for spec in MODEL_SPECS.values() if spec.family == "wavenet"]

