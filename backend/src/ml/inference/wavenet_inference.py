"""
WaveNet Inference
Runs one trained WaveNet ensemble member on a scaled feature window.
"""
import torch
import logging
from pathlib import Path
from typing import Iterable, List, Optional

import numpy as np

from ..models.model_specs import ModelSpec, wavenet_specs
from ..models.wavenet import WaveNetRegressor, WAVENET_MODEL_CONFIG
from services.exceptions import ModelInferenceFailure

logger = logging.getLogger(__name__)


class WaveNetPredictor:
    """
    Predictor backed by a torch WaveNetRegressor state dict.

    Scaling happens in the orchestrator; predict() receives the already
    normalized [seq_len, n_features] window and returns the raw delta.
    """

    def __init__(
        self,
        spec: ModelSpec,
        model_path: Optional[Path] = None,
        device: str = "cpu",
        model: Optional[torch.nn.Module] = None
    ):
        """
        Initialize the predictor.

        Args:
            spec: Ensemble member spec
            model_path: Path to trained state dict (.pth file)
            device: Device to run inference on ("cpu" or "cuda")
            model: Already constructed module (skips loading)
        """
        self.spec = spec
        self.device = torch.device(device)
        self.model_path = model_path
        self.model = model
        self._loaded = model is not None
        if self.model is not None:
            self.model.to(self.device)
            self.model.eval()

    def load(self) -> bool:
        """
        Load model weights from disk.

        Returns:
            True if loading successful, False otherwise
        """
        if not self.model_path or not self.model_path.exists():
            logger.warning(f"{self.spec.name} model not found at {self.model_path}")
            return False

        try:
            logger.info(f"Loading {self.spec.name} from {self.model_path}")
            model = WaveNetRegressor(
                n_features=self.spec.input_shape[1],
                channels=WAVENET_MODEL_CONFIG["channels"],
                kernel_size=WAVENET_MODEL_CONFIG["kernel_size"],
                dilations=WAVENET_MODEL_CONFIG["dilations"],
                dropout_prob=WAVENET_MODEL_CONFIG["dropout_prob"]
            )
            state_dict = torch.load(
                self.model_path,
                map_location=self.device,
                weights_only=True
            )
            model.load_state_dict(state_dict)
            model.to(self.device)
            model.eval()
            self.model = model
            self._loaded = True
            logger.info(f"{self.spec.name} loaded successfully")
            return True
        except (OSError, RuntimeError) as e:
            logger.error(f"Failed to load {self.spec.name}: {e}", exc_info=True)
            return False

    @property
    def is_loaded(self) -> bool:
        """Check if model is loaded and ready for inference."""
        return self._loaded and self.model is not None

    def predict(self, inputs: np.ndarray) -> float:
        """
        Predict the normalized 20-minute delta.

        Args:
            inputs: Scaled array of shape spec.input_shape

        Returns:
            Raw scalar output

        Raises:
            ModelInferenceFailure: If the model is not loaded
        """
        if not self.is_loaded:
            raise ModelInferenceFailure(self.spec.index, "model not loaded")

        input_tensor = torch.tensor(
            np.asarray(inputs, dtype=np.float32)[np.newaxis, ...],
            dtype=torch.float32,
            device=self.device
        )
        with torch.no_grad():
            output = self.model(input_tensor)

        return float(output.reshape(-1)[0].item())


def create_wavenet_predictors(
    models_dir: Path,
    device: str = "cpu",
    specs: Optional[Iterable[ModelSpec]] = None
) -> List[WaveNetPredictor]:
    """
    Factory function to create and load the WaveNet ensemble members.

    Args:
        models_dir: Directory containing model files
        device: Device for inference
        specs: Specs to load (default: every registered WaveNet)

    Returns:
        Predictors that loaded successfully
    """
    predictors = []
    for spec in specs or wavenet_specs():
        predictor = WaveNetPredictor(spec, models_dir / spec.artifact, device)
        if predictor.load():
            predictors.append(predictor)
        else:
            logger.warning(f"{spec.name} unavailable - excluded from ensemble")
    return predictors
