"""
Potential Productivity Component

Estimates the locally attainable (high-quantile) productivity of each
pixel from climate and terrain covariates:

- Sample table reshaping, scaling and anomaly features
- Spatiotemporal cross-validation folds
- Forward feature selection and randomized hyperparameter search
- Streaming year-by-year raster prediction of potential productivity

Components:
    core/: Core processing modules
    scripts/: Executable entry points
    config.yaml: Component configuration
"""

from .core.model_training import QuantileModelTrainingPipeline
from .core.model_prediction import StreamingRasterPredictionPipeline
from .core.trained_model import TrainedModel

__version__ = "1.0.0"
__component__ = "potential_productivity"

__all__ = [
    "QuantileModelTrainingPipeline",
    "StreamingRasterPredictionPipeline",
    "TrainedModel"
]
