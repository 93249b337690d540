"""
Trained potential productivity model artifact.

Holds the quantile booster (potential productivity) and the squared-error
booster (mean estimate) together with the selected features, the
hyperparameters, the preprocessing recipe and the cross-validation scores.
Serialized with pickle under a format version; read-only after creation.
"""

import pickle
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

import numpy as np
import pandas as pd
import xgboost as xgb

from shared_utils import ensure_directory, validate_file_exists
from .sample_dataset import ANOMALY_SUFFIX

MODEL_FORMAT_VERSION = 1


@dataclass(frozen=True)
class TrainedModel:
    """Quantile-regression potential productivity model and its metadata."""
    quantile: float
    features: List[str]
    hyperparameters: Dict[str, Any]
    cv_score: Dict[str, float]
    quantile_model: xgb.XGBRegressor
    mean_model: xgb.XGBRegressor
    label_column: str = 'GPP'
    feature_scaling: Dict[str, float] = field(default_factory=dict)
    anomaly_variables: List[str] = field(default_factory=list)
    
    def raw_covariates(self) -> List[str]:
        """Covariate bands needed to build the model features."""
        needed = []
        for feature in self.features:
            base = feature[:-len(ANOMALY_SUFFIX)] if feature.endswith(ANOMALY_SUFFIX) else feature
            if base not in needed:
                needed.append(base)
        return needed
    
    def anomaly_inputs(self) -> List[str]:
        """Variables whose anomaly feature the model uses."""
        return [v for v in self.anomaly_variables if v + ANOMALY_SUFFIX in self.features]
    
    def predict(self, features: pd.DataFrame) -> Dict[str, np.ndarray]:
        """
        Predict potential (quantile) and mean productivity.
        
        Args:
            features: Table holding every selected feature column, already
                scaled and with derived features computed
                
        Returns:
            Dict with 'quantile_estimate' and 'mean_estimate' arrays
        """
        missing = [f for f in self.features if f not in features.columns]
        if missing:
            raise KeyError(f"Missing model features: {missing}")
        
        X = features[self.features].to_numpy(dtype=np.float32)
        if len(X) == 0:
            empty = np.empty(0, dtype=np.float32)
            return {'quantile_estimate': empty, 'mean_estimate': empty.copy()}
        
        return {
            'quantile_estimate': self.quantile_model.predict(X).astype(np.float32),
            'mean_estimate': self.mean_model.predict(X).astype(np.float32)
        }
    
    def save(self, path: Union[str, Path]) -> Path:
        """Serialize the model to a versioned pickle file."""
        path = Path(path)
        ensure_directory(path.parent)
        
        payload = {
            'format_version': MODEL_FORMAT_VERSION,
            'quantile': self.quantile,
            'features': list(self.features),
            'hyperparameters': dict(self.hyperparameters),
            'cv_score': dict(self.cv_score),
            'quantile_model': self.quantile_model,
            'mean_model': self.mean_model,
            'label_column': self.label_column,
            'feature_scaling': dict(self.feature_scaling),
            'anomaly_variables': list(self.anomaly_variables)
        }
        with open(path, 'wb') as f:
            pickle.dump(payload, f)
        return path
    
    @classmethod
    def load(cls, path: Union[str, Path]) -> 'TrainedModel':
        """
        Load a model saved with save().
        
        Raises:
            ValueError: If the file was written with another format version
        """
        path = validate_file_exists(path, "Model artifact")
        with open(path, 'rb') as f:
            payload = pickle.load(f)
        
        version = payload.pop('format_version', None)
        if version != MODEL_FORMAT_VERSION:
            raise ValueError(f"Unsupported model format version {version} in {path} "
                             f"(expected {MODEL_FORMAT_VERSION})")
        return cls(**payload)
