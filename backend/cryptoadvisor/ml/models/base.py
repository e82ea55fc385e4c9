"""
Contract for pluggable directional (probability-of-up) model families.

Training and inference only talk to this interface, so a new family is added by
subclassing DirectionalModel and registering it in MODEL_FAMILIES.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from cryptoadvisor.utils.errors import ModelTrainingError


class DirectionalModel(ABC):
    """Supervised binary classifier returning P(up) for a feature vector."""

    model_key: str = ""
    artifact_format: str = ""

    @classmethod
    @abstractmethod
    def default_options(cls) -> Dict[str, Any]:
        """Default training options for this family."""

    @classmethod
    @abstractmethod
    def train(
        cls,
        samples: Sequence[Sequence[float]],
        labels: Sequence[float],
        feature_names: Sequence[str],
        options: Optional[Dict[str, Any]] = None,
    ) -> "DirectionalModel":
        """Fit a new model; raises ModelTrainingError on unusable datasets."""

    @abstractmethod
    def predict_prob(self, features: Sequence[float]) -> float:
        """P(up) for a single feature vector."""

    def predict_batch(self, samples: Sequence[Sequence[float]]) -> List[float]:
        return [self.predict_prob(sample) for sample in samples]

    @abstractmethod
    def marshal_binary(self) -> bytes:
        """Serialize the fitted model into an artifact blob."""

    @classmethod
    @abstractmethod
    def unmarshal_binary(cls, blob: bytes) -> "DirectionalModel":
        """Rebuild a model from marshal_binary output; raises ModelArtifactError."""

    @classmethod
    def hyperparameters(cls, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Hyperparameters recorded in the registry for a training run."""
        merged = cls.default_options()
        merged.update(options or {})
        return merged


def as_training_arrays(
    samples: Sequence[Sequence[float]],
    labels: Sequence[float],
) -> Tuple[np.ndarray, np.ndarray]:
    """Validate and convert a labeled dataset into float matrices."""
    if len(samples) == 0:
        raise ModelTrainingError("empty training dataset")
    if len(samples) != len(labels):
        raise ModelTrainingError(
            f"samples ({len(samples)}) and labels ({len(labels)}) length mismatch"
        )
    X = np.asarray(samples, dtype=float)
    if X.ndim != 2 or X.shape[1] == 0:
        raise ModelTrainingError("feature vectors must be non-empty and equal-length")
    y = (np.asarray(labels, dtype=float) >= 0.5).astype(int)
    if len(np.unique(y)) < 2:
        raise ModelTrainingError("training labels contain a single class")
    return X, y
