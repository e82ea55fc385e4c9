"""
Logistic-regression directional model (scikit-learn), standardized inputs.

The fitted scaler and coefficients are exported to a small JSON artifact so the
model can be rebuilt without pickles.
"""

import json
import math
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from sklearn.linear_model import LogisticRegression
from sklearn.preprocessing import StandardScaler

from cryptoadvisor.ml.common import MODEL_KEY_LOGREG
from cryptoadvisor.ml.models.base import DirectionalModel, as_training_arrays
from cryptoadvisor.utils.errors import ModelArtifactError, ModelTrainingError


class LogRegModel(DirectionalModel):
    """Standardized L2 logistic regression."""

    model_key = MODEL_KEY_LOGREG
    artifact_format = "json/logreg-v1"

    def __init__(
        self,
        feature_names: Sequence[str],
        means: Sequence[float],
        scales: Sequence[float],
        coef: Sequence[float],
        intercept: float,
        options: Dict[str, Any],
    ):
        self.feature_names = list(feature_names)
        self.means = np.asarray(means, dtype=float)
        self.scales = np.asarray(scales, dtype=float)
        self.coef = np.asarray(coef, dtype=float)
        self.intercept = float(intercept)
        self.options = dict(options)

    @classmethod
    def default_options(cls) -> Dict[str, Any]:
        return {"C": 1.0, "max_iter": 1000, "class_weight": None}

    @classmethod
    def train(
        cls,
        samples: Sequence[Sequence[float]],
        labels: Sequence[float],
        feature_names: Sequence[str],
        options: Optional[Dict[str, Any]] = None,
    ) -> "LogRegModel":
        opts = cls.hyperparameters(options)
        X, y = as_training_arrays(samples, labels)

        scaler = StandardScaler()
        X_scaled = scaler.fit_transform(X)

        clf = LogisticRegression(
            C=opts["C"],
            max_iter=opts["max_iter"],
            class_weight=opts["class_weight"],
        )
        try:
            clf.fit(X_scaled, y)
        except ValueError as e:
            raise ModelTrainingError(f"logistic regression fit failed: {e}") from e

        return cls(
            feature_names=feature_names,
            means=scaler.mean_,
            scales=scaler.scale_,
            coef=clf.coef_[0],
            intercept=clf.intercept_[0],
            options=opts,
        )

    def _logits(self, X: np.ndarray) -> np.ndarray:
        return ((X - self.means) / self.scales) @ self.coef + self.intercept

    def predict_prob(self, features: Sequence[float]) -> float:
        if len(features) != len(self.coef):
            return 0.5
        z = float(self._logits(np.asarray([features], dtype=float))[0])
        return _sigmoid(z)

    def predict_batch(self, samples: Sequence[Sequence[float]]) -> List[float]:
        if len(samples) == 0:
            return []
        X = np.asarray(samples, dtype=float)
        if X.ndim != 2 or X.shape[1] != len(self.coef):
            return [self.predict_prob(sample) for sample in samples]
        return [_sigmoid(z) for z in self._logits(X).tolist()]

    def marshal_binary(self) -> bytes:
        payload = {
            "feature_names": self.feature_names,
            "means": self.means.tolist(),
            "scales": self.scales.tolist(),
            "coef": self.coef.tolist(),
            "intercept": self.intercept,
            "options": self.options,
        }
        return json.dumps(payload).encode("utf-8")

    @classmethod
    def unmarshal_binary(cls, blob: bytes) -> "LogRegModel":
        if not blob:
            raise ModelArtifactError("empty logreg artifact")
        try:
            payload = json.loads(bytes(blob).decode("utf-8"))
            model = cls(
                feature_names=payload.get("feature_names", []),
                means=payload["means"],
                scales=payload["scales"],
                coef=payload["coef"],
                intercept=payload["intercept"],
                options=payload.get("options", {}),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ModelArtifactError(f"invalid logreg artifact: {e}") from e

        n = len(model.coef)
        if n == 0 or len(model.means) != n or len(model.scales) != n:
            raise ModelArtifactError("invalid logreg artifact: parameter length mismatch")
        return model


def _sigmoid(z: float) -> float:
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    ez = math.exp(z)
    return ez / (1.0 + ez)
