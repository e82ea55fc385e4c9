"""
Gradient-boosted tree directional model (XGBoost), binary logistic objective.

The artifact is XGBoost's native JSON model, so it loads across library
versions without pickles.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import xgboost as xgb

from cryptoadvisor.ml.common import MODEL_KEY_XGBOOST
from cryptoadvisor.ml.models.base import DirectionalModel, as_training_arrays
from cryptoadvisor.utils.errors import ModelArtifactError, ModelTrainingError


class XGBoostModel(DirectionalModel):
    """Boosted decision trees predicting P(up)."""

    model_key = MODEL_KEY_XGBOOST
    artifact_format = "json/xgboost-v1"

    def __init__(self, booster: xgb.Booster, n_features: int):
        self.booster = booster
        self.n_features = n_features

    @classmethod
    def default_options(cls) -> Dict[str, Any]:
        return {
            "rounds": 200,
            "learning_rate": 0.05,
            "max_depth": 4,
            "min_child_weight": 5,
            "subsample": 0.8,
            "colsample_bytree": 0.8,
            "reg_lambda": 2.0,
        }

    @classmethod
    def train(
        cls,
        samples: Sequence[Sequence[float]],
        labels: Sequence[float],
        feature_names: Sequence[str],
        options: Optional[Dict[str, Any]] = None,
    ) -> "XGBoostModel":
        opts = cls.hyperparameters(options)
        X, y = as_training_arrays(samples, labels)

        params = {
            "objective": "binary:logistic",
            "eval_metric": "logloss",
            "n_estimators": opts["rounds"],
            "learning_rate": opts["learning_rate"],
            "max_depth": opts["max_depth"],
            "min_child_weight": opts["min_child_weight"],
            "subsample": opts["subsample"],
            "colsample_bytree": opts["colsample_bytree"],
            "reg_lambda": opts["reg_lambda"],
            "random_state": 42,
            "n_jobs": 1,
        }

        model = xgb.XGBClassifier(**params)
        try:
            model.fit(X, y, verbose=False)
        except (ValueError, xgb.core.XGBoostError) as e:
            raise ModelTrainingError(f"xgboost fit failed: {e}") from e

        booster = model.get_booster()
        if len(feature_names) == X.shape[1]:
            booster.set_attr(feature_names=json.dumps(list(feature_names)))
        return cls(booster=booster, n_features=X.shape[1])

    def predict_prob(self, features: Sequence[float]) -> float:
        if len(features) != self.n_features:
            return 0.5
        return self.predict_batch([features])[0]

    def predict_batch(self, samples: Sequence[Sequence[float]]) -> List[float]:
        if len(samples) == 0:
            return []
        X = np.asarray(samples, dtype=float)
        if X.ndim != 2 or X.shape[1] != self.n_features:
            return [0.5] * len(samples)
        preds = self.booster.inplace_predict(X)
        return [float(p) for p in np.asarray(preds).reshape(-1)]

    def marshal_binary(self) -> bytes:
        return bytes(self.booster.save_raw(raw_format="json"))

    @classmethod
    def unmarshal_binary(cls, blob: bytes) -> "XGBoostModel":
        if not blob:
            raise ModelArtifactError("empty xgboost artifact")
        booster = xgb.Booster()
        try:
            booster.load_model(bytearray(blob))
        except xgb.core.XGBoostError as e:
            raise ModelArtifactError(f"invalid xgboost artifact: {e}") from e
        n_features = booster.num_features()
        if n_features <= 0:
            raise ModelArtifactError("invalid xgboost artifact: no features")
        return cls(booster=booster, n_features=n_features)
