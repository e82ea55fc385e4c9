"""Model families for the ML signal pipeline."""
from typing import Dict, Type

from .base import DirectionalModel
from .iforest import IsolationForestModel
from .logreg import LogRegModel
from .xgboost_model import XGBoostModel

# Directional families iterated by training and inference, in scoring order
MODEL_FAMILIES: Dict[str, Type[DirectionalModel]] = {
    LogRegModel.model_key: LogRegModel,
    XGBoostModel.model_key: XGBoostModel,
}

__all__ = [
    "DirectionalModel",
    "IsolationForestModel",
    "LogRegModel",
    "XGBoostModel",
    "MODEL_FAMILIES",
]
