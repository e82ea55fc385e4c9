"""
Shared helpers for the ML signal pipeline: model keys, the feature vector layout,
probability/risk/direction mapping and interval bookkeeping.

All functions are pure except check_cancelled, which only reads its event.
"""

import math
import re
import threading
from typing import Iterable, List, Optional, Tuple

from cryptoadvisor.domain.signals import RiskLevel, SignalDirection
from cryptoadvisor.ml.schemas import FeatureRow
from cryptoadvisor.utils.errors import OperationCancelledError


MODEL_KEY_LOGREG = "logreg"
MODEL_KEY_XGBOOST = "xgboost"
MODEL_KEY_ENSEMBLE_V1 = "ensemble_v1"
MODEL_KEY_IFOREST = "iforest"

DEFAULT_INTERVAL = "1h"
FEATURE_SPEC_VERSION = "v1"

FEATURE_NAMES: List[str] = [
    "ret_1h",
    "ret_4h",
    "ret_12h",
    "ret_24h",
    "volatility_6h",
    "volatility_24h",
    "volume_z_24h",
    "rsi_14",
    "macd_line",
    "macd_signal",
    "macd_hist",
    "bb_pos",
    "bb_width",
]

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def feature_vector(row: FeatureRow) -> List[float]:
    """Feature values in FEATURE_NAMES order."""
    return [float(getattr(row, name)) for name in FEATURE_NAMES]


def target_label(row: FeatureRow) -> Tuple[float, bool]:
    """(label, ok); ok is False while the horizon is still open."""
    if row.target_up_4h is None:
        return 0.0, False
    return (1.0 if row.target_up_4h else 0.0), True


def clamp01(value: float) -> float:
    if math.isnan(value):
        return 0.5
    if value < 0:
        return 0.0
    if value > 1:
        return 1.0
    return value


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def confidence(prob_up: float) -> float:
    """Distance of probUp from a coin flip, rescaled to [0, 1]."""
    return abs(clamp01(prob_up) - 0.5) * 2


def risk_from_confidence(conf: float) -> RiskLevel:
    if conf >= 0.80:
        return RiskLevel.LEVEL_2
    if conf >= 0.60:
        return RiskLevel.LEVEL_3
    if conf >= 0.40:
        return RiskLevel.LEVEL_4
    return RiskLevel.LEVEL_5


def risk_from_anomaly_score(score: float) -> RiskLevel:
    score = clamp01(score)
    if score >= 0.9:
        return RiskLevel.LEVEL_2
    if score >= 0.75:
        return RiskLevel.LEVEL_3
    if score >= 0.6:
        return RiskLevel.LEVEL_4
    return RiskLevel.LEVEL_5


def risk_bump(risk: RiskLevel, delta: int) -> RiskLevel:
    """Move risk by delta levels, capped to [1, 5]."""
    return RiskLevel(int(clamp(int(risk) + delta, RiskLevel.LEVEL_1, RiskLevel.LEVEL_5)))


def direction_from_prob(prob_up: float, long_threshold: float, short_threshold: float) -> SignalDirection:
    prob_up = clamp01(prob_up)
    if prob_up >= long_threshold:
        return SignalDirection.LONG
    if prob_up <= short_threshold:
        return SignalDirection.SHORT
    return SignalDirection.HOLD


def sanitize_interval(interval: str) -> str:
    cleaned = _NON_ALNUM.sub("", interval or "")
    return cleaned or DEFAULT_INTERVAL


def iforest_model_key(interval: str) -> str:
    """Interval-namespaced anomaly model key, e.g. iforest_4h."""
    return f"{MODEL_KEY_IFOREST}_{sanitize_interval(interval)}"


def is_iforest_model_key(model_key: str) -> bool:
    prefix = MODEL_KEY_IFOREST + "_"
    return len(model_key) > len(prefix) and model_key.startswith(prefix)


def unique_intervals(intervals: Optional[Iterable[str]], fallback: str = DEFAULT_INTERVAL) -> List[str]:
    """Order-preserving de-duplication; blanks dropped; falls back to [fallback]."""
    fallback = fallback or DEFAULT_INTERVAL
    out: List[str] = []
    for interval in intervals or []:
        if not interval or interval in out:
            continue
        out.append(interval)
    return out or [fallback]


def round_float(value: float) -> float:
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return round(value * 10000) / 10000


def check_cancelled(cancel_event: Optional[threading.Event], where: str = "") -> None:
    """Raise OperationCancelledError if the cancellation event is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError(f"Operation cancelled{': ' + where if where else ''}")
