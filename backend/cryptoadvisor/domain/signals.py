"""
Signal vocabulary shared by the technical engine, the ML core and upstream readers.

Pure value types with no side effects.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional


class SignalDirection(str, Enum):
    """Trading direction carried by signals and predictions."""

    LONG = "long"
    SHORT = "short"
    HOLD = "hold"


class RiskLevel(IntEnum):
    """Risk bucket, 1 = lowest risk, 5 = highest risk."""

    LEVEL_1 = 1
    LEVEL_2 = 2
    LEVEL_3 = 3
    LEVEL_4 = 4
    LEVEL_5 = 5


# Classic technical-analysis indicators (produced by the signal engine)
INDICATOR_RSI = "rsi"
INDICATOR_MACD = "macd"
INDICATOR_BOLLINGER = "bollinger"
INDICATOR_VOLUME_Z = "volume_zscore"

CLASSIC_INDICATORS = frozenset({
    INDICATOR_RSI,
    INDICATOR_MACD,
    INDICATOR_BOLLINGER,
    INDICATOR_VOLUME_Z,
})

# ML-derived indicators (produced by the inference service)
INDICATOR_ML_LOGREG_UP4H = "ml_logreg_up4h"
INDICATOR_ML_XGBOOST_UP4H = "ml_xgboost_up4h"
INDICATOR_ML_ENSEMBLE_UP4H = "ml_ensemble_up4h"


def is_classic_indicator(indicator: str) -> bool:
    """True for non-ML technical indicators that feed the classic score."""
    return indicator in CLASSIC_INDICATORS


@dataclass
class SignalFilter:
    """Filter for signal listings; empty fields do not constrain."""

    symbol: Optional[str] = None
    interval: Optional[str] = None
    indicator: Optional[str] = None
    risk: Optional[RiskLevel] = None
    limit: int = 100
