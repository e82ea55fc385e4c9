"""
Ensemble combiner fusing the classic technical score with directional model probabilities.

Every component is mapped onto a common [-1, 1] scale (probabilities via 2p - 1)
and combined as a weighted mean. Components that are missing fall back to a
neutral value, so the combined score degrades gracefully when a family has no
active model.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from cryptoadvisor.domain.signals import SignalDirection
from cryptoadvisor.ml.common import clamp, clamp01


DEFAULT_WEIGHTS: Dict[str, float] = {
    "classic": 0.30,
    "logreg": 0.30,
    "xgboost": 0.40,
}
DEFAULT_DIRECTION_THRESHOLD = 0.10


@dataclass
class EnsembleComponents:
    """Inputs to the ensemble: classic score in [-1, 1], probabilities in [0, 1]."""

    classic_score: float = 0.0
    logreg_prob: float = 0.5
    xgboost_prob: float = 0.5


class EnsembleCombiner:
    """Weighted-mean ensemble with a symmetric dead zone for direction."""

    def __init__(
        self,
        weights: Optional[Dict[str, float]] = None,
        direction_threshold: float = DEFAULT_DIRECTION_THRESHOLD,
    ):
        merged = dict(DEFAULT_WEIGHTS)
        merged.update(weights or {})
        unknown = set(merged) - set(DEFAULT_WEIGHTS)
        if unknown:
            raise ValueError(f"Unknown ensemble components: {sorted(unknown)}")
        if any(w < 0 for w in merged.values()) or sum(merged.values()) <= 0:
            raise ValueError(f"Invalid ensemble weights: {merged}")
        self.weights = merged
        self.direction_threshold = abs(direction_threshold)

    def score(self, components: EnsembleComponents) -> float:
        """Combined score in [-1, 1]; positive favors up moves."""
        values = {
            "classic": clamp(components.classic_score, -1.0, 1.0),
            "logreg": 2.0 * clamp01(components.logreg_prob) - 1.0,
            "xgboost": 2.0 * clamp01(components.xgboost_prob) - 1.0,
        }
        total_weight = sum(self.weights.values())
        weighted = sum(self.weights[name] * value for name, value in values.items())
        return clamp(weighted / total_weight, -1.0, 1.0)

    def direction(self, score: float) -> SignalDirection:
        if score >= self.direction_threshold:
            return SignalDirection.LONG
        if score <= -self.direction_threshold:
            return SignalDirection.SHORT
        return SignalDirection.HOLD
