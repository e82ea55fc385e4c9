"""
Isolation-forest anomaly model, one instance per (model key, interval).

Trees are grown by scikit-learn's IsolationForest on z-score normalized
features, then exported to plain JSON node arrays. Scoring always walks the
exported nodes, so a freshly trained model and one restored from its artifact
produce identical scores.

Artifact layout (JSON object):
    model_key, interval, feature_names, means, stds, options, trees,
    trained_from, trained_to
"""

import json
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from sklearn.ensemble import IsolationForest

from cryptoadvisor.utils.datetime import to_utc_naive
from cryptoadvisor.utils.errors import ModelArtifactError, ModelTrainingError


ARTIFACT_FORMAT = "json/iforest-v1"
DETECTION_TYPE_THRESHOLD = "threshold"
DEFAULT_THRESHOLD = 0.6

EULER_GAMMA = 0.5772156649015329


def default_train_options() -> Dict[str, int]:
    return {"num_trees": 200, "sample_size": 256}


def average_path_length(n: float) -> float:
    """Expected path length of an unsuccessful BST search over n points, c(n)."""
    if n <= 1:
        return 0.0
    if n == 2:
        return 1.0
    return 2.0 * (math.log(n - 1.0) + EULER_GAMMA) - 2.0 * (n - 1.0) / n


class _Tree:
    """Array-backed isolation tree; leaves have children_left == -1."""

    __slots__ = ("children_left", "children_right", "feature", "threshold", "n_samples")

    def __init__(self, children_left, children_right, feature, threshold, n_samples):
        self.children_left = np.asarray(children_left, dtype=np.int64)
        self.children_right = np.asarray(children_right, dtype=np.int64)
        self.feature = np.asarray(feature, dtype=np.int64)
        self.threshold = np.asarray(threshold, dtype=float)
        self.n_samples = np.asarray(n_samples, dtype=float)

    @classmethod
    def from_dict(cls, node: Dict[str, List]) -> "_Tree":
        tree = cls(
            node["children_left"],
            node["children_right"],
            node["feature"],
            node["threshold"],
            node["n_samples"],
        )
        size = len(tree.children_left)
        if size == 0 or any(
            len(arr) != size
            for arr in (tree.children_right, tree.feature, tree.threshold, tree.n_samples)
        ):
            raise ValueError("tree node arrays are empty or mismatched")
        return tree

    def to_dict(self) -> Dict[str, List]:
        return {
            "children_left": self.children_left.tolist(),
            "children_right": self.children_right.tolist(),
            "feature": self.feature.tolist(),
            "threshold": self.threshold.tolist(),
            "n_samples": self.n_samples.tolist(),
        }

    def path_lengths(self, X: np.ndarray) -> np.ndarray:
        """Edges to the leaf plus c(leaf size) for every row of X."""
        n = X.shape[0]
        rows = np.arange(n)
        node = np.zeros(n, dtype=np.int64)
        depth = np.zeros(n, dtype=float)
        active = self.children_left[node] != -1
        while active.any():
            idx = rows[active]
            current = node[idx]
            go_left = X[idx, self.feature[current]] <= self.threshold[current]
            node[idx] = np.where(go_left, self.children_left[current], self.children_right[current])
            depth[idx] += 1.0
            active = self.children_left[node] != -1
        leaf_sizes = self.n_samples[node]
        return depth + np.array([average_path_length(s) for s in leaf_sizes])


class IsolationForestModel:
    """Trainable, serializable unsupervised anomaly scorer returning scores in [0, 1]."""

    def __init__(
        self,
        model_key: str,
        interval: str,
        feature_names: Sequence[str],
        means: Sequence[float],
        stds: Sequence[float],
        options: Dict[str, Any],
        trees: List[_Tree],
        trained_from: Optional[datetime],
        trained_to: Optional[datetime],
    ):
        self.model_key = model_key
        self.interval = interval
        self.feature_names = list(feature_names)
        self.means = np.asarray(means, dtype=float)
        self.stds = np.asarray(stds, dtype=float)
        self.options = dict(options)
        self.trees = trees
        self.trained_from = trained_from
        self.trained_to = trained_to

    @classmethod
    def train(
        cls,
        samples: Sequence[Sequence[float]],
        feature_names: Sequence[str],
        model_key: str,
        interval: str,
        trained_from: datetime,
        trained_to: datetime,
        num_trees: int = 0,
        sample_size: int = 0,
        random_state: int = 42,
    ) -> "IsolationForestModel":
        if len(samples) == 0:
            raise ModelTrainingError("empty training dataset")
        X = np.asarray(samples, dtype=float)
        if X.ndim != 2 or X.shape[1] == 0:
            raise ModelTrainingError("empty feature vectors")

        defaults = default_train_options()
        if num_trees <= 0:
            num_trees = defaults["num_trees"]
        if sample_size <= 0:
            sample_size = defaults["sample_size"]

        feature_count = X.shape[1]
        if len(feature_names) != feature_count:
            feature_names = [f"f{i}" for i in range(feature_count)]

        means = X.mean(axis=0)
        stds = X.std(axis=0)
        stds[stds == 0] = 1.0
        normalized = (X - means) / stds

        # max_features=1.0 keeps tree feature indices aligned with the input columns
        forest = IsolationForest(
            n_estimators=num_trees,
            max_samples=min(sample_size, X.shape[0]),
            max_features=1.0,
            bootstrap=False,
            random_state=random_state,
        )
        forest.fit(normalized)

        trees = [
            _Tree(
                est.tree_.children_left,
                est.tree_.children_right,
                est.tree_.feature,
                est.tree_.threshold,
                est.tree_.n_node_samples,
            )
            for est in forest.estimators_
        ]
        options = {
            "detection_type": DETECTION_TYPE_THRESHOLD,
            "threshold": DEFAULT_THRESHOLD,
            "num_trees": num_trees,
            "sample_size": int(forest.max_samples_),
            "random_state": random_state,
        }
        return cls(
            model_key=model_key,
            interval=interval,
            feature_names=feature_names,
            means=means,
            stds=stds,
            options=options,
            trees=trees,
            trained_from=to_utc_naive(trained_from),
            trained_to=to_utc_naive(trained_to),
        )

    def _scores(self, X: np.ndarray) -> np.ndarray:
        normalized = (X - self.means) / self.stds
        mean_path = np.zeros(X.shape[0], dtype=float)
        for tree in self.trees:
            mean_path += tree.path_lengths(normalized)
        mean_path /= len(self.trees)
        c = average_path_length(self.options.get("sample_size", 256))
        if c <= 0:
            return np.zeros(X.shape[0], dtype=float)
        return np.power(2.0, -mean_path / c)

    def predict_score(self, sample: Sequence[float]) -> float:
        """Anomaly score in [0, 1]; 0 for dimension mismatch or an uninitialized model."""
        if not self.trees or len(self.means) == 0 or len(sample) != len(self.means):
            return 0.0
        score = float(self._scores(np.asarray([sample], dtype=float))[0])
        return _clamp_score(score)

    def predict_batch(self, samples: Sequence[Sequence[float]]) -> List[float]:
        if len(samples) == 0:
            return []
        X = np.asarray(samples, dtype=float)
        if not self.trees or X.ndim != 2 or X.shape[1] != len(self.means):
            return [self.predict_score(sample) for sample in samples]
        return [_clamp_score(float(s)) for s in self._scores(X)]

    def marshal_binary(self) -> bytes:
        artifact = {
            "model_key": self.model_key,
            "interval": self.interval,
            "feature_names": self.feature_names,
            "means": self.means.tolist(),
            "stds": self.stds.tolist(),
            "options": self.options,
            "trees": [tree.to_dict() for tree in self.trees],
            "trained_from": _iso(self.trained_from),
            "trained_to": _iso(self.trained_to),
        }
        return json.dumps(artifact).encode("utf-8")

    @classmethod
    def unmarshal_binary(cls, blob: bytes) -> "IsolationForestModel":
        if not blob:
            raise ModelArtifactError("empty artifact")
        try:
            artifact = json.loads(bytes(blob).decode("utf-8"))
        except ValueError as e:
            raise ModelArtifactError(f"invalid artifact: {e}") from e
        if not isinstance(artifact, dict):
            raise ModelArtifactError("invalid artifact: not an object")

        means = artifact.get("means") or []
        stds = artifact.get("stds") or []
        raw_trees = artifact.get("trees") or []
        if len(means) == 0 or len(means) != len(stds) or len(raw_trees) == 0:
            raise ModelArtifactError("invalid artifact")
        try:
            trees = [_Tree.from_dict(node) for node in raw_trees]
        except (KeyError, TypeError, ValueError) as e:
            raise ModelArtifactError(f"invalid artifact trees: {e}") from e

        return cls(
            model_key=artifact.get("model_key", ""),
            interval=artifact.get("interval", ""),
            feature_names=artifact.get("feature_names") or [],
            means=means,
            stds=stds,
            options=artifact.get("options") or {},
            trees=trees,
            trained_from=_parse_iso(artifact.get("trained_from")),
            trained_to=_parse_iso(artifact.get("trained_to")),
        )


def _clamp_score(score: float) -> float:
    if math.isnan(score) or math.isinf(score) or score < 0:
        return 0.0
    if score > 1:
        return 1.0
    return score


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value is not None else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return to_utc_naive(datetime.fromisoformat(value.replace("Z", "+00:00")))
