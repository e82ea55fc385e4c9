"""
Training service for directional and anomaly models.

Handles dataset construction from feature rows, chronological splitting,
per-family training, evaluation, registry persistence and metric-gated
promotion.

Directional families are trained once per run on the primary interval; an
isolation forest is trained per configured interval. A sub-run that lacks data
or fails to fit is skipped and reported, while registry failures abort the
whole run.
"""

import json
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Type

import numpy as np
from sklearn.metrics import accuracy_score, brier_score_loss, f1_score, precision_score, recall_score

from cryptoadvisor.log_config import logger
from cryptoadvisor.ml.common import (
    DEFAULT_INTERVAL,
    FEATURE_NAMES,
    FEATURE_SPEC_VERSION,
    check_cancelled,
    clamp01,
    feature_vector,
    iforest_model_key,
    target_label,
    unique_intervals,
)
from cryptoadvisor.ml.models import MODEL_FAMILIES, DirectionalModel, IsolationForestModel
from cryptoadvisor.ml.models.iforest import ARTIFACT_FORMAT as IFOREST_ARTIFACT_FORMAT
from cryptoadvisor.ml.models.iforest import default_train_options as iforest_defaults
from cryptoadvisor.ml.schemas import FeatureRow, ModelTrainResult, ModelVersion, TrainingRun
from cryptoadvisor.utils.datetime import to_utc_naive
from cryptoadvisor.utils.errors import (
    CryptoAdvisorError,
    InsufficientSamplesError,
    ModelError,
    RecordNotFoundError,
)


# Promotion gates
MIN_PROMOTION_TEST_COUNT = 300
MIN_AUC_IMPROVEMENT = 0.01
MIN_SCORE_STD_IMPROVEMENT = 0.01
MIN_ANOMALY_SAMPLES_FLOOR = 300


class FeatureRowStore(Protocol):
    def list_labeled_rows(self, interval: str, date_from: datetime, date_to: datetime) -> List[FeatureRow]: ...

    def list_rows(self, interval: str, date_from: datetime, date_to: datetime) -> List[FeatureRow]: ...


class ModelRegistry(Protocol):
    def next_version(self, model_key: str) -> int: ...

    def insert_model_version(self, model_version: ModelVersion) -> ModelVersion: ...

    def get_active_model(self, model_key: str) -> Optional[ModelVersion]: ...

    def activate_model(self, model_key: str, version: int) -> None: ...


@dataclass
class TrainingConfig:
    """Training knobs; non-positive or empty values fall back to defaults."""

    interval: str = DEFAULT_INTERVAL
    intervals: List[str] = field(default_factory=list)
    train_window_days: int = 90
    min_train_samples: int = 1000
    enable_iforest: bool = True
    iforest_trees: int = 0
    iforest_sample_size: int = 0

    def __post_init__(self):
        if not self.interval:
            self.interval = DEFAULT_INTERVAL
        if not self.intervals:
            self.intervals = [self.interval]
        if self.train_window_days <= 0:
            self.train_window_days = 90
        if self.min_train_samples <= 0:
            self.min_train_samples = 1000
        defaults = iforest_defaults()
        if self.iforest_trees <= 0:
            self.iforest_trees = defaults["num_trees"]
        if self.iforest_sample_size <= 0:
            self.iforest_sample_size = defaults["sample_size"]


def build_training_config(settings) -> TrainingConfig:
    """Training configuration from application settings."""
    return TrainingConfig(
        interval=settings.ml_interval,
        intervals=settings.ml_interval_list,
        train_window_days=settings.ml_train_window_days,
        min_train_samples=settings.ml_min_train_samples,
        enable_iforest=settings.ml_enable_iforest,
        iforest_trees=settings.ml_iforest_trees,
        iforest_sample_size=settings.ml_iforest_sample_size,
    )


# ============================================================================
# Dataset helpers
# ============================================================================

def build_dataset(rows: Sequence[FeatureRow]) -> Tuple[List[List[float]], List[float]]:
    """(samples, labels) for labeled rows; unlabeled rows are dropped."""
    samples: List[List[float]] = []
    labels: List[float] = []
    for row in rows:
        label, ok = target_label(row)
        if not ok:
            continue
        samples.append(feature_vector(row))
        labels.append(label)
    return samples, labels


def build_anomaly_dataset(rows: Sequence[FeatureRow]) -> List[List[float]]:
    return [feature_vector(row) for row in rows]


def chronological_split(samples: Sequence, labels: Sequence):
    """
    Split a time-ordered dataset 70/15/15 into train/validation/test without shuffling.

    Boundaries are clamped so that train and test are both non-empty whenever
    the dataset has at least two rows; smaller datasets yield empty partitions.

    Returns:
        (train_x, train_y, val_x, val_y, test_x, test_y)
    """
    n = len(samples)
    if n < 2:
        return [], [], [], [], [], []

    train_end = int(n * 0.70)
    val_end = int(n * 0.85)
    if train_end <= 0:
        train_end = n // 2
    if val_end <= train_end:
        val_end = (train_end + n) // 2
    if val_end >= n:
        val_end = n - 1
    if val_end <= train_end:
        train_end = n - 2
        val_end = n - 1
    if train_end < 1:
        train_end = 1
    if val_end < train_end + 1:
        val_end = train_end + 1
    if val_end >= n:
        val_end = n - 1

    return (
        list(samples[:train_end]), list(labels[:train_end]),
        list(samples[train_end:val_end]), list(labels[train_end:val_end]),
        list(samples[val_end:]), list(labels[val_end:]),
    )


# ============================================================================
# Metrics
# ============================================================================

def compute_auc(labels: Sequence[float], probs: Sequence[float]) -> float:
    """ROC AUC via the Mann-Whitney rank sum with tie-averaged ranks."""
    pairs = [(clamp01(float(p)), float(y)) for p, y in zip(probs, labels)]
    pos = sum(1 for _, y in pairs if y >= 0.5)
    neg = len(pairs) - pos
    if pos == 0 or neg == 0:
        return 0.5

    pairs.sort(key=lambda pair: pair[0])

    sum_rank_pos = 0.0
    i = 0
    while i < len(pairs):
        j = i + 1
        while j < len(pairs) and abs(pairs[j][0] - pairs[i][0]) < 1e-12:
            j += 1
        avg_rank = (i + 1 + j) / 2.0
        sum_rank_pos += avg_rank * sum(1 for k in range(i, j) if pairs[k][1] >= 0.5)
        i = j

    auc = (sum_rank_pos - pos * (pos + 1) / 2.0) / (pos * neg)
    if math.isnan(auc) or math.isinf(auc):
        return 0.5
    return auc


def compute_metrics(labels: Sequence[float], probs: Sequence[float]) -> Dict[str, float]:
    """Classification metrics at a 0.5 threshold plus AUC and Brier score."""
    n = len(labels)
    if n == 0 or len(probs) != n:
        return {"auc": 0.5, "accuracy": 0.0, "precision": 0.0, "recall": 0.0, "f1": 0.0, "brier": 0.0, "n_test": 0.0}

    y = (np.asarray(labels, dtype=float) >= 0.5).astype(int)
    p = np.asarray([clamp01(float(v)) for v in probs], dtype=float)
    pred = (p >= 0.5).astype(int)

    return {
        "auc": compute_auc(labels, probs),
        "accuracy": float(accuracy_score(y, pred)),
        "precision": float(precision_score(y, pred, pos_label=1, zero_division=0)),
        "recall": float(recall_score(y, pred, pos_label=1, zero_division=0)),
        "f1": float(f1_score(y, pred, pos_label=1, zero_division=0)),
        "brier": float(brier_score_loss(y, p, pos_label=1)),
        "n_test": float(n),
    }


def mean_std(values: Sequence[float]) -> Tuple[float, float]:
    """Mean and population standard deviation."""
    if len(values) == 0:
        return 0.0, 0.0
    arr = np.asarray(values, dtype=float)
    if len(arr) == 1:
        return float(arr[0]), 0.0
    return float(arr.mean()), float(arr.std())


def percentile(values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile: sorted[round(p * (n - 1))]."""
    if len(values) == 0:
        return 0.0
    p = min(max(p, 0.0), 1.0)
    ordered = sorted(values)
    index = int(round(p * (len(ordered) - 1)))
    index = min(max(index, 0), len(ordered) - 1)
    return float(ordered[index])


def anomaly_metrics(scores: Sequence[float]) -> Dict[str, float]:
    """Reference distribution of training-set anomaly scores."""
    if len(scores) == 0:
        return {"score_mean": 0.0, "score_std": 0.0, "score_p95": 0.0, "n": 0.0}
    values = [clamp01(float(s)) for s in scores]
    mean, std = mean_std(values)
    return {
        "score_mean": mean,
        "score_std": std,
        "score_p95": percentile(values, 0.95),
        "n": float(len(values)),
    }


def metric_value(metrics_json: str, key: str) -> Optional[float]:
    """
    Read a numeric metric from a registry metrics blob.

    Returns None when the key is absent; raises ValueError for malformed JSON
    or a non-numeric value.
    """
    metrics = json.loads(metrics_json or "{}")
    if not isinstance(metrics, dict):
        raise ValueError("metrics JSON is not an object")
    if key not in metrics or metrics[key] is None:
        return None
    return float(metrics[key])


# ============================================================================
# Promotion rules
# ============================================================================

def should_promote(active: Optional[ModelVersion], new_auc: float, test_count: int, new_version: int) -> bool:
    """Directional promotion gate."""
    if active is None:
        return True
    if active.version == new_version:
        return active.is_active
    if test_count < MIN_PROMOTION_TEST_COUNT:
        return False
    active_auc = metric_value(active.metrics_json, "auc")
    if active_auc is None:
        return True
    return new_auc >= active_auc + MIN_AUC_IMPROVEMENT


def should_promote_anomaly(active: Optional[ModelVersion], new_std: float, new_version: int) -> bool:
    """Anomaly promotion gate; a wider score spread counts as a sharper detector."""
    if active is None:
        return True
    if active.version == new_version:
        return active.is_active
    active_std = metric_value(active.metrics_json, "score_std")
    if active_std is None:
        return True
    return new_std >= active_std + MIN_SCORE_STD_IMPROVEMENT


# ============================================================================
# Service
# ============================================================================

class TrainingService:
    """Trains, registers and promotes models from stored feature rows."""

    def __init__(self, features: FeatureRowStore, registry: ModelRegistry, config: Optional[TrainingConfig] = None):
        self.features = features
        self.registry = registry
        self.config = config or TrainingConfig()

    @property
    def min_anomaly_samples(self) -> int:
        return max(self.config.min_train_samples // 2, MIN_ANOMALY_SAMPLES_FLOOR)

    def train_all(self, now: datetime, cancel_event: Optional[threading.Event] = None) -> TrainingRun:
        """
        Run directional training and, when enabled, anomaly training.

        Skipped sub-runs are logged and returned in `TrainingRun.skipped`
        with the error that caused them.

        Raises:
            DatabaseError: Feature or registry I/O failed
            OperationCancelledError: cancel_event was set
        """
        now = to_utc_naive(now)
        date_from = now - timedelta(days=self.config.train_window_days)
        run = TrainingRun()
        run.results.extend(self.train_directional(date_from, now, run.skipped, cancel_event))

        if self.config.enable_iforest:
            run.results.extend(self.train_anomaly(date_from, now, run.skipped, cancel_event))

        logger.info(
            f"Training run finished: {len(run.results)} models trained, "
            f"{sum(1 for r in run.results if r.promoted)} promoted, {len(run.skipped)} skipped"
        )
        return run

    @staticmethod
    def _skip(skipped: List[Dict[str, Any]], sub_run: str, error: CryptoAdvisorError) -> None:
        logger.warning(f"Skipping {sub_run}: {error.message}")
        entry = error.to_dict()
        entry["sub_run"] = sub_run
        skipped.append(entry)

    def train_directional(
        self,
        date_from: datetime,
        now: datetime,
        skipped: List[Dict[str, Any]],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[ModelTrainResult]:
        interval = self.config.interval
        rows = self.features.list_labeled_rows(interval, date_from, now)
        samples, labels = build_dataset(rows)

        if len(samples) < self.config.min_train_samples:
            self._skip(
                skipped,
                f"directional training ({interval})",
                InsufficientSamplesError(
                    f"not enough labeled samples: got {len(samples)} need >= {self.config.min_train_samples}",
                    got=len(samples),
                    need=self.config.min_train_samples,
                ),
            )
            return []

        train_x, train_y, _, _, test_x, test_y = chronological_split(samples, labels)
        if not train_x or not test_x:
            self._skip(
                skipped,
                f"directional training ({interval})",
                InsufficientSamplesError("dataset split produced empty partitions", got=len(samples), need=2),
            )
            return []

        logger.info(
            f"Directional dataset for {interval}: {len(samples)} samples "
            f"(train={len(train_x)}, test={len(test_x)})"
        )

        results: List[ModelTrainResult] = []
        for model_key, family in MODEL_FAMILIES.items():
            check_cancelled(cancel_event, f"training {model_key}")
            try:
                model = family.train(train_x, train_y, FEATURE_NAMES)
                blob = model.marshal_binary()
            except ModelError as e:
                self._skip(skipped, f"{model_key} training", e)
                continue

            metrics = compute_metrics(test_y, model.predict_batch(test_x))
            logger.info(
                f"{model_key}: auc={metrics['auc']:.4f} accuracy={metrics['accuracy']:.4f} "
                f"brier={metrics['brier']:.4f} n_test={len(test_y)}"
            )
            results.append(
                self._persist_directional(
                    family=family,
                    interval=interval,
                    date_from=date_from,
                    now=now,
                    blob=blob,
                    metrics=metrics,
                    sample_count=len(samples),
                    test_count=len(test_y),
                )
            )
        return results

    def train_anomaly(
        self,
        date_from: datetime,
        now: datetime,
        skipped: List[Dict[str, Any]],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[ModelTrainResult]:
        results: List[ModelTrainResult] = []
        min_samples = self.min_anomaly_samples

        for interval in unique_intervals(self.config.intervals, self.config.interval):
            check_cancelled(cancel_event, f"anomaly training {interval}")
            model_key = iforest_model_key(interval)

            samples = build_anomaly_dataset(self.features.list_rows(interval, date_from, now))
            if len(samples) < min_samples:
                self._skip(
                    skipped,
                    f"{model_key} training",
                    InsufficientSamplesError(
                        f"not enough rows for {model_key}: got {len(samples)} need >= {min_samples}",
                        got=len(samples),
                        need=min_samples,
                    ),
                )
                continue

            try:
                model = IsolationForestModel.train(
                    samples,
                    FEATURE_NAMES,
                    model_key=model_key,
                    interval=interval,
                    trained_from=date_from,
                    trained_to=now,
                    num_trees=self.config.iforest_trees,
                    sample_size=self.config.iforest_sample_size,
                )
                blob = model.marshal_binary()
            except ModelError as e:
                self._skip(skipped, f"{model_key} training", e)
                continue

            metrics = anomaly_metrics(model.predict_batch(samples))
            logger.info(
                f"{model_key}: score_mean={metrics['score_mean']:.4f} "
                f"score_std={metrics['score_std']:.4f} score_p95={metrics['score_p95']:.4f}"
            )

            version = self._register(
                model_key=model_key,
                date_from=date_from,
                now=now,
                blob=blob,
                artifact_format=IFOREST_ARTIFACT_FORMAT,
                hyperparams={
                    "num_trees": self.config.iforest_trees,
                    "sample_size": self.config.iforest_sample_size,
                },
                metrics=metrics,
            )
            result = ModelTrainResult(
                model_key=model_key,
                interval=interval,
                version=version,
                sample_count=len(samples),
            )
            self._maybe_promote(
                result,
                lambda active: should_promote_anomaly(active, metrics["score_std"], version),
            )
            results.append(result)

        return results

    def _persist_directional(
        self,
        family: Type[DirectionalModel],
        interval: str,
        date_from: datetime,
        now: datetime,
        blob: bytes,
        metrics: Dict[str, float],
        sample_count: int,
        test_count: int,
    ) -> ModelTrainResult:
        version = self._register(
            model_key=family.model_key,
            date_from=date_from,
            now=now,
            blob=blob,
            artifact_format=family.artifact_format,
            hyperparams=family.hyperparameters(),
            metrics=metrics,
        )
        result = ModelTrainResult(
            model_key=family.model_key,
            interval=interval,
            version=version,
            sample_count=sample_count,
            test_count=test_count,
            auc=metrics["auc"],
        )
        self._maybe_promote(
            result,
            lambda active: should_promote(active, metrics["auc"], test_count, version),
        )
        return result

    def _register(
        self,
        model_key: str,
        date_from: datetime,
        now: datetime,
        blob: bytes,
        artifact_format: str,
        hyperparams: Dict[str, Any],
        metrics: Dict[str, float],
    ) -> int:
        version = self.registry.next_version(model_key)
        inserted = self.registry.insert_model_version(
            ModelVersion(
                model_key=model_key,
                version=version,
                feature_spec_version=FEATURE_SPEC_VERSION,
                trained_from=date_from,
                trained_to=now,
                hyperparams_json=json.dumps(hyperparams),
                metrics_json=json.dumps(metrics),
                artifact_format=artifact_format,
                artifact_blob=blob,
                is_active=False,
            )
        )
        return inserted.version

    def _maybe_promote(self, result: ModelTrainResult, decide) -> None:
        """
        Apply a promotion decision.

        Malformed metrics and a vanished target version are recorded on the
        result; other registry failures propagate.
        """
        try:
            active = self.registry.get_active_model(result.model_key)
            if not decide(active):
                logger.info(f"{result.model_key} v{result.version} kept inactive")
                return
            self.registry.activate_model(result.model_key, result.version)
        except (RecordNotFoundError, ValueError, TypeError) as e:
            result.promote_error = str(e)
            logger.warning(f"Promotion of {result.model_key} v{result.version} failed: {e}")
            return
        result.promoted = True
        logger.info(f"Promoted {result.model_key} v{result.version}")
