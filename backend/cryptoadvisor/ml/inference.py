"""
Inference service: scores the latest feature rows with the active models.

For every row the service
1. scores it with the interval's isolation forest (if any) and persists a
   standalone anomaly prediction,
2. on the primary interval, persists one prediction per active directional
   family plus a damped ensemble prediction fusing the classic technical
   score with the family probabilities,
3. emits a trading signal for every non-hold directional prediction and links
   it back to the prediction.

Predictions are upserted on their natural key, so re-running a cycle over the
same rows refreshes rather than duplicates them.
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Tuple

from cryptoadvisor.domain.signals import (
    INDICATOR_ML_ENSEMBLE_UP4H,
    INDICATOR_ML_LOGREG_UP4H,
    INDICATOR_ML_XGBOOST_UP4H,
    SignalDirection,
    SignalFilter,
    is_classic_indicator,
)
from cryptoadvisor.log_config import logger
from cryptoadvisor.ml.common import (
    DEFAULT_INTERVAL,
    MODEL_KEY_ENSEMBLE_V1,
    MODEL_KEY_LOGREG,
    MODEL_KEY_XGBOOST,
    check_cancelled,
    clamp,
    clamp01,
    confidence as confidence_from_prob,
    direction_from_prob,
    feature_vector,
    iforest_model_key,
    risk_bump,
    risk_from_anomaly_score,
    risk_from_confidence,
    round_float,
    unique_intervals,
)
from cryptoadvisor.ml.ensemble import EnsembleCombiner, EnsembleComponents
from cryptoadvisor.ml.models import MODEL_FAMILIES, DirectionalModel, IsolationForestModel
from cryptoadvisor.ml.schemas import FeatureRow, ModelVersion, Prediction, RunResult, SignalRecord
from cryptoadvisor.utils.datetime import to_utc_naive, unix_seconds
from cryptoadvisor.utils.errors import ConfigurationError, DatabaseError, ModelArtifactError


CLASSIC_SIGNAL_LOOKBACK = 100

INDICATOR_BY_MODEL_KEY = {
    MODEL_KEY_LOGREG: INDICATOR_ML_LOGREG_UP4H,
    MODEL_KEY_XGBOOST: INDICATOR_ML_XGBOOST_UP4H,
}


class FeatureReader(Protocol):
    def list_latest_by_interval(self, interval: str) -> List[FeatureRow]: ...


class ActiveModelSource(Protocol):
    def get_active_model(self, model_key: str) -> Optional[ModelVersion]: ...


class PredictionStore(Protocol):
    def upsert_prediction(self, prediction: Prediction) -> Prediction: ...

    def attach_signal_id(self, prediction_id: int, signal_id: int) -> None: ...


class SignalStore(Protocol):
    def insert_signals(self, signals: List[SignalRecord]) -> List[SignalRecord]: ...

    def list_signals(self, signal_filter: SignalFilter) -> List[SignalRecord]: ...


@dataclass
class InferenceConfig:
    """Inference knobs; out-of-range values fall back to defaults."""

    interval: str = DEFAULT_INTERVAL
    intervals: List[str] = field(default_factory=list)
    target_hours: int = 4
    long_threshold: float = 0.55
    short_threshold: float = 0.45
    enable_iforest: bool = True
    anomaly_threshold: float = 0.62
    anomaly_damp_max: float = 0.65

    def __post_init__(self):
        if not self.interval:
            self.interval = DEFAULT_INTERVAL
        if not self.intervals:
            self.intervals = [self.interval]
        if self.target_hours <= 0:
            self.target_hours = 4
        if not 0 < self.long_threshold < 1:
            self.long_threshold = 0.55
        if not 0 < self.short_threshold < 1:
            self.short_threshold = 0.45
        if not 0 < self.anomaly_threshold < 1:
            self.anomaly_threshold = 0.62
        if not 0 <= self.anomaly_damp_max <= 1:
            self.anomaly_damp_max = 0.65

    @property
    def target_label(self) -> str:
        return f"{self.target_hours}h"


def build_inference_config(settings) -> InferenceConfig:
    """Inference configuration from application settings."""
    return InferenceConfig(
        interval=settings.ml_interval,
        intervals=settings.ml_interval_list,
        target_hours=settings.ml_target_hours,
        long_threshold=settings.ml_long_threshold,
        short_threshold=settings.ml_short_threshold,
        enable_iforest=settings.ml_enable_iforest,
        anomaly_threshold=settings.ml_anomaly_threshold,
        anomaly_damp_max=settings.ml_anomaly_damp_max,
    )


@dataclass
class _RowScores:
    """Per-row values shared by every prediction derived from the row."""

    row: FeatureRow
    target_time: datetime
    anomaly_score: float = 0.0
    damp_factor: float = 1.0


def damp_factor(anomaly_score: float, damp_max: float) -> float:
    """Ensemble multiplier in [0, 1]; 1 means no damping."""
    return clamp(1.0 - damp_max * clamp01(anomaly_score), 0.0, 1.0)


def classic_score(signals: List[SignalRecord], row: FeatureRow) -> float:
    """
    Risk-weighted vote of classic technical signals at the row's exact timestamp.

    Returns a score in [-1, 1], or 0 when no classic signal matches.
    """
    target_ts = unix_seconds(row.open_time)
    weighted = 0.0
    weight_total = 0.0
    for signal in signals:
        if signal.interval != row.interval or unix_seconds(signal.timestamp) != target_ts:
            continue
        if not is_classic_indicator(signal.indicator):
            continue
        if signal.direction == SignalDirection.LONG:
            vote = 1.0
        elif signal.direction == SignalDirection.SHORT:
            vote = -1.0
        else:
            vote = 0.0
        weight = max((6.0 - float(signal.risk)) / 5.0, 0.0)
        weighted += vote * weight
        weight_total += weight
    if weight_total == 0:
        return 0.0
    return clamp(weighted / weight_total, -1.0, 1.0)


def indicator_for_model_key(model_key: str) -> str:
    return INDICATOR_BY_MODEL_KEY.get(model_key, INDICATOR_ML_ENSEMBLE_UP4H)


class InferenceService:
    """Runs the active models over the latest feature rows."""

    def __init__(
        self,
        features: FeatureReader,
        registry: ActiveModelSource,
        predictions: PredictionStore,
        signals: SignalStore,
        ensemble: Optional[EnsembleCombiner] = None,
        config: Optional[InferenceConfig] = None,
    ):
        self.features = features
        self.registry = registry
        self.predictions = predictions
        self.signals = signals
        self.ensemble = ensemble or EnsembleCombiner()
        self.config = config or InferenceConfig()

    # ------------------------------------------------------------------
    # Model loading
    # ------------------------------------------------------------------

    def load_directional_models(self) -> Dict[str, Tuple[int, DirectionalModel]]:
        """Active directional models keyed by model key; unreadable artifacts are skipped."""
        loaded: Dict[str, Tuple[int, DirectionalModel]] = {}
        for model_key, family in MODEL_FAMILIES.items():
            active = self.registry.get_active_model(model_key)
            if active is None:
                continue
            try:
                loaded[model_key] = (active.version, family.unmarshal_binary(active.artifact_blob))
            except ModelArtifactError as e:
                logger.error(f"Skipping {model_key} v{active.version}: {e.message}")
        return loaded

    def load_iforest(self, interval: str) -> Optional[Tuple[int, IsolationForestModel]]:
        if not self.config.enable_iforest:
            return None
        model_key = iforest_model_key(interval)
        active = self.registry.get_active_model(model_key)
        if active is None:
            return None
        try:
            return active.version, IsolationForestModel.unmarshal_binary(active.artifact_blob)
        except ModelArtifactError as e:
            logger.error(f"Skipping {model_key} v{active.version}: {e.message}")
            return None

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run_latest(self, now: Optional[datetime] = None, cancel_event: Optional[threading.Event] = None) -> RunResult:
        """
        Score the newest feature row of every symbol on every configured interval.

        Raises:
            ConfigurationError: A collaborator is missing
            DatabaseError: Feature, registry, prediction or signal I/O failed
            OperationCancelledError: cancel_event was set
        """
        if self.features is None or self.registry is None or self.predictions is None or self.signals is None:
            raise ConfigurationError("ml inference service is not fully initialized")

        directional = self.load_directional_models()
        result = RunResult()

        for interval in unique_intervals(self.config.intervals, self.config.interval):
            check_cancelled(cancel_event, f"inference {interval}")
            rows = self.features.list_latest_by_interval(interval)
            if not rows:
                continue

            iforest = self.load_iforest(interval)

            for row in rows:
                check_cancelled(cancel_event, f"inference {row.symbol} {interval}")
                self._score_row(row, directional, iforest, result)

        logger.info(
            f"Inference run finished: {result.predictions} predictions, {result.signals} signals"
            + (f" (as of {to_utc_naive(now).isoformat()})" if now is not None else "")
        )
        return result

    def _score_row(
        self,
        row: FeatureRow,
        directional: Dict[str, Tuple[int, DirectionalModel]],
        iforest: Optional[Tuple[int, IsolationForestModel]],
        result: RunResult,
    ) -> None:
        scores = _RowScores(
            row=row,
            target_time=to_utc_naive(row.open_time) + timedelta(hours=self.config.target_hours),
        )
        features = feature_vector(row)

        if iforest is not None:
            iforest_version, model = iforest
            scores.anomaly_score = clamp01(model.predict_score(features))
            scores.damp_factor = damp_factor(scores.anomaly_score, self.config.anomaly_damp_max)
            self.persist_anomaly_prediction(scores, iforest_version)
            result.predictions += 1

        if row.interval != self.config.interval or not directional:
            return

        classic = self.classic_score(row)
        probs: Dict[str, float] = {}
        for model_key, (version, model) in directional.items():
            prob_up = clamp01(model.predict_prob(features))
            probs[model_key] = prob_up
            signaled = self.persist_model_prediction(scores, model_key, version, prob_up)
            result.predictions += 1
            if signaled:
                result.signals += 1

        ensemble_score = self.ensemble.score(
            EnsembleComponents(
                classic_score=classic,
                logreg_prob=probs.get(MODEL_KEY_LOGREG, 0.5),
                xgboost_prob=probs.get(MODEL_KEY_XGBOOST, 0.5),
            )
        )
        ensemble_score = clamp(ensemble_score * scores.damp_factor, -1.0, 1.0)
        ensemble_prob = clamp01((ensemble_score + 1.0) / 2.0)
        ensemble_version = max([version for version, _ in directional.values()] + [0])
        if ensemble_version <= 0:
            ensemble_version = 1

        signaled = self.persist_model_prediction(
            scores,
            MODEL_KEY_ENSEMBLE_V1,
            ensemble_version,
            ensemble_prob,
            ensemble_score=ensemble_score,
        )
        result.predictions += 1
        if signaled:
            result.signals += 1

    def classic_score(self, row: FeatureRow) -> float:
        """Classic technical score for a row; listing failures count as no signal."""
        try:
            signals = self.signals.list_signals(SignalFilter(symbol=row.symbol, limit=CLASSIC_SIGNAL_LOOKBACK))
        except DatabaseError as e:
            logger.warning(f"Classic signals unavailable for {row.symbol}: {e.message}")
            return 0.0
        return classic_score(signals, row)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist_model_prediction(
        self,
        scores: _RowScores,
        model_key: str,
        model_version: int,
        prob_up: float,
        ensemble_score: float = 0.0,
    ) -> bool:
        """Upsert a directional prediction; returns True when a signal was emitted."""
        row = scores.row
        conf = confidence_from_prob(prob_up)
        is_ensemble = model_key == MODEL_KEY_ENSEMBLE_V1

        if is_ensemble:
            direction = self.ensemble.direction(ensemble_score)
        else:
            direction = direction_from_prob(prob_up, self.config.long_threshold, self.config.short_threshold)

        risk = risk_from_confidence(conf)
        if is_ensemble and scores.anomaly_score >= self.config.anomaly_threshold:
            risk = risk_bump(risk, 1)

        prediction = self.predictions.upsert_prediction(
            Prediction(
                symbol=row.symbol,
                interval=row.interval,
                open_time=to_utc_naive(row.open_time),
                target_time=scores.target_time,
                model_key=model_key,
                model_version=model_version,
                prob_up=prob_up,
                confidence=conf,
                direction=direction,
                risk=risk,
                details_json=self.build_details_json(model_key, model_version, prob_up, conf, ensemble_score, scores),
            )
        )

        if direction == SignalDirection.HOLD:
            return False

        stored = self.signals.insert_signals([
            SignalRecord(
                symbol=row.symbol,
                interval=row.interval,
                indicator=indicator_for_model_key(model_key),
                timestamp=to_utc_naive(row.open_time),
                risk=risk,
                direction=direction,
                details=self.build_signal_details(model_key, model_version, prob_up, conf, ensemble_score, scores),
            )
        ])
        if stored and stored[0].id is not None and stored[0].id > 0:
            self.predictions.attach_signal_id(prediction.id, stored[0].id)
        return True

    def persist_anomaly_prediction(self, scores: _RowScores, model_version: int) -> Prediction:
        """Standalone anomaly prediction; always hold and never signaled."""
        row = scores.row
        model_key = iforest_model_key(row.interval)
        details = {
            "model_key": model_key,
            "model_version": model_version,
            "anomaly_score": round_float(scores.anomaly_score),
            "threshold": round_float(self.config.anomaly_threshold),
            "damp_factor": round_float(scores.damp_factor),
            "target": self.config.target_label,
        }
        return self.predictions.upsert_prediction(
            Prediction(
                symbol=row.symbol,
                interval=row.interval,
                open_time=to_utc_naive(row.open_time),
                target_time=scores.target_time,
                model_key=model_key,
                model_version=model_version,
                prob_up=0.5,
                confidence=scores.anomaly_score,
                direction=SignalDirection.HOLD,
                risk=risk_from_anomaly_score(scores.anomaly_score),
                details_json=json.dumps(details),
            )
        )

    def build_details_json(
        self,
        model_key: str,
        model_version: int,
        prob_up: float,
        conf: float,
        ensemble_score: float,
        scores: _RowScores,
    ) -> str:
        payload = {
            "model_key": model_key,
            "model_version": model_version,
            "prob_up": round_float(prob_up),
            "confidence": round_float(conf),
            "target": self.config.target_label,
        }
        if model_key == MODEL_KEY_ENSEMBLE_V1:
            payload["ensemble_score"] = round_float(ensemble_score)
        if scores.anomaly_score > 0:
            payload["anomaly_score"] = round_float(scores.anomaly_score)
            payload["damp_factor"] = round_float(scores.damp_factor)
        return json.dumps(payload)

    def build_signal_details(
        self,
        model_key: str,
        model_version: int,
        prob_up: float,
        conf: float,
        ensemble_score: float,
        scores: _RowScores,
    ) -> str:
        details = (
            f"model_key={model_key};model_version={model_version};"
            f"prob_up={prob_up:.4f};confidence={conf:.4f};target={self.config.target_label}"
        )
        if model_key != MODEL_KEY_ENSEMBLE_V1:
            return details
        details += f";ensemble_score={ensemble_score:.4f}"
        if scores.anomaly_score > 0:
            details += f";anomaly_score={scores.anomaly_score:.4f};damp_factor={scores.damp_factor:.4f}"
        return details
