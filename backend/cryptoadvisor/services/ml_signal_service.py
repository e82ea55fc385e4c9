"""
ML signal service - top-level orchestrator for the ML signal pipeline.

Wires feature refresh, training, inference and outcome resolution together
for an external scheduler. All configuration is passed in at construction;
the service keeps no global state.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from cryptoadvisor.domain.signals import SignalDirection
from cryptoadvisor.log_config import logger
from cryptoadvisor.ml.common import (
    DEFAULT_INTERVAL,
    check_cancelled,
    is_iforest_model_key,
    unique_intervals,
)
from cryptoadvisor.ml.inference import InferenceService
from cryptoadvisor.ml.schemas import Candle, FeatureRow, ModelTrainResult, Prediction, RunResult, TrainingRun
from cryptoadvisor.ml.training import TrainingService
from cryptoadvisor.utils.datetime import unix_seconds, utc_now
from cryptoadvisor.utils.errors import CryptoAdvisorError, OperationCancelledError, RecordNotFoundError


DEFAULT_RESOLVE_LIMIT = 200
MIN_CANDLE_LIMIT = 500
CANDLE_LIMIT_PADDING = 64

POINTS_PER_DAY = {
    "4h": 6,
    "1d": 1,
}

STAGES = ("refresh", "train", "infer", "resolve")


class CandleSource(Protocol):
    def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]: ...

    def get_candles_in_range(self, symbol: str, interval: str, date_from: datetime, date_to: datetime) -> List[Candle]: ...


class FeatureEngine(Protocol):
    """Builds feature rows (labeled where the horizon has closed) from ascending candles."""

    def build_rows(self, candles: List[Candle], target_hours: int) -> List[FeatureRow]: ...


class FeatureRowWriter(Protocol):
    def upsert_rows(self, rows: Sequence[FeatureRow]) -> int: ...


class PredictionResolver(Protocol):
    def list_unresolved_due(self, now: datetime, limit: int = DEFAULT_RESOLVE_LIMIT) -> List[Prediction]: ...

    def resolve_prediction(self, prediction_id: int, actual_up: bool, is_correct: bool, realized_return: float) -> None: ...


@dataclass
class MLSignalServiceConfig:
    interval: str = DEFAULT_INTERVAL
    intervals: List[str] = field(default_factory=list)
    symbols: List[str] = field(default_factory=lambda: ["BTC", "ETH", "SOL"])
    target_hours: int = 4
    train_window_days: int = 90
    resolve_batch_size: int = DEFAULT_RESOLVE_LIMIT

    def __post_init__(self):
        if not self.interval:
            self.interval = DEFAULT_INTERVAL
        if not self.intervals:
            self.intervals = [self.interval]
        if self.target_hours <= 0:
            self.target_hours = 4
        if self.train_window_days <= 0:
            self.train_window_days = 90
        if self.resolve_batch_size <= 0:
            self.resolve_batch_size = DEFAULT_RESOLVE_LIMIT


def build_signal_service_config(settings) -> MLSignalServiceConfig:
    return MLSignalServiceConfig(
        interval=settings.ml_interval,
        intervals=settings.ml_interval_list,
        symbols=settings.ml_symbol_list,
        target_hours=settings.ml_target_hours,
        train_window_days=settings.ml_train_window_days,
        resolve_batch_size=settings.ml_resolve_batch_size,
    )


@dataclass
class CycleReport:
    """Aggregate outcome of one pipeline cycle."""

    features_refreshed: int = 0
    predictions: int = 0
    signals: int = 0
    models_trained: int = 0
    models_promoted: int = 0
    predictions_resolved: int = 0
    training_results: List[ModelTrainResult] = field(default_factory=list)
    training_skipped: List[Dict[str, Any]] = field(default_factory=list)
    promotion_errors: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def first_error(self) -> Optional[str]:
        for stage in STAGES:
            if stage in self.errors:
                return f"{stage}: {self.errors[stage]}"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "features_refreshed": self.features_refreshed,
            "predictions": self.predictions,
            "signals": self.signals,
            "models_trained": self.models_trained,
            "models_promoted": self.models_promoted,
            "predictions_resolved": self.predictions_resolved,
            "training_results": [r.model_dump() for r in self.training_results],
            "training_skipped": [dict(entry) for entry in self.training_skipped],
            "promotion_errors": dict(self.promotion_errors),
            "errors": dict(self.errors),
            "first_error": self.first_error,
        }


def candle_limit_for_interval(interval: str, window_days: int, target_hours: int) -> int:
    """Candles needed to rebuild features across the training window plus the label horizon."""
    points_per_day = POINTS_PER_DAY.get(interval, 24)
    return max(MIN_CANDLE_LIMIT, window_days * points_per_day + target_hours + CANDLE_LIMIT_PADDING)


def should_resolve_prediction(model_key: str) -> bool:
    """Anomaly predictions carry no direction and are never resolved."""
    return not is_iforest_model_key(model_key)


def extract_open_and_target_close(
    candles: Sequence[Candle],
    open_time: datetime,
    target_time: datetime,
) -> Tuple[float, float, bool]:
    """
    Close prices of the candles opening exactly at open_time and target_time.

    Returns:
        (open_close, target_close, found) where found requires both candles
    """
    if not candles:
        return 0.0, 0.0, False

    values = sorted(
        ((unix_seconds(c.open_time), c.close) for c in candles if c is not None),
        key=lambda item: item[0],
    )
    open_ts = unix_seconds(open_time)
    target_ts = unix_seconds(target_time)

    open_close = target_close = 0.0
    has_open = has_target = False
    for ts, close in values:
        if ts == open_ts:
            has_open = True
            open_close = close
        if ts == target_ts:
            has_target = True
            target_close = close
    return open_close, target_close, has_open and has_target


def predicted_up(prediction: Prediction) -> bool:
    if prediction.direction == SignalDirection.LONG:
        return True
    if prediction.direction == SignalDirection.SHORT:
        return False
    return prediction.prob_up >= 0.5


class MLSignalService:
    """Runs the ML pipeline stages against injected collaborators."""

    def __init__(
        self,
        candles: Optional[CandleSource] = None,
        feature_engine: Optional[FeatureEngine] = None,
        feature_rows: Optional[FeatureRowWriter] = None,
        training: Optional[TrainingService] = None,
        inference: Optional[InferenceService] = None,
        predictions: Optional[PredictionResolver] = None,
        config: Optional[MLSignalServiceConfig] = None,
    ):
        self.candles = candles
        self.feature_engine = feature_engine
        self.feature_rows = feature_rows
        self.training = training
        self.inference = inference
        self.predictions = predictions
        self.config = config or MLSignalServiceConfig()
        self.intervals = unique_intervals(self.config.intervals, self.config.interval)

    def refresh_features(self, cancel_event: Optional[threading.Event] = None) -> int:
        """Rebuild and upsert feature rows for every (interval, symbol)."""
        if self.candles is None or self.feature_engine is None or self.feature_rows is None:
            logger.debug("Feature refresh skipped: collaborators not configured")
            return 0

        rows_count = 0
        for interval in self.intervals:
            limit = candle_limit_for_interval(interval, self.config.train_window_days, self.config.target_hours)
            for symbol in self.config.symbols:
                check_cancelled(cancel_event, f"feature refresh {symbol} {interval}")
                candles = self.candles.get_candles(symbol, interval, limit)
                if not candles:
                    continue
                rows = self.feature_engine.build_rows(candles, self.config.target_hours)
                if not rows:
                    continue
                self.feature_rows.upsert_rows(rows)
                rows_count += len(rows)

        logger.info(f"Refreshed {rows_count} feature rows across {len(self.intervals)} intervals")
        return rows_count

    def run_inference(self, cancel_event: Optional[threading.Event] = None) -> RunResult:
        if self.inference is None:
            return RunResult()
        return self.inference.run_latest(utc_now(), cancel_event)

    def run_training(self, cancel_event: Optional[threading.Event] = None) -> TrainingRun:
        if self.training is None:
            return TrainingRun()
        return self.training.train_all(utc_now(), cancel_event)

    def resolve_outcomes(
        self,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        """
        Resolve due predictions against realized candle closes.

        Predictions without both candles (or with a zero open close) are left
        for a later run. A prediction resolved concurrently is skipped.
        """
        if self.predictions is None or self.candles is None:
            return 0
        if limit is None or limit <= 0:
            limit = self.config.resolve_batch_size

        pending = self.predictions.list_unresolved_due(now or utc_now(), limit)

        resolved = 0
        for prediction in pending:
            check_cancelled(cancel_event, "outcome resolution")
            if not should_resolve_prediction(prediction.model_key):
                continue

            candles = self.candles.get_candles_in_range(
                prediction.symbol,
                prediction.interval,
                prediction.open_time,
                prediction.target_time,
            )
            open_close, target_close, ok = extract_open_and_target_close(
                candles, prediction.open_time, prediction.target_time
            )
            if not ok or open_close == 0:
                continue

            actual_up = target_close > open_close
            is_correct = predicted_up(prediction) == actual_up
            realized_return = target_close / open_close - 1

            try:
                self.predictions.resolve_prediction(prediction.id, actual_up, is_correct, realized_return)
            except RecordNotFoundError:
                logger.debug(f"Prediction {prediction.id} already resolved")
                continue
            resolved += 1

        logger.info(f"Resolved {resolved} of {len(pending)} due predictions")
        return resolved

    def run_cycle(
        self,
        stages: Sequence[str] = STAGES,
        cancel_event: Optional[threading.Event] = None,
    ) -> CycleReport:
        """
        Run the requested stages in pipeline order.

        A hard failure in one stage is recorded and the remaining stages still
        run; cancellation aborts the cycle.
        """
        unknown = [stage for stage in stages if stage not in STAGES]
        if unknown:
            raise ValueError(f"Unknown stages: {unknown}")

        report = CycleReport()
        for stage in STAGES:
            if stage not in stages:
                continue
            try:
                self._run_stage(stage, report, cancel_event)
            except OperationCancelledError:
                raise
            except (CryptoAdvisorError, SQLAlchemyError) as e:
                message = e.message if isinstance(e, CryptoAdvisorError) else str(e)
                report.errors[stage] = message
                logger.error(f"ML cycle stage '{stage}' failed: {message}")

        logger.info(
            f"ML cycle finished: refreshed={report.features_refreshed} predictions={report.predictions} "
            f"signals={report.signals} trained={report.models_trained} promoted={report.models_promoted} "
            f"skipped={len(report.training_skipped)} "
            f"resolved={report.predictions_resolved}"
        )
        return report

    def _run_stage(self, stage: str, report: CycleReport, cancel_event: Optional[threading.Event]) -> None:
        if stage == "refresh":
            report.features_refreshed = self.refresh_features(cancel_event)
        elif stage == "train":
            run = self.run_training(cancel_event)
            results = run.results
            report.training_results = results
            report.training_skipped = run.skipped
            report.models_trained = len(results)
            report.models_promoted = sum(1 for r in results if r.promoted)
            for r in results:
                if r.promote_error:
                    report.promotion_errors[f"{r.model_key}:v{r.version}"] = r.promote_error
        elif stage == "infer":
            run = self.run_inference(cancel_event)
            report.predictions = run.predictions
            report.signals = run.signals
        elif stage == "resolve":
            report.predictions_resolved = self.resolve_outcomes(cancel_event=cancel_event)
