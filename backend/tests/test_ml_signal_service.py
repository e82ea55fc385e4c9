"""
Tests for the ML signal service: outcome resolution, feature refresh and cycle orchestration.
"""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from conftest import BASE_TIME, StubFeatureStore, make_feature_row, make_labeled_rows
from cryptoadvisor.db.repositories import CandleRepository, FeatureRowRepository
from cryptoadvisor.domain.signals import RiskLevel, SignalDirection
from cryptoadvisor.ml.predictions import PredictionRepository
from cryptoadvisor.ml.schemas import Candle, ModelTrainResult, Prediction, RunResult, TrainingRun
from cryptoadvisor.ml.training import TrainingConfig, TrainingService
from cryptoadvisor.services.ml_signal_service import (
    MLSignalService,
    MLSignalServiceConfig,
    candle_limit_for_interval,
    extract_open_and_target_close,
    predicted_up,
    should_resolve_prediction,
)
from cryptoadvisor.utils.errors import DatabaseError, OperationCancelledError, RecordNotFoundError


def _candle(open_time, close, symbol="BTC", interval="1h"):
    return Candle(symbol=symbol, interval=interval, open_time=open_time, open=close, high=close, low=close, close=close)


def _prediction(model_key="logreg", direction=SignalDirection.LONG, prob_up=0.7, symbol="BTC"):
    return Prediction(
        symbol=symbol,
        interval="1h",
        open_time=BASE_TIME,
        target_time=BASE_TIME + timedelta(hours=4),
        model_key=model_key,
        model_version=1,
        prob_up=prob_up,
        confidence=abs(prob_up - 0.5) * 2,
        direction=direction,
        risk=RiskLevel.LEVEL_4,
    )


class TestHelpers:
    def test_candle_limit_for_interval(self):
        assert candle_limit_for_interval("1h", 90, 4) == 90 * 24 + 4 + 64
        assert candle_limit_for_interval("4h", 90, 4) == 90 * 6 + 4 + 64
        assert candle_limit_for_interval("1d", 90, 4) == 500
        assert candle_limit_for_interval("15m", 1, 4) == 500

    def test_should_resolve_prediction(self):
        assert should_resolve_prediction("logreg")
        assert should_resolve_prediction("ensemble_v1")
        assert not should_resolve_prediction("iforest_4h")

    def test_extract_open_and_target_close(self):
        candles = [
            _candle(BASE_TIME + timedelta(hours=4), 120.0),
            _candle(BASE_TIME + timedelta(hours=1), 105.0),
            _candle(BASE_TIME, 100.0),
        ]
        assert extract_open_and_target_close(candles, BASE_TIME, BASE_TIME + timedelta(hours=4)) == (100.0, 120.0, True)

    def test_extract_requires_both_candles(self):
        candles = [_candle(BASE_TIME, 100.0)]
        _, _, found = extract_open_and_target_close(candles, BASE_TIME, BASE_TIME + timedelta(hours=4))
        assert not found
        assert extract_open_and_target_close([], BASE_TIME, BASE_TIME) == (0.0, 0.0, False)

    def test_predicted_up(self):
        assert predicted_up(_prediction(direction=SignalDirection.LONG, prob_up=0.4))
        assert not predicted_up(_prediction(direction=SignalDirection.SHORT, prob_up=0.6))
        assert predicted_up(_prediction(direction=SignalDirection.HOLD, prob_up=0.5))
        assert not predicted_up(_prediction(direction=SignalDirection.HOLD, prob_up=0.49))


class TestResolveOutcomes:
    NOW = BASE_TIME + timedelta(hours=5)

    @pytest.fixture
    def stores(self, db_session):
        candles = CandleRepository(db_session)
        candles.upsert_candles([
            _candle(BASE_TIME, 100.0),
            _candle(BASE_TIME + timedelta(hours=4), 120.0),
        ])
        predictions = PredictionRepository(db_session)
        service = MLSignalService(candles=candles, predictions=predictions)
        return service, predictions

    def test_long_prediction_resolved_correct(self, stores):
        service, predictions = stores
        stored = predictions.upsert_prediction(_prediction(direction=SignalDirection.LONG))

        assert service.resolve_outcomes(now=self.NOW) == 1

        resolved = predictions.list_predictions()[0]
        assert resolved.id == stored.id
        assert resolved.actual_up is True
        assert resolved.is_correct is True
        assert resolved.realized_return == pytest.approx(0.20)
        assert resolved.resolved_at is not None

    def test_short_prediction_resolved_incorrect(self, stores):
        service, predictions = stores
        predictions.upsert_prediction(_prediction(direction=SignalDirection.SHORT, prob_up=0.3))

        assert service.resolve_outcomes(now=self.NOW) == 1
        assert predictions.list_predictions()[0].is_correct is False

    def test_anomaly_predictions_are_skipped(self, stores):
        service, predictions = stores
        predictions.upsert_prediction(_prediction(model_key="iforest_1h", direction=SignalDirection.HOLD, prob_up=0.5))

        assert service.resolve_outcomes(now=self.NOW) == 0
        assert predictions.list_predictions()[0].resolved_at is None

    def test_missing_candles_leave_prediction_pending(self, stores):
        service, predictions = stores
        predictions.upsert_prediction(_prediction(symbol="ETH"))

        assert service.resolve_outcomes(now=self.NOW) == 0
        assert len(predictions.list_unresolved_due(self.NOW)) == 1

    def test_not_yet_due(self, stores):
        service, predictions = stores
        predictions.upsert_prediction(_prediction())
        assert service.resolve_outcomes(now=BASE_TIME + timedelta(hours=3)) == 0

    def test_second_run_resolves_nothing(self, stores):
        service, predictions = stores
        predictions.upsert_prediction(_prediction())
        assert service.resolve_outcomes(now=self.NOW) == 1
        assert service.resolve_outcomes(now=self.NOW) == 0

    def test_concurrently_resolved_prediction_is_skipped(self):
        candles = MagicMock()
        candles.get_candles_in_range.return_value = [
            _candle(BASE_TIME, 100.0),
            _candle(BASE_TIME + timedelta(hours=4), 90.0),
        ]
        predictions = MagicMock()
        predictions.list_unresolved_due.return_value = [_prediction().model_copy(update={"id": 7})]
        predictions.resolve_prediction.side_effect = RecordNotFoundError("gone")

        service = MLSignalService(candles=candles, predictions=predictions)

        assert service.resolve_outcomes(now=self.NOW) == 0
        predictions.resolve_prediction.assert_called_once_with(7, False, False, pytest.approx(-0.1))

    def test_batch_size_from_config(self):
        predictions = MagicMock()
        predictions.list_unresolved_due.return_value = []
        service = MLSignalService(
            candles=MagicMock(),
            predictions=predictions,
            config=MLSignalServiceConfig(resolve_batch_size=25),
        )

        service.resolve_outcomes(now=self.NOW)

        predictions.list_unresolved_due.assert_called_once_with(self.NOW, 25)


class TestRefreshFeatures:
    def test_refresh_builds_rows_per_symbol_and_interval(self, db_session):
        candles = CandleRepository(db_session)
        candles.upsert_candles([_candle(BASE_TIME + timedelta(hours=i), 100.0 + i) for i in range(10)])

        engine = MagicMock()
        engine.build_rows.side_effect = lambda cs, target_hours: [
            make_feature_row(symbol=c.symbol, interval=c.interval, open_time=c.open_time) for c in cs
        ]
        feature_rows = FeatureRowRepository(db_session)
        config = MLSignalServiceConfig(symbols=["BTC", "ETH"], intervals=["1h", "4h"])
        service = MLSignalService(candles=candles, feature_engine=engine, feature_rows=feature_rows, config=config)

        assert service.refresh_features() == 10
        engine.build_rows.assert_called_once()
        assert engine.build_rows.call_args[0][1] == 4
        assert len(feature_rows.list_rows("1h", BASE_TIME, BASE_TIME + timedelta(days=1))) == 10

    def test_refresh_without_engine_is_noop(self):
        service = MLSignalService(candles=MagicMock(), feature_rows=MagicMock())
        assert service.refresh_features() == 0

    def test_refresh_cancellation(self):
        event = threading.Event()
        event.set()
        service = MLSignalService(candles=MagicMock(), feature_engine=MagicMock(), feature_rows=MagicMock())
        with pytest.raises(OperationCancelledError):
            service.refresh_features(cancel_event=event)


class TestRunCycle:
    def _service(self):
        training = MagicMock()
        training.train_all.return_value = TrainingRun(results=[
            ModelTrainResult(model_key="logreg", interval="1h", version=3, sample_count=1200, promoted=True),
            ModelTrainResult(
                model_key="xgboost", interval="1h", version=2, sample_count=1200,
                promote_error="metrics JSON is not an object",
            ),
        ])
        inference = MagicMock()
        inference.run_latest.return_value = RunResult(predictions=6, signals=2)
        predictions = MagicMock()
        predictions.list_unresolved_due.return_value = []
        return MLSignalService(candles=MagicMock(), training=training, inference=inference, predictions=predictions)

    def test_full_cycle_report(self):
        report = self._service().run_cycle()

        assert report.models_trained == 2
        assert report.models_promoted == 1
        assert report.promotion_errors == {"xgboost:v2": "metrics JSON is not an object"}
        assert (report.predictions, report.signals) == (6, 2)
        assert report.errors == {}
        assert report.first_error is None
        assert report.training_skipped == []

        as_dict = report.to_dict()
        assert as_dict["training_results"][0]["model_key"] == "logreg"
        assert as_dict["first_error"] is None

    def test_skipped_training_sub_runs_are_reported(self, stub_registry, monkeypatch):
        monkeypatch.setattr(
            "cryptoadvisor.services.ml_signal_service.utc_now", lambda: BASE_TIME + timedelta(hours=100)
        )
        training = TrainingService(
            StubFeatureStore({"1h": make_labeled_rows(50)}),
            stub_registry,
            TrainingConfig(min_train_samples=1000),
        )
        service = MLSignalService(candles=MagicMock(), training=training)

        report = service.run_cycle(["train"])

        assert report.models_trained == 0
        assert [s["sub_run"] for s in report.training_skipped] == [
            "directional training (1h)",
            "iforest_1h training",
        ]
        skipped = report.to_dict()["training_skipped"]
        assert skipped[0]["error"] == "InsufficientSamplesError"
        assert skipped[0]["details"] == {"got": 50, "need": 1000}

    def test_stage_failure_is_recorded_and_cycle_continues(self):
        service = self._service()
        service.training.train_all.side_effect = DatabaseError("registry unavailable")
        service.predictions.list_unresolved_due.side_effect = OperationalError("SELECT", {}, Exception("locked"))

        report = service.run_cycle()

        assert report.errors["train"] == "registry unavailable"
        assert "locked" in report.errors["resolve"]
        assert report.predictions == 6
        assert report.first_error == "train: registry unavailable"

    def test_only_requested_stages_run(self):
        service = self._service()
        report = service.run_cycle(["infer"])

        service.training.train_all.assert_not_called()
        service.predictions.list_unresolved_due.assert_not_called()
        assert report.predictions == 6

    def test_unknown_stage_rejected(self):
        with pytest.raises(ValueError):
            self._service().run_cycle(["deploy"])

    def test_cancellation_aborts_cycle(self):
        service = self._service()
        service.training.train_all.side_effect = OperationCancelledError("Operation cancelled")

        with pytest.raises(OperationCancelledError):
            service.run_cycle()
        service.inference.run_latest.assert_not_called()
