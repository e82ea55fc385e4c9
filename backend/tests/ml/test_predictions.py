"""
Tests for the prediction repository against SQLite.
"""

import json
from datetime import timedelta

import pytest

from conftest import BASE_TIME
from cryptoadvisor.domain.signals import RiskLevel, SignalDirection
from cryptoadvisor.ml.predictions import INVALID_DETAILS_JSON, PredictionRepository, normalize_details_json
from cryptoadvisor.ml.schemas import Prediction
from cryptoadvisor.utils.errors import RecordNotFoundError


def _prediction(symbol="BTC", open_time=BASE_TIME, model_key="logreg", confidence=0.4, details='{"a": 1}', **kwargs):
    return Prediction(
        symbol=symbol,
        interval="1h",
        open_time=open_time,
        target_time=open_time + timedelta(hours=4),
        model_key=model_key,
        model_version=1,
        prob_up=0.5 + confidence / 2,
        confidence=confidence,
        direction=SignalDirection.LONG,
        risk=RiskLevel.LEVEL_4,
        details_json=details,
        **kwargs,
    )


@pytest.fixture
def repo(db_session):
    return PredictionRepository(db_session)


class TestNormalizeDetails:
    def test_normalization(self):
        assert normalize_details_json(None) == "{}"
        assert normalize_details_json("   ") == "{}"
        assert normalize_details_json("not json") == INVALID_DETAILS_JSON
        assert normalize_details_json('{"ok": true}') == '{"ok": true}'


class TestUpsert:
    def test_upsert_is_idempotent_on_natural_key(self, repo):
        first = repo.upsert_prediction(_prediction(confidence=0.4, details='{"run": 1}'))
        second = repo.upsert_prediction(_prediction(confidence=0.8, details='{"run": 2}'))

        assert second.id == first.id
        assert second.confidence == pytest.approx(0.8)
        assert json.loads(second.details_json) == {"run": 2}
        assert len(repo.list_predictions(limit=0)) == 1

    def test_distinct_model_keys_are_separate(self, repo):
        a = repo.upsert_prediction(_prediction(model_key="logreg"))
        b = repo.upsert_prediction(_prediction(model_key="ensemble_v1"))
        assert a.id != b.id

    def test_existing_signal_id_survives_refresh(self, repo):
        stored = repo.upsert_prediction(_prediction())
        repo.attach_signal_id(stored.id, 55)

        refreshed = repo.upsert_prediction(_prediction(confidence=0.9))

        assert refreshed.signal_id == 55

    def test_incoming_signal_id_wins(self, repo):
        repo.upsert_prediction(_prediction(signal_id=1))
        refreshed = repo.upsert_prediction(_prediction(signal_id=2))
        assert refreshed.signal_id == 2

    def test_invalid_details_are_replaced(self, repo):
        stored = repo.upsert_prediction(_prediction(details="{broken"))
        assert stored.details_json == INVALID_DETAILS_JSON

    def test_enums_round_trip(self, repo):
        stored = repo.upsert_prediction(_prediction())
        assert stored.direction == SignalDirection.LONG
        assert stored.risk == RiskLevel.LEVEL_4
        assert stored.created_at is not None


class TestAttachAndResolve:
    def test_attach_missing_prediction_raises(self, repo):
        with pytest.raises(RecordNotFoundError):
            repo.attach_signal_id(999, 1)

    def test_resolve_once(self, repo):
        stored = repo.upsert_prediction(_prediction())
        resolved_at = BASE_TIME + timedelta(hours=5)

        repo.resolve_prediction(stored.id, actual_up=True, is_correct=True, realized_return=0.2, resolved_at=resolved_at)

        resolved = repo.list_predictions()[0]
        assert resolved.resolved_at == resolved_at
        assert resolved.actual_up is True
        assert resolved.is_correct is True
        assert resolved.realized_return == pytest.approx(0.2)

        with pytest.raises(RecordNotFoundError):
            repo.resolve_prediction(stored.id, actual_up=False, is_correct=False, realized_return=-0.1)

        assert repo.list_predictions()[0].actual_up is True

    def test_list_unresolved_due(self, repo):
        due_late = repo.upsert_prediction(_prediction(symbol="BTC", open_time=BASE_TIME))
        due_early = repo.upsert_prediction(_prediction(symbol="ETH", open_time=BASE_TIME - timedelta(hours=2)))
        repo.upsert_prediction(_prediction(symbol="SOL", open_time=BASE_TIME + timedelta(hours=10)))
        resolved = repo.upsert_prediction(_prediction(symbol="ADA", open_time=BASE_TIME - timedelta(hours=1)))
        repo.resolve_prediction(resolved.id, True, True, 0.01)

        now = BASE_TIME + timedelta(hours=4)
        due = repo.list_unresolved_due(now)

        assert [p.id for p in due] == [due_early.id, due_late.id]
        assert len(repo.list_unresolved_due(now, limit=1)) == 1


class TestListPredictions:
    def test_filters_and_ordering(self, repo):
        repo.upsert_prediction(_prediction(symbol="BTC", open_time=BASE_TIME))
        repo.upsert_prediction(_prediction(symbol="BTC", open_time=BASE_TIME + timedelta(hours=1)))
        repo.upsert_prediction(_prediction(symbol="ETH", open_time=BASE_TIME, model_key="xgboost"))

        btc = repo.list_predictions(symbol="BTC")
        assert [p.open_time for p in btc] == [BASE_TIME + timedelta(hours=1), BASE_TIME]
        assert [p.symbol for p in repo.list_predictions(model_key="xgboost")] == ["ETH"]
        assert len(repo.list_predictions(limit=2)) == 2
