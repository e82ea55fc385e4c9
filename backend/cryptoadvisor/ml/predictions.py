"""
Prediction store for per-model ML predictions and their resolution.

Predictions are keyed by (symbol, interval, open_time, model_key, model_version);
re-running inference over the same rows refreshes the stored prediction in place.
"""

import json
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cryptoadvisor.db.models import MLPrediction
from cryptoadvisor.db.session import upsert_insert
from cryptoadvisor.ml.schemas import Prediction
from cryptoadvisor.utils.datetime import to_utc_naive, utc_now
from cryptoadvisor.utils.errors import DatabaseError, RecordNotFoundError

INVALID_DETAILS_JSON = '{"raw":"invalid"}'


def normalize_details_json(details_json: Optional[str]) -> str:
    """Empty details become {}; text that is not valid JSON is replaced by a marker object."""
    if not details_json or not details_json.strip():
        return "{}"
    try:
        json.loads(details_json)
    except ValueError:
        return INVALID_DETAILS_JSON
    return details_json


class PredictionRepository:
    """Repository for ML predictions."""

    def __init__(self, db: Session):
        self.db = db

    def _get(self, prediction_id: int) -> MLPrediction:
        return self.db.execute(
            select(MLPrediction)
            .where(MLPrediction.id == prediction_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

    def upsert_prediction(self, prediction: Prediction) -> Prediction:
        """
        Insert a prediction or refresh the one with the same natural key.

        An existing signal_id is kept when the incoming prediction carries none.
        """
        stmt = upsert_insert(self.db, MLPrediction).values(
            symbol=prediction.symbol,
            interval=prediction.interval,
            open_time=to_utc_naive(prediction.open_time),
            target_time=to_utc_naive(prediction.target_time),
            model_key=prediction.model_key,
            model_version=prediction.model_version,
            prob_up=prediction.prob_up,
            confidence=prediction.confidence,
            direction=prediction.direction.value,
            risk=int(prediction.risk),
            signal_id=prediction.signal_id,
            details_json=normalize_details_json(prediction.details_json),
            created_at=utc_now(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["symbol", "interval", "open_time", "model_key", "model_version"],
            set_={
                "target_time": stmt.excluded.target_time,
                "prob_up": stmt.excluded.prob_up,
                "confidence": stmt.excluded.confidence,
                "direction": stmt.excluded.direction,
                "risk": stmt.excluded.risk,
                "signal_id": func.coalesce(stmt.excluded.signal_id, MLPrediction.signal_id),
                "details_json": stmt.excluded.details_json,
            },
        ).returning(MLPrediction.id)

        try:
            prediction_id = self.db.execute(stmt).scalar_one()
            self.db.commit()
            row = self._get(prediction_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError(f"Failed to upsert prediction: {e}") from e
        return Prediction.model_validate(row)

    def attach_signal_id(self, prediction_id: int, signal_id: int) -> None:
        """Link a prediction to the signal emitted for it."""
        try:
            result = self.db.execute(
                update(MLPrediction)
                .where(MLPrediction.id == prediction_id)
                .values(signal_id=signal_id)
            )
            if result.rowcount == 0:
                self.db.rollback()
                raise RecordNotFoundError(
                    f"Prediction {prediction_id} not found",
                    details={"prediction_id": prediction_id},
                )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError(f"Failed to attach signal to prediction {prediction_id}: {e}") from e

    def list_unresolved_due(self, now: datetime, limit: int = 200) -> List[Prediction]:
        """Unresolved predictions whose target time has passed, oldest target first."""
        stmt = (
            select(MLPrediction)
            .where(
                MLPrediction.resolved_at.is_(None),
                MLPrediction.target_time <= to_utc_naive(now),
            )
            .order_by(MLPrediction.target_time.asc(), MLPrediction.id.asc())
        )
        if limit > 0:
            stmt = stmt.limit(limit)
        return [Prediction.model_validate(row) for row in self.db.execute(stmt).scalars().all()]

    def resolve_prediction(
        self,
        prediction_id: int,
        actual_up: bool,
        is_correct: bool,
        realized_return: float,
        resolved_at: Optional[datetime] = None,
    ) -> None:
        """
        Record the realized outcome of an unresolved prediction.

        Raises:
            RecordNotFoundError: The prediction is missing or already resolved
        """
        try:
            result = self.db.execute(
                update(MLPrediction)
                .where(MLPrediction.id == prediction_id, MLPrediction.resolved_at.is_(None))
                .values(
                    resolved_at=to_utc_naive(resolved_at) or utc_now(),
                    actual_up=actual_up,
                    is_correct=is_correct,
                    realized_return=realized_return,
                )
            )
            if result.rowcount == 0:
                self.db.rollback()
                raise RecordNotFoundError(
                    f"Prediction {prediction_id} not found or already resolved",
                    details={"prediction_id": prediction_id},
                )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError(f"Failed to resolve prediction {prediction_id}: {e}") from e

    def list_predictions(
        self,
        symbol: Optional[str] = None,
        interval: Optional[str] = None,
        model_key: Optional[str] = None,
        limit: int = 100,
    ) -> List[Prediction]:
        """Predictions for upstream readers, newest first."""
        stmt = select(MLPrediction)

        if symbol:
            stmt = stmt.where(MLPrediction.symbol == symbol)

        if interval:
            stmt = stmt.where(MLPrediction.interval == interval)

        if model_key:
            stmt = stmt.where(MLPrediction.model_key == model_key)

        stmt = stmt.order_by(MLPrediction.open_time.desc(), MLPrediction.id.desc())
        if limit > 0:
            stmt = stmt.limit(limit)
        return [Prediction.model_validate(row) for row in self.db.execute(stmt).scalars().all()]
