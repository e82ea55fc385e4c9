"""
Repository pattern for data access.

Provides clean interfaces for database operations, abstracting SQLAlchemy details.
Each repository handles a single aggregate (Candle, Signal, MLFeatureRow) and
exchanges pydantic schemas with its callers. Mutating methods commit their own
unit of work and roll back on failure.
"""

from datetime import datetime
from typing import Iterable, List, Sequence

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from loguru import logger

from cryptoadvisor.db.models import Candle, MLFeatureRow, Signal
from cryptoadvisor.db.session import upsert_insert
from cryptoadvisor.domain.signals import SignalFilter
from cryptoadvisor.ml import schemas
from cryptoadvisor.ml.common import FEATURE_NAMES
from cryptoadvisor.utils.datetime import to_utc_naive, utc_now
from cryptoadvisor.utils.errors import DatabaseError

UPSERT_CHUNK_SIZE = 500


def _chunks(items: Sequence, size: int = UPSERT_CHUNK_SIZE) -> Iterable[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class CandleRepository:
    """Repository for OHLCV candle operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_candles(self, symbol: str, interval: str, limit: int) -> List[schemas.Candle]:
        """Newest `limit` candles, returned in ascending open-time order."""
        stmt = (
            select(Candle)
            .where(Candle.symbol == symbol, Candle.interval == interval)
            .order_by(Candle.open_time.desc())
            .limit(limit)
        )
        rows = self.db.execute(stmt).scalars().all()
        return [schemas.Candle.model_validate(row) for row in reversed(rows)]

    def get_candles_in_range(
        self,
        symbol: str,
        interval: str,
        date_from: datetime,
        date_to: datetime,
    ) -> List[schemas.Candle]:
        """Candles with open time in [date_from, date_to], ascending."""
        stmt = (
            select(Candle)
            .where(
                Candle.symbol == symbol,
                Candle.interval == interval,
                Candle.open_time >= to_utc_naive(date_from),
                Candle.open_time <= to_utc_naive(date_to),
            )
            .order_by(Candle.open_time.asc())
        )
        return [schemas.Candle.model_validate(row) for row in self.db.execute(stmt).scalars().all()]

    def upsert_candles(self, candles: Sequence[schemas.Candle]) -> int:
        """Insert or refresh candles by (symbol, interval, open_time)."""
        if not candles:
            return 0
        values = [
            {
                "symbol": c.symbol,
                "interval": c.interval,
                "open_time": to_utc_naive(c.open_time),
                "open": c.open,
                "high": c.high,
                "low": c.low,
                "close": c.close,
                "volume": c.volume,
            }
            for c in candles
        ]
        try:
            for chunk in _chunks(values):
                stmt = upsert_insert(self.db, Candle).values(list(chunk))
                stmt = stmt.on_conflict_do_update(
                    index_elements=["symbol", "interval", "open_time"],
                    set_={
                        col: stmt.excluded[col]
                        for col in ("open", "high", "low", "close", "volume")
                    },
                )
                self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError(f"Failed to upsert candles: {e}") from e
        return len(values)


class SignalRepository:
    """Repository for trading signal operations."""

    def __init__(self, db: Session):
        self.db = db

    def insert_signals(self, signals: Sequence[schemas.SignalRecord]) -> List[schemas.SignalRecord]:
        """
        Insert signals, refreshing risk/details of ones that already exist.

        Returns:
            Copies of the input signals carrying their database IDs
        """
        stored: List[schemas.SignalRecord] = []
        if not signals:
            return stored

        try:
            for signal in signals:
                stmt = upsert_insert(self.db, Signal).values(
                    symbol=signal.symbol,
                    interval=signal.interval,
                    indicator=signal.indicator,
                    timestamp=to_utc_naive(signal.timestamp),
                    risk=int(signal.risk),
                    direction=signal.direction.value,
                    details=signal.details,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["symbol", "interval", "indicator", "timestamp", "direction"],
                    set_={
                        "risk": stmt.excluded.risk,
                        "details": stmt.excluded.details,
                    },
                ).returning(Signal.id)
                signal_id = self.db.execute(stmt).scalar_one()
                stored.append(signal.model_copy(update={"id": signal_id}))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError(f"Failed to insert signals: {e}") from e

        logger.debug(f"Stored {len(stored)} signals")
        return stored

    def list_signals(self, signal_filter: SignalFilter) -> List[schemas.SignalRecord]:
        """Signals matching the filter, newest first."""
        stmt = select(Signal)

        if signal_filter.symbol:
            stmt = stmt.where(Signal.symbol == signal_filter.symbol)

        if signal_filter.interval:
            stmt = stmt.where(Signal.interval == signal_filter.interval)

        if signal_filter.indicator:
            stmt = stmt.where(Signal.indicator == signal_filter.indicator)

        if signal_filter.risk is not None:
            stmt = stmt.where(Signal.risk == int(signal_filter.risk))

        stmt = stmt.order_by(Signal.timestamp.desc(), Signal.id.desc())
        if signal_filter.limit and signal_filter.limit > 0:
            stmt = stmt.limit(signal_filter.limit)

        return [schemas.SignalRecord.model_validate(row) for row in self.db.execute(stmt).scalars().all()]


class FeatureRowRepository:
    """Repository for engineered ML feature rows."""

    def __init__(self, db: Session):
        self.db = db

    def _range_query(self, interval: str, date_from: datetime, date_to: datetime):
        return (
            select(MLFeatureRow)
            .where(
                MLFeatureRow.interval == interval,
                MLFeatureRow.open_time >= to_utc_naive(date_from),
                MLFeatureRow.open_time <= to_utc_naive(date_to),
            )
            .order_by(MLFeatureRow.open_time.asc(), MLFeatureRow.symbol.asc())
        )

    def list_labeled_rows(self, interval: str, date_from: datetime, date_to: datetime) -> List[schemas.FeatureRow]:
        """Rows whose label horizon has closed, in chronological order."""
        stmt = self._range_query(interval, date_from, date_to).where(
            MLFeatureRow.target_up_4h.is_not(None)
        )
        return [schemas.FeatureRow.model_validate(row) for row in self.db.execute(stmt).scalars().all()]

    def list_rows(self, interval: str, date_from: datetime, date_to: datetime) -> List[schemas.FeatureRow]:
        """All rows in range regardless of label, in chronological order."""
        stmt = self._range_query(interval, date_from, date_to)
        return [schemas.FeatureRow.model_validate(row) for row in self.db.execute(stmt).scalars().all()]

    def list_latest_by_interval(self, interval: str) -> List[schemas.FeatureRow]:
        """Newest row per symbol for the interval."""
        latest = (
            select(
                MLFeatureRow.symbol.label("symbol"),
                func.max(MLFeatureRow.open_time).label("open_time"),
            )
            .where(MLFeatureRow.interval == interval)
            .group_by(MLFeatureRow.symbol)
            .subquery()
        )
        stmt = (
            select(MLFeatureRow)
            .join(
                latest,
                and_(
                    MLFeatureRow.symbol == latest.c.symbol,
                    MLFeatureRow.open_time == latest.c.open_time,
                ),
            )
            .where(MLFeatureRow.interval == interval)
            .order_by(MLFeatureRow.symbol.asc())
        )
        return [schemas.FeatureRow.model_validate(row) for row in self.db.execute(stmt).scalars().all()]

    def upsert_rows(self, rows: Sequence[schemas.FeatureRow]) -> int:
        """Insert or refresh feature rows by (symbol, interval, open_time)."""
        if not rows:
            return 0
        values = []
        for row in rows:
            value = {name: float(getattr(row, name)) for name in FEATURE_NAMES}
            value.update(
                symbol=row.symbol,
                interval=row.interval,
                open_time=to_utc_naive(row.open_time),
                target_up_4h=row.target_up_4h,
            )
            values.append(value)

        try:
            for chunk in _chunks(values):
                stmt = upsert_insert(self.db, MLFeatureRow).values(list(chunk))
                updates = {name: stmt.excluded[name] for name in FEATURE_NAMES}
                updates["target_up_4h"] = stmt.excluded.target_up_4h
                updates["updated_at"] = utc_now()
                stmt = stmt.on_conflict_do_update(
                    index_elements=["symbol", "interval", "open_time"],
                    set_=updates,
                )
                self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError(f"Failed to upsert feature rows: {e}") from e
        return len(values)
