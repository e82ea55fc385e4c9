"""
SQLAlchemy 2.0 database models for the crypto advisory ML signal core.

Candles and classic signals are written by collaborators outside this package;
feature rows, model versions and predictions are owned by the ML pipeline.
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from cryptoadvisor.utils.datetime import utc_now

Base = declarative_base()


class Candle(Base):
    """OHLCV candle per symbol and interval, keyed by open time (UTC)."""

    __tablename__ = "candles"
    __table_args__ = (
        UniqueConstraint("symbol", "interval", "open_time", name="uq_candles_symbol_interval_open_time"),
        Index("ix_candles_symbol_interval_open_time", "symbol", "interval", "open_time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    interval = Column(String, nullable=False)
    open_time = Column(DateTime, nullable=False)
    open = Column(Float, nullable=False)
    high = Column(Float, nullable=False)
    low = Column(Float, nullable=False)
    close = Column(Float, nullable=False)
    volume = Column(Float, nullable=False, default=0.0)

    def __repr__(self) -> str:
        return f"<Candle(symbol={self.symbol}, interval={self.interval}, open_time={self.open_time}, close={self.close})>"


class Signal(Base):
    """Trading signal emitted by the technical engine or the ML inference service.

    A signal is unique per (symbol, interval, indicator, timestamp, direction);
    re-emitting the same signal refreshes its risk and details in place.
    """

    __tablename__ = "signals"
    __table_args__ = (
        UniqueConstraint(
            "symbol", "interval", "indicator", "timestamp", "direction",
            name="uq_signals_natural_key",
        ),
        CheckConstraint("risk BETWEEN 1 AND 5", name="ck_signals_risk_range"),
        Index("ix_signals_symbol_timestamp", "symbol", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    interval = Column(String, nullable=False)
    indicator = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    risk = Column(Integer, nullable=False)
    direction = Column(String, nullable=False)  # "long", "short", "hold"
    details = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now)

    def __repr__(self) -> str:
        return f"<Signal(id={self.id}, symbol={self.symbol}, indicator={self.indicator}, direction={self.direction})>"


class MLFeatureRow(Base):
    """Engineered features for one candle.

    The label is only present once the prediction horizon has closed.
    """

    __tablename__ = "ml_feature_rows"
    __table_args__ = (
        UniqueConstraint("symbol", "interval", "open_time", name="uq_ml_feature_rows_symbol_interval_open_time"),
        Index("ix_ml_feature_rows_interval_open_time", "interval", "open_time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    interval = Column(String, nullable=False)
    open_time = Column(DateTime, nullable=False)

    ret_1h = Column(Float, nullable=False, default=0.0)
    ret_4h = Column(Float, nullable=False, default=0.0)
    ret_12h = Column(Float, nullable=False, default=0.0)
    ret_24h = Column(Float, nullable=False, default=0.0)
    volatility_6h = Column(Float, nullable=False, default=0.0)
    volatility_24h = Column(Float, nullable=False, default=0.0)
    volume_z_24h = Column(Float, nullable=False, default=0.0)
    rsi_14 = Column(Float, nullable=False, default=0.0)
    macd_line = Column(Float, nullable=False, default=0.0)
    macd_signal = Column(Float, nullable=False, default=0.0)
    macd_hist = Column(Float, nullable=False, default=0.0)
    bb_pos = Column(Float, nullable=False, default=0.0)
    bb_width = Column(Float, nullable=False, default=0.0)

    target_up_4h = Column(Boolean, nullable=True)  # None until the horizon has closed
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self) -> str:
        return f"<MLFeatureRow(symbol={self.symbol}, interval={self.interval}, open_time={self.open_time})>"


class MLModelVersion(Base):
    """Immutable trained model artifact.

    `is_active` is the only column mutated after insert, and only through
    ModelRegistryRepository.activate_model.
    """

    __tablename__ = "ml_model_versions"
    __table_args__ = (
        UniqueConstraint("model_key", "version", name="uq_ml_model_versions_key_version"),
        Index("ix_ml_model_versions_key_active", "model_key", "is_active"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    model_key = Column(String, nullable=False)  # e.g. "logreg", "xgboost", "iforest_1h"
    version = Column(Integer, nullable=False)
    feature_spec_version = Column(String, nullable=False, default="v1")
    trained_from = Column(DateTime, nullable=False)
    trained_to = Column(DateTime, nullable=False)
    hyperparams_json = Column(Text, nullable=False, default="{}")
    metrics_json = Column(Text, nullable=False, default="{}")
    artifact_format = Column(String, nullable=False)
    artifact_blob = Column(LargeBinary, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now)

    def __repr__(self) -> str:
        return f"<MLModelVersion(model_key={self.model_key}, version={self.version}, active={self.is_active})>"


class MLModelVersionCounter(Base):
    """Last allocated version number per model key."""

    __tablename__ = "ml_model_version_counters"

    model_key = Column(String, primary_key=True)
    last_version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class MLPrediction(Base):
    """Per-model prediction for one feature row, resolved later against realized prices."""

    __tablename__ = "ml_predictions"
    __table_args__ = (
        UniqueConstraint(
            "symbol", "interval", "open_time", "model_key", "model_version",
            name="uq_ml_predictions_natural_key",
        ),
        CheckConstraint("risk BETWEEN 1 AND 5", name="ck_ml_predictions_risk_range"),
        Index("ix_ml_predictions_unresolved_target", "resolved_at", "target_time"),
        Index("ix_ml_predictions_symbol_open_time", "symbol", "open_time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    interval = Column(String, nullable=False)
    open_time = Column(DateTime, nullable=False)
    target_time = Column(DateTime, nullable=False)
    model_key = Column(String, nullable=False)
    model_version = Column(Integer, nullable=False)
    prob_up = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    direction = Column(String, nullable=False)
    risk = Column(Integer, nullable=False)
    signal_id = Column(Integer, nullable=True)
    details_json = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime, default=utc_now)

    # Resolution
    resolved_at = Column(DateTime, nullable=True)
    actual_up = Column(Boolean, nullable=True)
    is_correct = Column(Boolean, nullable=True)
    realized_return = Column(Float, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<MLPrediction(id={self.id}, symbol={self.symbol}, model_key={self.model_key}, "
            f"version={self.model_version}, direction={self.direction})>"
        )
