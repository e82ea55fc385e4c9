"""
Pydantic schemas for ML feature rows, model versions, predictions and run results.

These are the values that cross repository boundaries; ORM rows never leave
the repositories.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from cryptoadvisor.domain.signals import RiskLevel, SignalDirection


class FeatureRow(BaseModel):
    """Feature vector for a single candle; label present only once the horizon has closed."""

    model_config = ConfigDict(from_attributes=True)

    symbol: str
    interval: str
    open_time: datetime

    # Multi-horizon returns
    ret_1h: float = 0.0
    ret_4h: float = 0.0
    ret_12h: float = 0.0
    ret_24h: float = 0.0

    # Volatility and volume
    volatility_6h: float = 0.0
    volatility_24h: float = 0.0
    volume_z_24h: float = 0.0

    # Oscillators and bands
    rsi_14: float = 0.0
    macd_line: float = 0.0
    macd_signal: float = 0.0
    macd_hist: float = 0.0
    bb_pos: float = 0.0
    bb_width: float = 0.0

    target_up_4h: Optional[bool] = None


class Candle(BaseModel):
    """OHLCV candle."""

    model_config = ConfigDict(from_attributes=True)

    symbol: str
    interval: str
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class SignalRecord(BaseModel):
    """Signal as read from or written to the signal store; id is assigned on insert."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    symbol: str
    interval: str
    indicator: str
    timestamp: datetime
    risk: RiskLevel
    direction: SignalDirection
    details: Optional[str] = None


class ModelVersion(BaseModel):
    """Registry entry for one trained model artifact."""

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    id: Optional[int] = None
    model_key: str
    version: int
    feature_spec_version: str = "v1"
    trained_from: datetime
    trained_to: datetime
    hyperparams_json: str = "{}"
    metrics_json: str = "{}"
    artifact_format: str
    artifact_blob: bytes
    is_active: bool = False


class Prediction(BaseModel):
    """Per-model prediction with its (optional) resolution."""

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    id: Optional[int] = None
    symbol: str
    interval: str
    open_time: datetime
    target_time: datetime
    model_key: str
    model_version: int
    prob_up: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    direction: SignalDirection
    risk: RiskLevel
    signal_id: Optional[int] = None
    details_json: str = "{}"
    created_at: Optional[datetime] = None

    resolved_at: Optional[datetime] = None
    actual_up: Optional[bool] = None
    is_correct: Optional[bool] = None
    realized_return: Optional[float] = None


class ModelTrainResult(BaseModel):
    """Outcome of one training sub-run; promotion failures are recorded, not raised."""

    model_config = ConfigDict(protected_namespaces=())

    model_key: str
    interval: str
    version: int
    sample_count: int
    test_count: int = 0
    auc: float = 0.0
    promoted: bool = False
    promote_error: Optional[str] = None


class TrainingRun(BaseModel):
    """Results of one training run plus the sub-runs skipped for lack of data or a failed fit."""

    results: List[ModelTrainResult] = Field(default_factory=list)
    skipped: List[Dict[str, Any]] = Field(default_factory=list)


class RunResult(BaseModel):
    """Counts produced by one inference run."""

    predictions: int = 0
    signals: int = 0
