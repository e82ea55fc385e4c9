"""
Configuration management for the crypto advisory ML signal core using Pydantic Settings.

Loads configuration from environment variables with type validation and sane defaults.
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")

    # Database
    database_url: str = Field(default="sqlite:///./cryptoadvisor.db", description="SQLAlchemy database URL")
    db_pool_size: int = Field(default=10, description="Connection pool size (server databases only)")
    db_max_overflow: int = Field(default=20, description="Maximum overflow connections")

    # Logging
    log_level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(default="json", description="Log format: json or text")
    log_file: str = Field(default="", description="Log file path (empty disables the file sink)")

    # ML signal pipeline
    ml_interval: str = Field(default="1h", description="Primary interval for directional models")
    ml_intervals: str = Field(default="1h,4h", description="Intervals for features, anomaly models and inference (comma-separated)")
    ml_symbols: str = Field(default="BTC,ETH,SOL", description="Supported symbols (comma-separated)")
    ml_target_hours: int = Field(default=4, description="Prediction horizon in hours")
    ml_train_window_days: int = Field(default=90, description="Trailing training window in days")
    ml_min_train_samples: int = Field(default=1000, description="Minimum labeled samples for directional training")
    ml_long_threshold: float = Field(default=0.55, description="probUp at or above which a model goes long")
    ml_short_threshold: float = Field(default=0.45, description="probUp at or below which a model goes short")
    ml_enable_iforest: bool = Field(default=True, description="Enable isolation-forest anomaly detection")
    ml_iforest_trees: int = Field(default=200, description="Isolation forest tree count")
    ml_iforest_sample_size: int = Field(default=256, description="Isolation forest per-tree sample size")
    ml_anomaly_threshold: float = Field(default=0.62, description="Anomaly score that bumps ensemble risk")
    ml_anomaly_damp_max: float = Field(default=0.65, description="Maximum ensemble damping at anomaly score 1")
    ml_resolve_batch_size: int = Field(default=200, description="Max predictions resolved per run")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, description="Enable background scheduler")
    ml_refresh_interval_minutes: int = Field(default=15, description="Feature refresh interval")
    ml_inference_interval_minutes: int = Field(default=15, description="Inference interval")
    ml_resolve_interval_minutes: int = Field(default=30, description="Outcome resolution interval")
    ml_training_interval_hours: int = Field(default=24, description="Training interval")

    @property
    def ml_interval_list(self) -> List[str]:
        """Parse comma-separated intervals into a list."""
        return [interval.strip() for interval in self.ml_intervals.split(",") if interval.strip()]

    @property
    def ml_symbol_list(self) -> List[str]:
        """Parse comma-separated symbols into an upper-cased list."""
        return [symbol.strip().upper() for symbol in self.ml_symbols.split(",") if symbol.strip()]

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"


# Global settings instance
settings = Settings()
