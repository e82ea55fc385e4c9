"""
Shared pytest fixtures for the ML signal core test suite.

Provides a temp-file SQLite session, feature-row factories and in-memory
collaborator stubs for service-level tests.
"""

import os
import sys
import tempfile
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from cryptoadvisor.db.models import Base
from cryptoadvisor.ml.common import FEATURE_NAMES
from cryptoadvisor.ml.schemas import FeatureRow, ModelVersion


BASE_TIME = datetime(2026, 2, 1, 0, 0, 0)


@pytest.fixture(scope="function")
def db_session():
    """Create a temp-file SQLite database for each test."""
    temp_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    temp_file.close()
    db_path = temp_file.name

    engine = create_engine(f"sqlite:///{db_path}", echo=False)
    Base.metadata.create_all(engine)

    Session = sessionmaker(bind=engine, expire_on_commit=False)
    session = Session()

    yield session

    session.close()
    Base.metadata.drop_all(engine)
    engine.dispose()
    os.unlink(db_path)


def make_feature_row(
    symbol: str = "BTC",
    interval: str = "1h",
    open_time: datetime = BASE_TIME,
    values: Optional[List[float]] = None,
    target_up: Optional[bool] = None,
) -> FeatureRow:
    """Feature row with the given feature values in FEATURE_NAMES order (zeros by default)."""
    values = values if values is not None else [0.0] * len(FEATURE_NAMES)
    payload = dict(zip(FEATURE_NAMES, values))
    return FeatureRow(
        symbol=symbol,
        interval=interval,
        open_time=open_time,
        target_up_4h=target_up,
        **payload,
    )


def make_labeled_rows(n: int, interval: str = "1h", seed: int = 7) -> List[FeatureRow]:
    """
    Hourly labeled rows whose label depends on the first two features.

    The signal is strong enough for both model families to beat a coin flip.
    """
    rng = np.random.default_rng(seed)
    rows = []
    for i in range(n):
        values = rng.normal(0.0, 1.0, size=len(FEATURE_NAMES))
        label = bool(values[0] + 0.5 * values[1] + rng.normal(0.0, 0.5) > 0)
        rows.append(
            make_feature_row(
                interval=interval,
                open_time=BASE_TIME + timedelta(hours=i),
                values=values.tolist(),
                target_up=label,
            )
        )
    return rows


class StubFeatureStore:
    """In-memory feature store keyed by interval."""

    def __init__(self, rows_by_interval: Optional[Dict[str, List[FeatureRow]]] = None):
        self.rows_by_interval = rows_by_interval or {}

    def list_labeled_rows(self, interval, date_from, date_to):
        return [r for r in self.list_rows(interval, date_from, date_to) if r.target_up_4h is not None]

    def list_rows(self, interval, date_from, date_to):
        return [
            r for r in self.rows_by_interval.get(interval, [])
            if date_from <= r.open_time <= date_to
        ]

    def list_latest_by_interval(self, interval):
        latest: Dict[str, FeatureRow] = {}
        for row in self.rows_by_interval.get(interval, []):
            if row.symbol not in latest or row.open_time > latest[row.symbol].open_time:
                latest[row.symbol] = row
        return [latest[symbol] for symbol in sorted(latest)]


class StubRegistry:
    """In-memory model registry with the same activation semantics as the database one."""

    def __init__(self):
        self.versions: Dict[str, List[ModelVersion]] = {}
        self.counters: Dict[str, int] = {}

    def next_version(self, model_key):
        self.counters[model_key] = self.counters.get(model_key, 0) + 1
        return self.counters[model_key]

    def insert_model_version(self, model_version):
        stored = model_version.model_copy(update={"id": sum(len(v) for v in self.versions.values()) + 1})
        self.versions.setdefault(model_version.model_key, []).append(stored)
        return stored

    def get_active_model(self, model_key):
        for version in self.versions.get(model_key, []):
            if version.is_active:
                return version
        return None

    def activate_model(self, model_key, version):
        from cryptoadvisor.utils.errors import RecordNotFoundError

        versions = self.versions.get(model_key, [])
        if not any(v.version == version for v in versions):
            raise RecordNotFoundError(f"Model {model_key} v{version} not found")
        for v in versions:
            v.is_active = v.version == version

    def add(self, model_key, version, artifact_blob=b"{}", metrics_json="{}", is_active=False, artifact_format="json"):
        """Seed a stored version directly."""
        mv = ModelVersion(
            id=version,
            model_key=model_key,
            version=version,
            trained_from=BASE_TIME,
            trained_to=BASE_TIME,
            metrics_json=metrics_json,
            artifact_format=artifact_format,
            artifact_blob=artifact_blob,
            is_active=is_active,
        )
        self.versions.setdefault(model_key, []).append(mv)
        self.counters[model_key] = max(self.counters.get(model_key, 0), version)
        return mv


@pytest.fixture
def feature_store():
    return StubFeatureStore()


@pytest.fixture
def stub_registry():
    return StubRegistry()


@pytest.fixture
def make_row():
    return make_feature_row


@pytest.fixture
def labeled_rows():
    return make_labeled_rows
