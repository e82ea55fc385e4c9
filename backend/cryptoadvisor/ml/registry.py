"""
Versioned model registry backed by ml_model_versions.

Model versions are immutable rows; the active version of a model key is
tracked by the is_active flag and only changed through activate_model, which
deactivates every other version and activates the target in one transaction.
Version numbers come from a per-key counter row that is incremented atomically,
with a process-level lock serializing callers that share a model key.
"""

import threading
from typing import Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from loguru import logger

from cryptoadvisor.db.models import MLModelVersion, MLModelVersionCounter
from cryptoadvisor.db.session import upsert_insert
from cryptoadvisor.ml.schemas import ModelVersion
from cryptoadvisor.utils.datetime import to_utc_naive, utc_now
from cryptoadvisor.utils.errors import DatabaseError, RecordNotFoundError


class ModelRegistryRepository:
    """Repository for model versions and their activation state."""

    _key_locks: Dict[str, threading.Lock] = {}
    _key_locks_guard = threading.Lock()

    def __init__(self, db: Session):
        self.db = db

    @classmethod
    def _lock_for(cls, model_key: str) -> threading.Lock:
        with cls._key_locks_guard:
            lock = cls._key_locks.get(model_key)
            if lock is None:
                lock = threading.Lock()
                cls._key_locks[model_key] = lock
            return lock

    def next_version(self, model_key: str) -> int:
        """
        Allocate the next version number for a model key.

        The counter is seeded from the highest stored version the first time a
        key is seen, so registries that predate the counter table continue their
        existing numbering.
        """
        with self._lock_for(model_key):
            try:
                current_max = self.db.execute(
                    select(func.coalesce(func.max(MLModelVersion.version), 0)).where(
                        MLModelVersion.model_key == model_key
                    )
                ).scalar_one()

                now = utc_now()
                stmt = upsert_insert(self.db, MLModelVersionCounter).values(
                    model_key=model_key,
                    last_version=int(current_max) + 1,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["model_key"],
                    set_={
                        "last_version": MLModelVersionCounter.last_version + 1,
                        "updated_at": now,
                    },
                ).returning(MLModelVersionCounter.last_version)

                version = int(self.db.execute(stmt).scalar_one())
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                raise DatabaseError(f"Failed to allocate version for {model_key}: {e}") from e

        logger.debug(f"Allocated {model_key} version {version}")
        return version

    def insert_model_version(self, model_version: ModelVersion) -> ModelVersion:
        """Persist a new immutable model version."""
        row = MLModelVersion(
            model_key=model_version.model_key,
            version=model_version.version,
            feature_spec_version=model_version.feature_spec_version,
            trained_from=to_utc_naive(model_version.trained_from),
            trained_to=to_utc_naive(model_version.trained_to),
            hyperparams_json=model_version.hyperparams_json or "{}",
            metrics_json=model_version.metrics_json or "{}",
            artifact_format=model_version.artifact_format,
            artifact_blob=model_version.artifact_blob,
            is_active=model_version.is_active,
        )
        try:
            self.db.add(row)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DatabaseError(
                f"Model version {model_version.model_key} v{model_version.version} already exists",
                details={"model_key": model_version.model_key, "version": model_version.version},
            ) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError(f"Failed to insert model version: {e}") from e

        logger.info(f"Registered model {row.model_key} v{row.version} ({row.artifact_format})")
        return ModelVersion.model_validate(row)

    def get_active_model(self, model_key: str) -> Optional[ModelVersion]:
        """Active version of a model key, or None."""
        stmt = (
            select(MLModelVersion)
            .where(MLModelVersion.model_key == model_key, MLModelVersion.is_active.is_(True))
            .order_by(MLModelVersion.version.desc())
            .limit(1)
        )
        try:
            row = self.db.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to load active model {model_key}: {e}") from e
        return ModelVersion.model_validate(row) if row is not None else None

    def get_model_version(self, model_key: str, version: int) -> Optional[ModelVersion]:
        stmt = select(MLModelVersion).where(
            MLModelVersion.model_key == model_key,
            MLModelVersion.version == version,
        )
        try:
            row = self.db.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to load model {model_key} v{version}: {e}") from e
        return ModelVersion.model_validate(row) if row is not None else None

    def list_versions(self, model_key: str) -> List[ModelVersion]:
        """All versions of a model key, oldest first."""
        stmt = (
            select(MLModelVersion)
            .where(MLModelVersion.model_key == model_key)
            .order_by(MLModelVersion.version.asc())
        )
        try:
            rows = self.db.execute(stmt).scalars().all()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to list versions of {model_key}: {e}") from e
        return [ModelVersion.model_validate(row) for row in rows]

    def activate_model(self, model_key: str, version: int) -> None:
        """
        Make `version` the only active version of `model_key`.

        Raises:
            RecordNotFoundError: The version was never persisted, or the
                activating UPDATE matched no rows. Nothing is changed.
            DatabaseError: The transaction failed and was rolled back.
        """
        try:
            target_id = self.db.execute(
                select(MLModelVersion.id)
                .where(MLModelVersion.model_key == model_key, MLModelVersion.version == version)
                .with_for_update()
            ).scalar_one_or_none()
            if target_id is None:
                self.db.rollback()
                raise RecordNotFoundError(
                    f"Model {model_key} v{version} not found",
                    details={"model_key": model_key, "version": version},
                )

            self.db.execute(
                update(MLModelVersion)
                .where(MLModelVersion.model_key == model_key, MLModelVersion.version != version)
                .values(is_active=False)
            )
            result = self.db.execute(
                update(MLModelVersion)
                .where(MLModelVersion.model_key == model_key, MLModelVersion.version == version)
                .values(is_active=True)
            )
            if result.rowcount == 0:
                self.db.rollback()
                raise RecordNotFoundError(
                    f"Activation of {model_key} v{version} affected no rows",
                    details={"model_key": model_key, "version": version},
                )

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError(f"Failed to activate {model_key} v{version}: {e}") from e

        # Bulk UPDATEs bypass the identity map
        self.db.expire_all()
        logger.info(f"Activated model {model_key} v{version}")
