"""
Database session management with SQLAlchemy 2.0.

Provides engine configuration, session creation, and context managers
for safe database access with automatic transaction rollback.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker, scoped_session
from loguru import logger

from cryptoadvisor.config import settings
from cryptoadvisor.utils.errors import DatabaseError


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; pool and timeout options only apply to server databases."""
    if database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo)

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=30,
        pool_recycle=1800,
        echo=echo,
        connect_args={
            "connect_timeout": 10,
            "options": "-c statement_timeout=60000",  # 60 second query timeout
        },
    )


engine = create_db_engine(settings.database_url, echo=settings.debug)

SessionLocal = scoped_session(
    sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,  # Prevent lazy load issues after commit
    )
)


def upsert_insert(db: Session, model):
    """Dialect-native INSERT supporting ON CONFLICT for the session's database."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise DatabaseError(f"Upserts are not supported on dialect '{dialect}'")


def init_db() -> None:
    """Initialize database schema (create all tables).

    Note: This is idempotent - it only creates tables/indexes that don't exist.
    """
    from cryptoadvisor.db.models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info("Database schema initialized successfully")


def get_db() -> Session:
    """
    Get a database session.

    Note:
        Caller is responsible for closing the session with close_db()
        or using the get_db_transaction() context manager.
    """
    return SessionLocal()


def close_db() -> None:
    """Close and remove the current database session."""
    SessionLocal.remove()


@contextmanager
def get_db_transaction() -> Generator[Session, None, None]:
    """
    Get a database session with explicit transaction control.

    The transaction is automatically committed on success and rolled back on error.
    SQLAlchemy failures surface as DatabaseError; application errors pass through.
    """
    db = get_db()
    try:
        yield db
        db.commit()
        logger.debug("Database transaction committed")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database transaction rolled back: {e}")
        raise DatabaseError(f"Transaction failed: {e}") from e
    except Exception:
        db.rollback()
        raise
    finally:
        close_db()
