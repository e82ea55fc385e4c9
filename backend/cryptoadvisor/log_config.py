"""
Logging setup for the ML signal pipeline.

loguru is the application logger; structlog carries machine-readable cycle
events (counts per stage, promotion outcomes). Both share the level and
format from settings, and stdlib logging (SQLAlchemy, APScheduler, xgboost)
is routed into loguru.
"""

import logging
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence

import structlog
from loguru import logger
from structlog.typing import EventDict, WrappedLogger

from cryptoadvisor.config import settings

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "{extra[cycle_id]} | "
    "<level>{message}</level>"
)

NOISY_LOGGERS = ("sqlalchemy.engine", "apscheduler", "xgboost")


class RedactSecrets:
    """structlog processor masking values whose key looks like a credential or DSN."""

    MARKERS = ("password", "token", "secret", "api_key", "database_url", "dsn")

    def __call__(self, logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
        for key in list(event_dict):
            if any(marker in key.lower() for marker in self.MARKERS):
                event_dict[key] = "[REDACTED]"
        return event_dict


def stamp_event(logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
    event_dict["level"] = name.upper()
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


class InterceptHandler(logging.Handler):
    """Forward stdlib log records to loguru, keeping the caller's frame."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _add_sinks(serialize: bool) -> None:
    fmt = "{message}" if serialize else TEXT_FORMAT
    common = dict(
        format=fmt,
        level=settings.log_level,
        serialize=serialize,
        backtrace=True,
        diagnose=settings.is_development,
    )
    logger.add(sys.stderr, **common)

    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(settings.log_file, rotation="100 MB", retention="14 days", compression="zip", **common)


def _configure_structlog(serialize: bool) -> None:
    renderer = structlog.processors.JSONRenderer() if serialize else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            stamp_event,
            RedactSecrets(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(settings.log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging() -> None:
    """(Re)configure loguru, structlog and the stdlib bridge from settings."""
    serialize = settings.log_format == "json"

    logger.remove()
    logger.configure(extra={"cycle_id": "-"})
    _add_sinks(serialize)
    _configure_structlog(serialize)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> Any:
    """structlog logger for key/value pipeline events."""
    return structlog.get_logger(name)


@contextmanager
def cycle_context(stages: Sequence[str]) -> Iterator[str]:
    """
    Tag every log line emitted inside the block with a fresh cycle ID.

    Yields:
        The cycle ID
    """
    cycle_id = uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(cycle_id=cycle_id, stages=",".join(stages))
    try:
        with logger.contextualize(cycle_id=cycle_id):
            yield cycle_id
    finally:
        structlog.contextvars.unbind_contextvars("cycle_id", "stages")


configure_logging()
