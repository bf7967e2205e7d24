"""
Shared helpers: logger factory, logging setup and UTC time helpers.
"""
import logging
import logging.config
from datetime import datetime, timezone

from app.core import config


LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """
    Configure root logging once at process start.

    Usage:
        from app.utils import configure_logging
        configure_logging()
    """
    effective_level = (level or config.LOG_LEVEL).upper()
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": LOG_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "root": {
            "level": effective_level,
            "handlers": ["console"],
        },
        "loggers": {
            # SQL echo is controlled by the engine, keep driver noise down
            "aiosqlite": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
        },
    })


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name (usually __name__)."""
    return logging.getLogger(name)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalize a datetime read back from the database.

    SQLite drops tzinfo on the way out, every stored value is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
