"""Logging configuration helpers for the grading service."""

from __future__ import annotations

import logging
import os
from logging.config import dictConfig
from typing import Any, Dict

# Third-party loggers that drown out grading output at INFO.
_NOISY_LOGGERS = ("urllib3", "sqlalchemy.engine", "httpx")


def build_logging_config(log_level: str) -> Dict[str, Any]:
    """Return the dictConfig payload for the given root level.

    An optional rotating file handler is attached when ``GRADER_LOG_FILE`` is set.
    """
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": log_level,
        },
    }
    log_file = os.getenv("GRADER_LOG_FILE", "").strip()
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": log_level,
            "filename": log_file,
            "maxBytes": 5 * 1024 * 1024,
            "backupCount": 3,
            "encoding": "utf-8",
        }
    handler_names = list(handlers)

    loggers: Dict[str, Dict[str, Any]] = {
        # Ensure uvicorn loggers inherit our formatting.
        "uvicorn": {"handlers": handler_names, "level": log_level, "propagate": False},
        "uvicorn.error": {"handlers": handler_names, "level": log_level, "propagate": False},
        "uvicorn.access": {
            "handlers": handler_names,
            "level": os.getenv("UVICORN_ACCESS_LOG_LEVEL", "INFO").upper(),
            "propagate": False,
        },
    }
    for name in _NOISY_LOGGERS:
        loggers[name] = {"level": "WARNING"}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": handlers,
        "root": {"handlers": handler_names, "level": log_level},
        "loggers": loggers,
    }


def configure_logging() -> None:
    """Apply a consistent logging configuration for the grading service."""
    log_level = os.getenv("GRADER_LOG_LEVEL", "INFO").upper()
    dictConfig(build_logging_config(log_level))
    logging.getLogger(__name__).debug("Logging configured at %s level", log_level)
