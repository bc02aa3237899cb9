"""
Logging setup for the import service.

All modules log through ``logging.getLogger(__name__)``; ``configure_logging``
wires one console handler so import jobs, routers and the record store share
one format. Jobs run on worker threads, so the thread name is part of each line.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(threadName)s | %(name)s | %(message)s"

# Library loggers that flood the console during batch inserts and uploads
QUIET_LOGGERS = ("sqlalchemy.engine", "multipart", "python_multipart")

_is_configured = False


def _library_loggers() -> Dict[str, Dict[str, str]]:
    return {name: {"level": "WARNING"} for name in QUIET_LOGGERS}


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure the root and ``app`` loggers once per process.

    Args:
        level: Log level name such as "DEBUG" or "INFO" (default "INFO").
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "import": {
                    "format": LOG_FORMAT,
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "import",
                    "level": log_level,
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
            "loggers": {
                "app": {"level": log_level},
                **_library_loggers(),
            },
        }
    )

    _is_configured = True
