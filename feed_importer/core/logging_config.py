"""
Logging setup for processes that embed the feed importer.

Import runs execute on background threads, so every line carries the thread
name next to the logger; per-run progress logs are mirrored through the same
handlers by ProgressTracker.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional

from feed_importer.core.config import settings

# Libraries that are chatty at DEBUG/INFO while a feed downloads or imports.
NOISY_LOGGERS = ("urllib3", "sqlalchemy.engine")

_is_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """Install the console handler once; later calls are no-ops."""
    global _is_configured

    if _is_configured:
        return

    log_level = (level or settings.log_level).upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "importer": {
                    "format": "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "importer",
                    "level": log_level,
                }
            },
            "root": {"handlers": ["console"], "level": log_level},
            "loggers": {name: {"level": "WARNING"} for name in NOISY_LOGGERS},
        }
    )

    logging.getLogger("feed_importer").setLevel(log_level)
    _is_configured = True
