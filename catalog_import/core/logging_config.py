"""
Logging setup shared by the pipeline, the console runner and the tests.

All modules log through ``logging.getLogger(__name__)``; this module only
decides where those records go and how they look.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional


_is_configured = False

# Third-party loggers that are noisy at INFO during bulk imports.
_QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "anthropic")


def configure_logging(level: Optional[str] = None, force: bool = False) -> None:
    """
    Configure the root and ``catalog_import`` loggers once per process.

    Args:
        level: Optional log level override (e.g., "DEBUG", "INFO").
        force: Re-apply the configuration even if it already ran.
    """
    global _is_configured

    if _is_configured and not force:
        return

    log_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": log_level,
                }
            },
            "loggers": {
                name: {"level": "WARNING", "propagate": True} for name in _QUIET_LOGGERS
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
        }
    )

    logging.getLogger("catalog_import").setLevel(log_level)

    _is_configured = True
