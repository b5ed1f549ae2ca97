"""Structured logging utilities."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from leave_reconciliation.utils.config import get_settings


_LOGGER_INITIALIZED = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure process-wide logging once.

    Every module logs through the same pipe-delimited format so a run can be
    followed across pipeline stages by its run id.
    """

    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED:
        return

    settings = get_settings()
    resolved_level = (level or settings.log_level).upper()

    logging.basicConfig(
        level=resolved_level,
        format=(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
        ),
        stream=sys.stdout,
    )
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger for the requested module."""
    configure_logging()
    return logging.getLogger(name)


class RunLoggerAdapter(logging.LoggerAdapter):
    """Prefix every record with the reconciliation run id."""

    def process(self, msg, kwargs):
        return f"run_id={self.extra['run_id']} | {msg}", kwargs


def get_run_logger(name: str, run_id: str) -> RunLoggerAdapter:
    """Return a logger bound to one reconciliation run."""
    return RunLoggerAdapter(get_logger(name), {"run_id": run_id})
