"""Logging configuration and the structured warning channel."""

from __future__ import annotations

import logging
import sys
from typing import Any

DIAGNOSTICS_LOGGER = "calhub.diagnostics"

TOKEN_PERSIST_FAILED = "token_persist_failed"
SYNC_STATE_UPDATE_FAILED = "sync_state_update_failed"
CALENDAR_CACHE_CLEANUP_FAILED = "calendar_cache_cleanup_failed"
PAGINATION_TRUNCATED = "pagination_truncated"

_diagnostics_logger = logging.getLogger(DIAGNOSTICS_LOGGER)


def setup_logging(level: str = "INFO") -> None:
    logger = logging.getLogger("calhub")
    logger.setLevel(level)
    if any(getattr(handler, "_calhub_handler", False) for handler in logger.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    handler._calhub_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)


def emit_warning(code: str, message: str, **fields: Any) -> None:
    """Report a failure that was downgraded to a warning.

    The record carries ``diagnostic_code`` and ``diagnostic_fields`` attributes so
    callers and tests can tell "warned but succeeded" apart from silent success.
    Never pass secrets or tokens in ``fields``.
    """
    _diagnostics_logger.warning(
        "%s: %s",
        code,
        message,
        extra={"diagnostic_code": code, "diagnostic_fields": dict(fields)},
    )
