"""
Structured JSON logging: timestamp, event_type, event_kind, block_number.

structlog with ISO timestamps, log level, and consistent keys for
aggregation. All sync modules use get_logger() and log a snake_case
event_type plus key/value context (address, event_kind, attempt, ...).

Uses only Python stdlib logging and structlog; no wellness_sync imports to avoid circular imports.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import structlog
from structlog._config import BoundLoggerLazyProxy

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL_VALUE = getattr(logging, LOG_LEVEL, logging.INFO)

# JSON output for production (LOG_FORMAT=json); human-readable for local
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()


def _add_timestamp(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Ensure timestamp is always present (ISO 8601)."""
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _normalize_event(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Rename structlog 'event' to event_type; keep message if present."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    if "message" not in event_dict and "event_type" in event_dict:
        event_dict["message"] = str(event_dict["event_type"])
    return event_dict


def configure_structlog(log_format: str | None = None, log_level: int | None = None) -> None:
    """Configure structlog: JSON (or console), timestamp, level, event_type."""
    fmt = (log_format or LOG_FORMAT).strip().lower()
    level = LOG_LEVEL_VALUE if log_level is None else log_level
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_timestamp,
        _normalize_event,
    ]
    if fmt == "json":
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        )
    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


# One-time configuration on first import
if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Return a structured logger for the given module name.

        logger = get_logger(__name__)
        logger.info("event_applied", event_kind="VoteAdded", key="0xcd..")

    The logger resolves its configuration on first use, so module-level loggers
    pick up configure_structlog() calls made later by the CLI.

    Output (JSON): {"event_type": "event_applied", "event_kind": "VoteAdded", ...,
    "timestamp": "...", "level": "info", "logger": "module.name"}
    """
    return BoundLoggerLazyProxy(
        None, initial_values={"logger": name}, logger_factory_args=(name,)
    )


def bind_event(event_kind: str, key: str) -> structlog.BoundLogger:
    """Return a logger with event_kind and key bound to all subsequent log calls."""
    return get_logger("wellness_sync").bind(event_kind=event_kind, key=key)
