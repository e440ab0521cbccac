"""
Structured logging for Wellness Ledger Sync.

JSON logs with timestamp, event_type and event context.
Use get_logger() in all modules for aggregation-friendly output.
"""

from wellness_sync.logging.logger import bind_event, configure_structlog, get_logger

__all__ = ["bind_event", "configure_structlog", "get_logger"]
