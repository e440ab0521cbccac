"""
Command-line entrypoint.

    wellness-sync migrate   apply pending SQL migrations
    wellness-sync sync      run the ledger → database sync engine until SIGINT/SIGTERM
    wellness-sync serve     run the read-only HTTP API (uvicorn)

Configuration comes from the environment / .env (see wellness_sync.config).
"""

from __future__ import annotations

import argparse
import logging
import sys

from wellness_sync.core.exceptions import ConfigError
from wellness_sync.logging import configure_structlog, get_logger

logger = get_logger("main")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wellness-sync",
        description="Mirror WellnessProfiles contract events into a SQL database",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("migrate", help="Apply pending schema migrations")
    sub.add_parser("sync", help="Run the event synchronization engine")
    serve = sub.add_parser("serve", help="Run the read-only HTTP API")
    serve.add_argument("--host", default=None, help="Bind host (default: API_HOST or 0.0.0.0)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: API_PORT or 8000)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    from wellness_sync.config import get_settings

    try:
        settings = get_settings()
    except ConfigError as e:
        logger.error("main_config_error", error=str(e))
        return 2
    configure_structlog(settings.log_format, getattr(logging, settings.log_level, logging.INFO))

    if args.command == "migrate":
        from wellness_sync.database.migrate import run_migrations

        try:
            run_migrations(settings.database_url)
        except Exception as e:
            logger.exception("main_migrate_failed", error=str(e))
            return 1
        return 0

    if args.command == "sync":
        from wellness_sync.sync_engine import run_sync

        try:
            settings.require_contract()
        except ConfigError as e:
            logger.error("main_config_error", error=str(e))
            return 2
        return run_sync(settings)

    import uvicorn

    host = args.host or settings.api_host
    port = args.port or settings.api_port
    logger.info("main_server_starting", host=host, port=port)
    uvicorn.run(
        "wellness_sync.api_server.server:app",
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
