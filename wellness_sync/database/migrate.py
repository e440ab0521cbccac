"""
Linear, file-based schema migrations.

Applies database/migrations/*.sql in name order. Each pending file runs in its
own transaction together with its row in the `migrations` bookkeeping table,
so a failing file leaves no partial schema and is retried on the next run.
The sync engine never creates or alters schema itself.

Usage:
    wellness-sync migrate
    python -m wellness_sync.database.migrate
"""

from __future__ import annotations

import sys
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from wellness_sync.database.store import Store
from wellness_sync.logging import get_logger

logger = get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

_CREATE_MIGRATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS migrations (
    name VARCHAR(255) PRIMARY KEY,
    executed_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
)
"""


def split_statements(sql: str) -> list[str]:
    """Split a migration file into statements; drops `--` comment lines."""
    lines = [ln for ln in sql.splitlines() if not ln.strip().startswith("--")]
    return [s.strip() for s in "\n".join(lines).split(";") if s.strip()]


def list_migration_files(migrations_dir: Path = MIGRATIONS_DIR) -> list[Path]:
    return sorted(p for p in migrations_dir.glob("*.sql") if p.is_file())


def get_executed_migrations(conn: Connection) -> list[str]:
    rows = conn.execute(text("SELECT name FROM migrations ORDER BY name"))
    return [r[0] for r in rows]


def _execute_migration(engine: Engine, path: Path) -> None:
    sql = path.read_text(encoding="utf-8")
    try:
        with engine.begin() as conn:
            for stmt in split_statements(sql):
                conn.exec_driver_sql(stmt)
            conn.execute(text("INSERT INTO migrations (name) VALUES (:name)"), {"name": path.name})
    except Exception as e:
        logger.error("migration_failed", migration=path.name, error=str(e))
        raise
    logger.info("migration_executed", migration=path.name)


def run_migrations(database_url: str, migrations_dir: Path = MIGRATIONS_DIR) -> list[str]:
    """
    Apply all pending migrations. Returns the names executed in this run.
    Safe to call repeatedly; already recorded files are skipped.
    """
    store = Store(database_url)
    store.open(require_schema=False)
    try:
        engine = store.engine
        with engine.begin() as conn:
            conn.exec_driver_sql(_CREATE_MIGRATIONS_TABLE)
        with engine.connect() as conn:
            executed = set(get_executed_migrations(conn))
        applied: list[str] = []
        for path in list_migration_files(migrations_dir):
            if path.name in executed:
                continue
            _execute_migration(engine, path)
            applied.append(path.name)
        logger.info("migrations_completed", applied=applied, already_applied=len(executed))
        return applied
    finally:
        store.close()


def main() -> int:
    from wellness_sync.config import get_settings

    settings = get_settings()
    try:
        run_migrations(settings.database_url)
    except Exception as e:
        logger.exception("migrations_aborted", error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
