"""
Pytest fixtures for wellness_sync tests. Uses a temporary SQLite DB migrated
with the real migration runner.
"""

from __future__ import annotations

import pytest

from wellness_sync.database import Store, run_migrations


@pytest.fixture
def database_url(tmp_path, monkeypatch):
    """Fresh SQLite database with all migrations applied. Unset DATABASE_URL so we use SQLite."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    url = f"sqlite:///{tmp_path / 'wellness_sync.db'}"
    run_migrations(url)
    return url


@pytest.fixture
def store(database_url):
    s = Store(database_url)
    s.open()
    yield s
    s.close()
