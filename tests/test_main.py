"""
Tests for the command-line entrypoint.
"""

from __future__ import annotations

import logging

import pytest

from wellness_sync import main as cli


@pytest.fixture
def recorded_logging(monkeypatch):
    calls = []
    monkeypatch.setattr(cli, "configure_structlog", lambda *args: calls.append(args))
    return calls


def test_migrate_applies_log_settings(database_url, monkeypatch, recorded_logging):
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("LOG_FORMAT", "Console")
    monkeypatch.setenv("LOG_LEVEL", "warning")
    assert cli.main(["migrate"]) == 0
    assert recorded_logging == [("console", logging.WARNING)]


def test_unknown_log_level_falls_back_to_info(database_url, monkeypatch, recorded_logging):
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("LOG_LEVEL", "chatty")
    assert cli.main(["migrate"]) == 0
    assert recorded_logging[0][1] == logging.INFO


def test_sync_without_contract_is_config_error(database_url, monkeypatch, recorded_logging):
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.delenv("CONTRACT_ADDRESS", raising=False)
    assert cli.main(["sync"]) == 2
