"""
Tests for the SyncEngine lifecycle: fatal startup errors, end-to-end event
flow from a scripted node to the database, and orderly shutdown.
"""

from __future__ import annotations

import asyncio

import pytest

from ledger_fixtures import (
    ADDR_A,
    CONTRACT,
    DELEGATE,
    DELEGATOR,
    VOTER_1,
    VOTER_2,
    FakeConnector,
    FakeWebSocket,
    make_codec,
    notification,
    profile_log,
    profile_row,
    stake_log,
    vote_log,
    wait_until,
)
from wellness_sync.config import Settings
from wellness_sync.core.exceptions import ConfigError
from wellness_sync.database import Store
from wellness_sync.ledger_listener import SubscriptionConfig, SubscriptionState
from wellness_sync.sync_engine import DispatcherConfig, SyncEngine
from wellness_sync.sync_engine.supervisor import EXIT_FATAL, EXIT_OK


def _engine(database_url: str, connector: FakeConnector, **sub_overrides) -> SyncEngine:
    sub = dict(
        ws_url="ws://node.test",
        contract_address=CONTRACT,
        reconnect_min_sec=0.01,
        reconnect_max_sec=0.02,
        reconnect_max_attempts=3,
    )
    sub.update(sub_overrides)
    return SyncEngine(
        Store(database_url),
        SubscriptionConfig(**sub),
        make_codec(),
        dispatcher_config=DispatcherConfig(
            shards=4, worker_threads=2, max_attempts=50, retry_min_sec=0.01, retry_max_sec=0.02
        ),
        shutdown_timeout_sec=5,
        connect=connector,
    )


def test_run_exits_fatal_when_schema_missing(tmp_path):
    connector = FakeConnector([])
    engine = _engine(f"sqlite:///{tmp_path / 'empty.db'}", connector)
    assert asyncio.run(engine.run()) == EXIT_FATAL
    # never subscribed
    assert connector.calls == []


def test_end_to_end_events_reach_database(database_url):
    # everything arrives in one burst: votes and stakes race their profiles
    ws = FakeWebSocket(
        [
            notification("0x1", profile_log(ADDR_A, name="Dr. Ada")),
            notification("0x1", profile_log(DELEGATOR, total_stake=1000, block=1, index=1)),
            notification("0x1", profile_log(DELEGATE, block=1, index=2)),
            notification("0x1", vote_log(VOTER_1, ADDR_A, 0, block=2)),
            notification("0x1", vote_log(VOTER_2, ADDR_A, 0, block=2, index=1)),
            notification("0x1", vote_log(VOTER_1, ADDR_A, 1, block=3)),
            notification("0x1", stake_log(DELEGATOR, DELEGATE, 100, block=4)),
            notification("0x1", stake_log(DELEGATOR, DELEGATE, 40, block=5)),
            # redelivery of the last vote is a no-op
            notification("0x1", vote_log(VOTER_1, ADDR_A, 1, block=3)),
        ]
    )
    engine = _engine(database_url, FakeConnector([ws]))

    async def run():
        task = asyncio.create_task(engine.run())
        await wait_until(lambda: engine.dispatcher.stats.processed == 9)
        assert engine.subscription.state is SubscriptionState.ACTIVE
        health = engine.health()
        engine.request_shutdown()
        status = await asyncio.wait_for(task, timeout=5)
        return status, health

    status, health = asyncio.run(run())
    assert status == EXIT_OK
    assert health["running"] is True
    assert health["subscription_state"] == "active"
    assert health["decode_errors"] == 0
    assert health["failed"] == 0

    assert not engine.store.is_open
    assert engine.subscription.state is SubscriptionState.DISCONNECTED

    check = Store(database_url)
    check.open()
    try:
        row = profile_row(check, ADDR_A)
        assert row["name"] == "Dr. Ada"
        assert (row["upvotes"], row["downvotes"]) == (1, 1)
        assert profile_row(check, DELEGATOR)["total_stake"] == "960"
        assert profile_row(check, DELEGATE)["total_stake"] == "40"
    finally:
        check.close()


def test_profile_and_vote_change_delivered_together(database_url):
    ws = FakeWebSocket(
        [
            notification("0x1", profile_log(ADDR_A, upvotes=0, downvotes=0)),
            notification("0x1", vote_log(VOTER_1, ADDR_A, 0, timestamp=100, block=2)),
            notification("0x1", vote_log(VOTER_1, ADDR_A, 1, timestamp=200, block=3)),
        ]
    )
    engine = _engine(database_url, FakeConnector([ws]))

    async def run():
        task = asyncio.create_task(engine.run())
        await wait_until(lambda: engine.dispatcher.stats.processed == 3)
        health = engine.health()
        engine.request_shutdown()
        assert await asyncio.wait_for(task, timeout=5) == EXIT_OK
        return health

    health = asyncio.run(run())
    assert health["failed"] == 0

    check = Store(database_url)
    check.open()
    try:
        row = profile_row(check, ADDR_A)
        assert (row["upvotes"], row["downvotes"]) == (0, 1)
        with check.read_session() as session:
            votes = session.list_votes_for(ADDR_A)
        assert [(v["voter"], v["vote_type"], v["timestamp"]) for v in votes] == [(VOTER_1, "DOWN", 200)]
    finally:
        check.close()


def test_run_exits_fatal_when_subscription_exhausted(database_url):
    connector = FakeConnector([])
    engine = _engine(database_url, connector, reconnect_max_attempts=2)
    assert asyncio.run(engine.run()) == EXIT_FATAL
    assert len(connector.calls) == 2
    assert not engine.store.is_open


def test_stop_is_idempotent_and_closes_store(database_url):
    ws = FakeWebSocket()
    engine = _engine(database_url, FakeConnector([ws]))

    async def run():
        await engine.start()
        await wait_until(lambda: engine.subscription.state is SubscriptionState.ACTIVE)
        assert engine.running
        assert await engine.stop() is True
        assert await engine.stop() is True

    asyncio.run(run())
    assert not engine.running
    assert not engine.store.is_open
    assert ws.closed


def test_from_settings_requires_contract(database_url):
    settings = Settings(database_url=database_url, rpc_ws_url="ws://node.test")
    with pytest.raises(ConfigError):
        SyncEngine.from_settings(settings)


def test_from_settings_wires_configuration(database_url):
    settings = Settings(
        database_url=database_url,
        rpc_ws_url="ws://node.test",
        contract_address=CONTRACT,
        shards=3,
    )
    engine = SyncEngine.from_settings(settings, connect=FakeConnector([]))
    health = engine.health()
    assert health["running"] is False
    assert health["subscription_state"] == "disconnected"
    assert health["pending"] == 0
    assert engine.store.url == database_url
