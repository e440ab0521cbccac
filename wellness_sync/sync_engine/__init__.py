"""
Event synchronization engine: keyed dispatcher plus lifecycle supervisor.
"""

from wellness_sync.sync_engine.dispatcher import (
    DispatcherConfig,
    DispatcherStats,
    KeyedDispatcher,
    shard_for,
)
from wellness_sync.sync_engine.supervisor import SyncEngine, run_sync

__all__ = [
    "DispatcherConfig",
    "DispatcherStats",
    "KeyedDispatcher",
    "SyncEngine",
    "run_sync",
    "shard_for",
]
