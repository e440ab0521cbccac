"""
Ledger listener package.

Subscribes to WellnessProfiles contract logs over WebSocket JSON-RPC, decodes
them into event records and forwards them to the sync engine's dispatcher.
"""

from wellness_sync.ledger_listener.codec import EVENT_ABIS, EventCodec
from wellness_sync.ledger_listener.subscription import (
    SubscriptionConfig,
    SubscriptionManager,
    SubscriptionState,
)

__all__ = [
    "EVENT_ABIS",
    "EventCodec",
    "SubscriptionConfig",
    "SubscriptionManager",
    "SubscriptionState",
]
