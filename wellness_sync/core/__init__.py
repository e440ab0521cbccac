"""
Core cross-cutting pieces shared by the store, handlers, listener and engine.
"""

from wellness_sync.core.exceptions import (
    ConfigError,
    DispatcherClosed,
    EventDecodeError,
    InvariantViolation,
    ProfileNotFound,
    StoreError,
    StoreUnavailable,
    SubscriptionExhausted,
    SyncError,
    TransientStoreError,
)

__all__ = [
    "ConfigError",
    "DispatcherClosed",
    "EventDecodeError",
    "InvariantViolation",
    "ProfileNotFound",
    "StoreError",
    "StoreUnavailable",
    "SubscriptionExhausted",
    "SyncError",
    "TransientStoreError",
]
