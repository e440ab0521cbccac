"""
Application-level exceptions.

The taxonomy mirrors how the sync engine reacts to a failure:
- EventDecodeError: payload dropped, never retried.
- TransientStoreError: transaction rolled back, event retried with backoff.
- ProfileNotFound: retried with backoff (the profile may still be in flight), then treated as an InvariantViolation.
- InvariantViolation: transaction rolled back, logged as a data-integrity alarm.
- StoreUnavailable / SubscriptionExhausted: fatal, process exits non-zero.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all wellness_sync errors."""


class ConfigError(SyncError):
    """Invalid or missing configuration value."""


class EventDecodeError(SyncError):
    """A ledger log could not be decoded into a known event."""

    def __init__(self, message: str, *, raw: object = None) -> None:
        super().__init__(message)
        self.raw = raw


class StoreError(SyncError):
    """Base class for persistence failures."""


class StoreUnavailable(StoreError):
    """Store cannot be reached or its schema is missing."""


class TransientStoreError(StoreError):
    """Connection drop or lock contention; the transaction may be retried."""


class InvariantViolation(StoreError):
    """A mutation would break a projection invariant (negative counter, missing profile, ...)."""

    def __init__(self, message: str, *, address: str | None = None) -> None:
        super().__init__(message)
        self.address = address


class ProfileNotFound(InvariantViolation):
    """A vote or stake names an address with no profile row yet; retried before it is reported."""


class SubscriptionExhausted(SyncError):
    """Resubscription to the event source ran out of attempts."""


class DispatcherClosed(SyncError):
    """The dispatcher no longer accepts events (shutdown in progress)."""
