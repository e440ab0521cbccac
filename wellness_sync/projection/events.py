"""
Decoded contract events — the unit of work handed from the listener to the handlers.

Each event exposes `key`: events sharing a key are applied strictly in delivery
order; events with different keys may be applied concurrently.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from wellness_sync.database.models import VoteType


@dataclass(frozen=True)
class EventMeta:
    """Where a log came from on the ledger; None when built by hand."""

    block_number: int | None = None
    log_index: int | None = None
    transaction_hash: str | None = None

    def to_log_fields(self) -> dict[str, Any]:
        return {
            "block_number": self.block_number,
            "log_index": self.log_index,
            "tx_hash": self.transaction_hash,
        }


@dataclass(frozen=True)
class ProfileFetched:
    """Authoritative snapshot of one profile as the contract currently stores it."""

    address: str
    name: str
    bio: str
    profile_picture: str
    is_wellness_professional: bool
    upvotes: int
    downvotes: int
    reputation: int
    total_stake: int
    meta: EventMeta = EventMeta()

    kind = "ProfileFetched"

    @property
    def key(self) -> str:
        return self.address

    def as_row(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "name": self.name,
            "bio": self.bio,
            "profile_picture": self.profile_picture,
            "is_wellness_professional": self.is_wellness_professional,
            "upvotes": self.upvotes,
            "downvotes": self.downvotes,
            "reputation": self.reputation,
            "total_stake": str(self.total_stake),
        }


@dataclass(frozen=True)
class VoteAdded:
    """A voter's current vote on a wellness professional."""

    voter: str
    subject: str
    vote_type: VoteType
    timestamp: int
    stake_amount: int
    meta: EventMeta = EventMeta()

    kind = "VoteAdded"

    @property
    def key(self) -> str:
        # same key as ProfileFetched(subject): the vote is applied after its subject's snapshot
        return self.subject


@dataclass(frozen=True)
class StakeDelegated:
    """Absolute amount currently delegated from `delegator` to `delegate`."""

    delegator: str
    delegate: str
    amount: int
    meta: EventMeta = EventMeta()

    kind = "StakeDelegated"

    @property
    def key(self) -> str:
        return f"stake:{self.delegator}:{self.delegate}"


LedgerEvent = Union[ProfileFetched, VoteAdded, StakeDelegated]
