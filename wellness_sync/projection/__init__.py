"""
Projection of contract events onto the mirror tables.

Event records plus the handlers that turn one event into one atomic set of
row mutations.
"""

from wellness_sync.projection.events import (
    EventMeta,
    LedgerEvent,
    ProfileFetched,
    StakeDelegated,
    VoteAdded,
)
from wellness_sync.projection.handlers import (
    apply_event,
    apply_profile_fetched,
    apply_stake_delegated,
    apply_vote_added,
    stake_adjustments,
    stake_delta,
    vote_counter_deltas,
)

__all__ = [
    "EventMeta",
    "LedgerEvent",
    "ProfileFetched",
    "StakeDelegated",
    "VoteAdded",
    "apply_event",
    "apply_profile_fetched",
    "apply_stake_delegated",
    "apply_vote_added",
    "stake_adjustments",
    "stake_delta",
    "vote_counter_deltas",
]
