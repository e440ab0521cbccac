"""
Projection handlers: one per event kind, each run inside one StoreSession.

Counters and stake totals are maintained with prior-value-aware deltas, never
blind increments, so redelivered events are no-ops and amended votes or
delegations apply only the difference.
"""

from __future__ import annotations

from wellness_sync.database.models import VoteType
from wellness_sync.database.store import StoreSession
from wellness_sync.projection.events import (
    LedgerEvent,
    ProfileFetched,
    StakeDelegated,
    VoteAdded,
)


def vote_counter_deltas(prior: VoteType | None, new: VoteType) -> tuple[int, int]:
    """
    (delta_upvotes, delta_downvotes) for replacing `prior` with `new`.

    None -> UP: (+1, 0); UP -> UP: (0, 0); UP -> DOWN: (-1, +1); and symmetric.
    """
    up = down = 0
    if prior == new:
        return up, down
    if prior is VoteType.UP:
        up -= 1
    elif prior is VoteType.DOWN:
        down -= 1
    if new is VoteType.UP:
        up += 1
    else:
        down += 1
    return up, down


def stake_delta(prior_amount: int, new_amount: int) -> int:
    """Change in delegated stake for one pair; negative when a delegation shrinks."""
    return new_amount - prior_amount


def stake_adjustments(delegator: str, delegate: str, delta: int) -> list[tuple[str, int]]:
    """
    Per-address stake adjustments for a delegation delta, credits first.

    Applying the credit before the debit keeps a self-delegation (same address
    on both sides) from passing through a negative intermediate total.
    """
    adjustments = [(delegator, -delta), (delegate, delta)]
    return sorted(adjustments, key=lambda item: item[1] < 0)


def apply_profile_fetched(session: StoreSession, event: ProfileFetched) -> None:
    session.upsert_profile(event.as_row())


def apply_vote_added(session: StoreSession, event: VoteAdded) -> tuple[int, int]:
    """Upsert the vote and move the subject's counters. Returns the applied deltas."""
    prior = session.upsert_vote(
        event.voter,
        event.subject,
        event.vote_type,
        event.timestamp,
        event.stake_amount,
    )
    delta_up, delta_down = vote_counter_deltas(prior, event.vote_type)
    session.adjust_profile_counters(event.subject, delta_up, delta_down)
    return delta_up, delta_down


def apply_stake_delegated(session: StoreSession, event: StakeDelegated) -> int:
    """Replace the pair's amount and move only the difference between both parties. Returns the delta."""
    prior = session.upsert_delegated_stake(event.delegator, event.delegate, event.amount)
    delta = stake_delta(prior, event.amount)
    for address, signed in stake_adjustments(event.delegator, event.delegate, delta):
        session.adjust_profile_stake(address, signed)
    return delta


def apply_event(session: StoreSession, event: LedgerEvent) -> None:
    if isinstance(event, ProfileFetched):
        apply_profile_fetched(session, event)
    elif isinstance(event, VoteAdded):
        apply_vote_added(session, event)
    elif isinstance(event, StakeDelegated):
        apply_stake_delegated(session, event)
    else:
        raise TypeError(f"unsupported event type {type(event).__name__}")
