"""
Wellness Ledger Sync — mirrors WellnessProfiles contract events into SQL.

Subscribes to ProfileFetched, VoteAdded and StakeDelegated logs, applies
them as idempotent projections (profiles, votes, delegated stakes) and keeps
vote counters and delegated stake totals consistent under replayed and
reordered delivery.
"""

__version__ = "0.1.0"
