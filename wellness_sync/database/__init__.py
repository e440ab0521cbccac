"""
Persistence layer — profiles, votes, delegated stakes.

SQLAlchemy-backed Store with one transaction per StoreSession; PostgreSQL via
DATABASE_URL, SQLite otherwise. Schema comes from the migration runner.
"""

from wellness_sync.database.migrate import run_migrations
from wellness_sync.database.models import (
    Base,
    DelegatedStake,
    Profile,
    Vote,
    VoteType,
)
from wellness_sync.database.store import Store, StoreSession, parse_amount

__all__ = [
    "Base",
    "DelegatedStake",
    "Profile",
    "Store",
    "StoreSession",
    "Vote",
    "VoteType",
    "parse_amount",
    "run_migrations",
]
