"""
SQLAlchemy models for the mirrored contract state.

profiles, votes and delegated_stakes. Tables are created by the migration
runner (database/migrations/*.sql); these mappings must stay in sync with it.
Stake amounts are uint256 on the ledger and are stored as decimal strings.
"""

from __future__ import annotations

import enum
from typing import Any

from sqlalchemy import BigInteger, Boolean, Column, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

INTEGER_MAX = 2**31 - 1
BIGINT_MIN = -(2**63)
BIGINT_MAX = 2**63 - 1


class VoteType(str, enum.Enum):
    """Vote direction. Ledger enum ordinal: UP = 0, DOWN = 1."""

    UP = "UP"
    DOWN = "DOWN"

    @classmethod
    def from_ordinal(cls, value: int) -> "VoteType":
        if value == 0:
            return cls.UP
        if value == 1:
            return cls.DOWN
        raise ValueError(f"unknown vote type ordinal {value}")


class Profile(Base):
    """One row per ledger account listed as a profile. Never deleted by the engine."""

    __tablename__ = "profiles"

    address = Column(String(64), primary_key=True)
    name = Column(Text, nullable=False, default="")
    bio = Column(Text, nullable=False, default="")
    profile_picture = Column(Text, nullable=False, default="")
    is_wellness_professional = Column(Boolean, nullable=False, default=False)
    upvotes = Column(Integer, nullable=False, default=0)
    downvotes = Column(Integer, nullable=False, default=0)
    reputation = Column(BigInteger, nullable=False, default=0)
    total_stake = Column(String(80), nullable=False, default="0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "name": self.name,
            "bio": self.bio,
            "profile_picture": self.profile_picture,
            "is_wellness_professional": bool(self.is_wellness_professional),
            "upvotes": self.upvotes,
            "downvotes": self.downvotes,
            "reputation": self.reputation,
            "total_stake": self.total_stake,
        }


class Vote(Base):
    """Current vote of one voter on one subject (mutable, not a history)."""

    __tablename__ = "votes"

    voter = Column(String(64), primary_key=True)
    wellness_professional = Column(String(64), primary_key=True, index=True)
    timestamp = Column(BigInteger, nullable=False)  # Unix seconds
    vote_type = Column(String(8), nullable=False)
    stake_amount = Column(String(80), nullable=False, default="0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "voter": self.voter,
            "wellness_professional": self.wellness_professional,
            "timestamp": self.timestamp,
            "vote_type": self.vote_type,
            "stake_amount": self.stake_amount,
        }


class DelegatedStake(Base):
    """Latest absolute amount delegated from one account to another."""

    __tablename__ = "delegated_stakes"

    delegator = Column(String(64), primary_key=True)
    delegate = Column(String(64), primary_key=True, index=True)
    amount = Column(String(80), nullable=False, default="0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "delegator": self.delegator,
            "delegate": self.delegate,
            "amount": self.amount,
        }


MIRROR_TABLES = (Profile.__tablename__, Vote.__tablename__, DelegatedStake.__tablename__)
