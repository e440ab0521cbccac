"""
Store — transactional persistence for profiles, votes and delegated stakes.

One SQLAlchemy engine (and connection pool) per Store, opened and closed
explicitly by the sync engine. Store.session() yields a StoreSession bound to
a single transaction: every read-modify-write a handler performs for one event
either commits as a whole or rolls back as a whole.

Uses DATABASE_URL-style URLs: PostgreSQL in production, SQLite for local runs
and tests. SQLite write transactions are started with BEGIN IMMEDIATE so
concurrent writers queue on the busy timeout instead of failing lock upgrades;
Store.read_session() starts a plain BEGIN and never takes the write lock.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Mapping

from sqlalchemy import create_engine, event, inspect, or_, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from wellness_sync.config.env import mask_url
from wellness_sync.core.exceptions import (
    InvariantViolation,
    ProfileNotFound,
    StoreUnavailable,
    TransientStoreError,
)
from wellness_sync.database.models import (
    MIRROR_TABLES,
    DelegatedStake,
    Profile,
    Vote,
    VoteType,
)
from wellness_sync.logging import get_logger

logger = get_logger(__name__)

DEFAULT_POOL_SIZE = 5
SQLITE_BUSY_TIMEOUT_SEC = 15.0
READ_ONLY_OPTION = "wellness_sync_read_only"

_PROFILE_FIELDS = (
    "name",
    "bio",
    "profile_picture",
    "is_wellness_professional",
    "upvotes",
    "downvotes",
    "reputation",
    "total_stake",
)


def parse_amount(value: int | str) -> int:
    """Parse a uint amount given as int or decimal string. Raises ValueError if negative or malformed."""
    if isinstance(value, bool):
        raise ValueError(f"invalid amount {value!r}")
    if isinstance(value, int):
        amount = value
    else:
        s = str(value).strip()
        if not s.isdigit():
            raise ValueError(f"invalid amount {value!r}")
        amount = int(s)
    if amount < 0:
        raise ValueError(f"amount must be non-negative, got {amount}")
    return amount


def _install_sqlite_immediate(engine: Engine) -> None:
    """pysqlite: take the write lock at BEGIN so read-then-write never deadlocks. Read-only sessions use a plain BEGIN."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn: Any, _record: Any) -> None:
        dbapi_conn.isolation_level = None
        dbapi_conn.execute("PRAGMA foreign_keys = ON")

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        if conn.get_execution_options().get(READ_ONLY_OPTION):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")


def classify_db_error(exc: DBAPIError) -> Exception:
    """Map a driver error to the sync error taxonomy (transient vs invariant)."""
    if isinstance(exc, IntegrityError):
        return InvariantViolation(f"constraint violated: {exc.orig}")
    if isinstance(exc, DataError):
        return InvariantViolation(f"value does not fit its column: {exc.orig}")
    if isinstance(exc, OperationalError) or exc.connection_invalidated:
        return TransientStoreError(f"transient store error: {exc.orig}")
    return exc


class StoreSession:
    """
    Read-then-write access to the three mirror tables inside one transaction.

    Rows read for modification are locked (SELECT ... FOR UPDATE on PostgreSQL).
    Never hold a StoreSession across events.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    # -- profiles -----------------------------------------------------------

    def _profile_for_update(self, address: str) -> Profile:
        profile = self._session.get(Profile, address, with_for_update=True)
        if profile is None:
            raise ProfileNotFound(f"no profile for address {address}", address=address)
        return profile

    def upsert_profile(self, row: Mapping[str, Any]) -> None:
        """Full-row replace keyed by address."""
        address = row["address"]
        values = {f: row[f] for f in _PROFILE_FIELDS if f in row}
        if "total_stake" in values:
            values["total_stake"] = str(parse_amount(values["total_stake"]))
        for counter in ("upvotes", "downvotes"):
            if counter in values and int(values[counter]) < 0:
                raise InvariantViolation(f"{counter} must be non-negative", address=address)
        profile = self._session.get(Profile, address, with_for_update=True)
        if profile is None:
            self._session.add(Profile(address=address, **values))
        else:
            for key, value in values.items():
                setattr(profile, key, value)
        self._session.flush()

    def adjust_profile_counters(self, address: str, delta_up: int, delta_down: int) -> None:
        """Apply signed deltas to upvotes/downvotes. A negative result is an invariant violation."""
        profile = self._profile_for_update(address)
        new_up = profile.upvotes + delta_up
        new_down = profile.downvotes + delta_down
        if new_up < 0 or new_down < 0:
            raise InvariantViolation(
                f"vote counters for {address} would go negative "
                f"(upvotes={new_up}, downvotes={new_down})",
                address=address,
            )
        profile.upvotes = new_up
        profile.downvotes = new_down
        self._session.flush()

    def adjust_profile_stake(self, address: str, signed_delta: int) -> None:
        """Apply a signed delta to total_stake. A negative result is an invariant violation."""
        profile = self._profile_for_update(address)
        new_total = parse_amount(profile.total_stake) + signed_delta
        if new_total < 0:
            raise InvariantViolation(
                f"total_stake for {address} would go negative ({new_total})",
                address=address,
            )
        profile.total_stake = str(new_total)
        self._session.flush()

    # -- votes --------------------------------------------------------------

    def upsert_vote(
        self,
        voter: str,
        subject: str,
        vote_type: VoteType,
        timestamp: int,
        stake: int | str,
    ) -> VoteType | None:
        """Insert or replace the vote for (voter, subject). Returns the prior vote type, None if first."""
        stake_str = str(parse_amount(stake))
        vote = self._session.get(Vote, (voter, subject), with_for_update=True)
        if vote is None:
            self._session.add(
                Vote(
                    voter=voter,
                    wellness_professional=subject,
                    timestamp=int(timestamp),
                    vote_type=vote_type.value,
                    stake_amount=stake_str,
                )
            )
            prior = None
        else:
            prior = VoteType(vote.vote_type)
            vote.vote_type = vote_type.value
            vote.timestamp = int(timestamp)
            vote.stake_amount = stake_str
        self._session.flush()
        return prior

    # -- delegated stakes ---------------------------------------------------

    def upsert_delegated_stake(self, delegator: str, delegate: str, amount: int | str) -> int:
        """Replace the absolute amount for (delegator, delegate). Returns the prior amount (0 if none)."""
        new_amount = parse_amount(amount)
        row = self._session.get(DelegatedStake, (delegator, delegate), with_for_update=True)
        if row is None:
            self._session.add(
                DelegatedStake(delegator=delegator, delegate=delegate, amount=str(new_amount))
            )
            prior = 0
        else:
            prior = parse_amount(row.amount)
            row.amount = str(new_amount)
        self._session.flush()
        return prior

    # -- reads --------------------------------------------------------------

    def get_profile(self, address: str) -> dict[str, Any] | None:
        row = self._session.get(Profile, address)
        return row.to_dict() if row else None

    def get_vote(self, voter: str, subject: str) -> dict[str, Any] | None:
        row = self._session.get(Vote, (voter, subject))
        return row.to_dict() if row else None

    def get_delegated_stake(self, delegator: str, delegate: str) -> dict[str, Any] | None:
        row = self._session.get(DelegatedStake, (delegator, delegate))
        return row.to_dict() if row else None

    def list_profiles(self, *, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        stmt = select(Profile).order_by(Profile.address).limit(limit).offset(offset)
        return [p.to_dict() for p in self._session.scalars(stmt)]

    def list_votes_for(self, subject: str) -> list[dict[str, Any]]:
        stmt = (
            select(Vote)
            .where(Vote.wellness_professional == subject)
            .order_by(Vote.timestamp.desc(), Vote.voter)
        )
        return [v.to_dict() for v in self._session.scalars(stmt)]

    def list_delegations(self, address: str) -> list[dict[str, Any]]:
        """Delegations where address is either side."""
        stmt = (
            select(DelegatedStake)
            .where(or_(DelegatedStake.delegator == address, DelegatedStake.delegate == address))
            .order_by(DelegatedStake.delegator, DelegatedStake.delegate)
        )
        return [d.to_dict() for d in self._session.scalars(stmt)]


class Store:
    """Owns the engine/pool. open() before use, close() on shutdown."""

    def __init__(self, database_url: str, *, pool_size: int = DEFAULT_POOL_SIZE) -> None:
        if not database_url.strip():
            raise ValueError("database_url must be non-empty")
        self._url = database_url.strip()
        self._pool_size = pool_size
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_sqlite(self) -> bool:
        return self._url.startswith("sqlite")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise StoreUnavailable("store is not open")
        return self._engine

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def _create_engine(self) -> Engine:
        if self.is_sqlite:
            engine = create_engine(
                self._url,
                connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SEC},
            )
            _install_sqlite_immediate(engine)
            return engine
        return create_engine(self._url, pool_size=self._pool_size, pool_pre_ping=True)

    def open(self, *, require_schema: bool = True) -> None:
        """
        Create the engine and verify connectivity (and the mirror tables).

        Raises:
            StoreUnavailable: database unreachable or migrations not applied.
        """
        if self._engine is not None:
            return
        engine = self._create_engine()
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            missing = []
            if require_schema:
                inspector = inspect(engine)
                missing = [t for t in MIRROR_TABLES if not inspector.has_table(t)]
        except SQLAlchemyError as e:
            engine.dispose()
            logger.error("store_unreachable", url=mask_url(self._url), error=str(e))
            raise StoreUnavailable(f"cannot connect to store: {e}") from e
        if missing:
            engine.dispose()
            logger.error("store_schema_missing", url=mask_url(self._url), missing=missing)
            raise StoreUnavailable(
                f"missing tables {', '.join(missing)}; run `wellness-sync migrate` first"
            )
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        logger.info("store_opened", url=mask_url(self._url))

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("store_closed", url=mask_url(self._url))

    @contextmanager
    def session(self) -> Iterator[StoreSession]:
        """One transaction. Commits on success, rolls back on error, always releases the connection."""
        if self._session_factory is None:
            raise StoreUnavailable("store is not open")
        session = self._session_factory()
        try:
            yield StoreSession(session)
            session.commit()
        except DBAPIError as e:
            session.rollback()
            mapped = classify_db_error(e)
            if mapped is e:
                raise
            raise mapped from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def read_session(self) -> Iterator[StoreSession]:
        """Read-only transaction for queries. Never takes the SQLite write lock; always rolled back."""
        if self._session_factory is None:
            raise StoreUnavailable("store is not open")
        session = self._session_factory()
        try:
            session.connection(execution_options={READ_ONLY_OPTION: True})
            yield StoreSession(session)
        except DBAPIError as e:
            mapped = classify_db_error(e)
            if mapped is e:
                raise
            raise mapped from e
        finally:
            session.rollback()
            session.close()
