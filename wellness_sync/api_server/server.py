"""
FastAPI server — read-only API over the mirror tables.

Exposes profiles, their current votes and delegations exactly as the sync
engine has projected them. Never writes: new votes reach the store only
through VoteAdded events from the ledger. Config via env (DATABASE_URL / DB_PATH).

API only: uvicorn wellness_sync.api_server.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from wellness_sync import __version__
from wellness_sync.core.exceptions import StoreUnavailable
from wellness_sync.database.store import Store
from wellness_sync.logging import get_logger

logger = get_logger(__name__)

MAX_PAGE_SIZE = 500


# -----------------------------------------------------------------------------
# Response models
# -----------------------------------------------------------------------------


class ProfileResponse(BaseModel):
    """One mirrored profile."""

    address: str = Field(..., description="Ledger account (0x-prefixed hex)")
    name: str
    bio: str
    profile_picture: str
    is_wellness_professional: bool
    upvotes: int = Field(..., ge=0)
    downvotes: int = Field(..., ge=0)
    reputation: int
    total_stake: str = Field(..., description="Decimal string (uint256)")


class VoteResponse(BaseModel):
    """Current vote of one voter on a profile."""

    voter: str
    wellness_professional: str
    timestamp: int = Field(..., description="Unix seconds from the VoteAdded event")
    vote_type: str = Field(..., description="UP or DOWN")
    stake_amount: str


class DelegationResponse(BaseModel):
    delegator: str
    delegate: str
    amount: str


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str


# -----------------------------------------------------------------------------
# App factory and dependency
# -----------------------------------------------------------------------------


def get_store(request: Request) -> Store:
    """Dependency: the app-scoped Store opened in lifespan."""
    store: Store | None = getattr(request.app.state, "store", None)
    if store is None or not store.is_open:
        raise HTTPException(status_code=503, detail="store unavailable")
    return store


def _normalize(address: str) -> str:
    return address.strip().lower()


def create_app(store: Store | None = None) -> FastAPI:
    """
    Build the API. With no `store`, one is opened from settings on startup
    and closed on shutdown; an injected store is left to its owner.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = store is None
        app.state.store = store
        if owned:
            from wellness_sync.config import get_settings

            app.state.store = Store(get_settings().database_url)
        try:
            app.state.store.open()
        except StoreUnavailable as e:
            logger.error("api_store_unavailable", error=str(e))
        logger.info("api_started", owned_store=owned)
        yield
        if owned:
            app.state.store.close()
        logger.info("api_stopped")

    app = FastAPI(
        title="Wellness Ledger Sync API",
        description="Read-only API over profiles, votes and delegated stakes mirrored from the ledger.",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/health", response_model=HealthResponse)
    def health(request: Request) -> dict[str, Any]:
        current: Store | None = getattr(request.app.state, "store", None)
        ok = current is not None and current.is_open
        return {
            "status": "ok" if ok else "degraded",
            "version": __version__,
            "database": "open" if ok else "unavailable",
        }

    @app.get("/profiles", response_model=list[ProfileResponse])
    def list_profiles(
        limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        db: Store = Depends(get_store),
    ) -> list[dict[str, Any]]:
        with db.read_session() as s:
            return s.list_profiles(limit=limit, offset=offset)

    @app.get("/profiles/{address}", response_model=ProfileResponse)
    def get_profile(address: str, db: Store = Depends(get_store)) -> dict[str, Any]:
        with db.read_session() as s:
            row = s.get_profile(_normalize(address))
        if row is None:
            raise HTTPException(status_code=404, detail="profile not found")
        return row

    @app.get("/profiles/{address}/votes", response_model=list[VoteResponse])
    def list_votes(address: str, db: Store = Depends(get_store)) -> list[dict[str, Any]]:
        with db.read_session() as s:
            return s.list_votes_for(_normalize(address))

    @app.get("/profiles/{address}/delegations", response_model=list[DelegationResponse])
    def list_delegations(address: str, db: Store = Depends(get_store)) -> list[dict[str, Any]]:
        with db.read_session() as s:
            return s.list_delegations(_normalize(address))

    return app


app = create_app()
