"""
Environment variable loading and resolution for Wellness Ledger Sync.

- DATABASE_URL: SQLAlchemy URL (PostgreSQL); wins over everything else
- DB_USER / DB_PASSWORD / DB_HOST / DB_PORT / DB_NAME: PostgreSQL parts
- DB_PATH: SQLite file used when no PostgreSQL settings are present
- RPC_WS_URL: node WebSocket endpoint (RPC_URL accepted as a fallback)
- CONTRACT_ADDRESS: deployed WellnessProfiles contract
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import quote_plus

# Project root: config is wellness_sync/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATH = _ROOT / ".env"

DEFAULT_DB_PATH = "wellness_sync.db"
DEFAULT_RPC_WS_URL = "ws://127.0.0.1:8545"


def load_env() -> None:
    """Load .env from project root. Safe to call multiple times; existing env wins."""
    from dotenv import load_dotenv

    load_dotenv(_ENV_PATH, override=False)


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def get_database_url() -> str:
    """
    Resolve the SQLAlchemy database URL.
    Order: DATABASE_URL > DB_HOST+DB_NAME (PostgreSQL) > sqlite:///DB_PATH.
    """
    url = env_str("DATABASE_URL")
    if url:
        return url
    host = env_str("DB_HOST")
    name = env_str("DB_NAME")
    if host and name:
        user = env_str("DB_USER")
        password = env_str("DB_PASSWORD")
        port = env_str("DB_PORT", "5432")
        auth = ""
        if user:
            auth = quote_plus(user)
            if password:
                auth += ":" + quote_plus(password)
            auth += "@"
        return f"postgresql+psycopg2://{auth}{host}:{port}/{name}"
    path = env_str("DB_PATH", DEFAULT_DB_PATH) or DEFAULT_DB_PATH
    return f"sqlite:///{path}"


def get_rpc_ws_url() -> str:
    """
    Resolve the node WebSocket URL. http(s) values from RPC_URL are mapped to ws(s)
    so a single Hardhat/Geth endpoint setting works for both transports.
    """
    url = env_str("RPC_WS_URL") or env_str("RPC_URL") or DEFAULT_RPC_WS_URL
    if url.startswith("https://"):
        return "wss://" + url[8:]
    if url.startswith("http://"):
        return "ws://" + url[7:]
    return url


def ws_url_to_http(ws_url: str) -> str:
    """Convert wss:// or ws:// to https:// or http:// for RPC HTTP calls."""
    s = ws_url.strip()
    if s.startswith("wss://"):
        return "https://" + s[6:]
    if s.startswith("ws://"):
        return "http://" + s[5:]
    return s


def mask_url(url: str) -> str:
    """Hide credentials in a URL before logging it."""
    if "@" not in url or "//" not in url:
        return url
    scheme, rest = url.split("//", 1)
    return scheme + "//***@" + rest.split("@", 1)[1]
