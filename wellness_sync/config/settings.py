"""
Application settings.

Loads configuration from environment variables (and .env), validates numeric
values and exposes one frozen Settings object used by the store, the
subscription manager, the dispatcher and the API server.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from wellness_sync.config.env import (
    env_str,
    get_database_url,
    get_rpc_ws_url,
    load_env,
)
from wellness_sync.core.exceptions import ConfigError

DEFAULT_SHARDS = 8
DEFAULT_WORKER_THREADS = 4
DEFAULT_QUEUE_MAXSIZE = 1024
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_MIN_SEC = 0.5
DEFAULT_RETRY_MAX_SEC = 10.0
DEFAULT_RECONNECT_MIN_SEC = 1.0
DEFAULT_RECONNECT_MAX_SEC = 60.0
DEFAULT_RECONNECT_MAX_ATTEMPTS = 20
DEFAULT_SHUTDOWN_TIMEOUT_SEC = 30.0

# Event name -> env var holding a precomputed topic0
TOPIC_ENV_VARS = {
    "ProfileFetched": "TOPIC_PROFILE_FETCHED",
    "VoteAdded": "TOPIC_VOTE_ADDED",
    "StakeDelegated": "TOPIC_STAKE_DELEGATED",
}


@dataclass(frozen=True)
class Settings:
    """Typed runtime settings. Build with get_settings() or directly in tests."""

    database_url: str
    rpc_ws_url: str
    contract_address: str = ""
    event_topics: dict[str, str] = field(default_factory=dict)
    shards: int = DEFAULT_SHARDS
    worker_threads: int = DEFAULT_WORKER_THREADS
    queue_maxsize: int = DEFAULT_QUEUE_MAXSIZE
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_min_sec: float = DEFAULT_RETRY_MIN_SEC
    retry_max_sec: float = DEFAULT_RETRY_MAX_SEC
    reconnect_min_sec: float = DEFAULT_RECONNECT_MIN_SEC
    reconnect_max_sec: float = DEFAULT_RECONNECT_MAX_SEC
    reconnect_max_attempts: int = DEFAULT_RECONNECT_MAX_ATTEMPTS
    shutdown_timeout_sec: float = DEFAULT_SHUTDOWN_TIMEOUT_SEC
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"
    log_format: str = "json"

    def require_contract(self) -> str:
        """Return the contract address or raise ConfigError when unset."""
        if not self.contract_address:
            raise ConfigError("CONTRACT_ADDRESS must be set to run the sync engine")
        return self.contract_address


def _int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = env_str(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(name: str, default: float) -> float:
    raw = env_str(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def get_settings() -> Settings:
    """
    Return settings resolved from the environment.

    Raises:
        ConfigError: a numeric variable is malformed or out of range.
    """
    load_env()
    topics = {
        event: env_str(var).lower()
        for event, var in TOPIC_ENV_VARS.items()
        if env_str(var)
    }
    return Settings(
        database_url=get_database_url(),
        rpc_ws_url=get_rpc_ws_url(),
        contract_address=env_str("CONTRACT_ADDRESS").lower(),
        event_topics=topics,
        shards=_int("SYNC_SHARDS", DEFAULT_SHARDS),
        worker_threads=_int("SYNC_WORKER_THREADS", DEFAULT_WORKER_THREADS),
        queue_maxsize=_int("SYNC_QUEUE_MAXSIZE", DEFAULT_QUEUE_MAXSIZE, minimum=0),
        max_attempts=_int("SYNC_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
        retry_min_sec=_float("SYNC_RETRY_MIN_SEC", DEFAULT_RETRY_MIN_SEC),
        retry_max_sec=_float("SYNC_RETRY_MAX_SEC", DEFAULT_RETRY_MAX_SEC),
        reconnect_min_sec=_float("RECONNECT_MIN_SEC", DEFAULT_RECONNECT_MIN_SEC),
        reconnect_max_sec=_float("RECONNECT_MAX_SEC", DEFAULT_RECONNECT_MAX_SEC),
        reconnect_max_attempts=_int("RECONNECT_MAX_ATTEMPTS", DEFAULT_RECONNECT_MAX_ATTEMPTS),
        shutdown_timeout_sec=_float("SHUTDOWN_TIMEOUT_SEC", DEFAULT_SHUTDOWN_TIMEOUT_SEC),
        api_host=env_str("API_HOST", "0.0.0.0"),
        api_port=_int("API_PORT", 8000),
        log_level=env_str("LOG_LEVEL", "INFO").upper(),
        log_format=env_str("LOG_FORMAT", "json").lower(),
    )
