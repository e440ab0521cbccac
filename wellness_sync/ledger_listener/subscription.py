"""
Ledger event subscription — WebSocket eth_subscribe("logs") → decode → dispatcher.

State machine: DISCONNECTED → SUBSCRIBING → ACTIVE → (ERROR → SUBSCRIBING | DISCONNECTED).

On ACTIVE every eth_subscription notification is decoded and handed to the
sink (the dispatcher), which only enqueues, so the receive loop goes straight
back to the socket. Malformed logs are logged and dropped. Connection loss
moves to ERROR and resubscribes with exponential backoff; after
reconnect_max_attempts consecutive failures SubscriptionExhausted is raised.
There is no gap-free resume: logs emitted while disconnected are not replayed.
"""

from __future__ import annotations

import asyncio
import enum
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed

from wellness_sync.core.exceptions import (
    DispatcherClosed,
    EventDecodeError,
    SubscriptionExhausted,
)
from wellness_sync.ledger_listener.codec import EventCodec
from wellness_sync.logging import get_logger
from wellness_sync.projection.events import LedgerEvent

logger = get_logger(__name__)

DEFAULT_WS_PING_INTERVAL = 20.0
DEFAULT_WS_PING_TIMEOUT = 20.0
DEFAULT_SUBSCRIBE_TIMEOUT = 10.0
_WS_CLOSE_TIMEOUT = 5.0

EventSink = Callable[[LedgerEvent], Awaitable[None]]
CodecProvider = Callable[[], Awaitable[EventCodec]]


class SubscriptionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    ERROR = "error"


@dataclass
class SubscriptionConfig:
    """Connection and reconnect settings for the ledger subscription."""

    ws_url: str
    contract_address: str
    reconnect_min_sec: float = 1.0
    reconnect_max_sec: float = 60.0
    reconnect_max_attempts: int = 20
    subscribe_timeout_sec: float = DEFAULT_SUBSCRIBE_TIMEOUT
    ws_ping_interval: float | None = DEFAULT_WS_PING_INTERVAL
    ws_ping_timeout: float | None = DEFAULT_WS_PING_TIMEOUT


@dataclass
class SubscriptionStats:
    notifications: int = 0
    decode_errors: int = 0
    reconnects: int = 0
    subscription_id: str | None = None


class SubscriptionManager:
    """
    Owns the long-lived log subscription for one contract.

    `codec` is either a ready EventCodec or an async provider (resolved on the
    first connect and cached). `connect` defaults to websockets.connect and is
    injectable for tests.
    """

    def __init__(
        self,
        config: SubscriptionConfig,
        codec: EventCodec | CodecProvider,
        sink: EventSink,
        *,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        if not config.ws_url.strip():
            raise ValueError("ws_url must be non-empty")
        if not config.contract_address.strip():
            raise ValueError("contract_address must be non-empty")
        if config.reconnect_max_attempts < 1:
            raise ValueError("reconnect_max_attempts must be >= 1")
        self._config = config
        self._codec = codec if isinstance(codec, EventCodec) else None
        self._codec_provider = None if isinstance(codec, EventCodec) else codec
        self._sink = sink
        self._connect = connect or websockets.connect
        self._state = SubscriptionState.DISCONNECTED
        self._stop = asyncio.Event()
        self._ws: Any = None
        self._next_rpc_id = 0
        self.stats = SubscriptionStats()

    @property
    def state(self) -> SubscriptionState:
        return self._state

    def _set_state(self, state: SubscriptionState) -> None:
        if state is not self._state:
            logger.info("subscription_state", previous=self._state.value, state=state.value)
            self._state = state

    def _next_id(self) -> int:
        self._next_rpc_id += 1
        return self._next_rpc_id

    async def _get_codec(self) -> EventCodec:
        if self._codec is None:
            assert self._codec_provider is not None
            self._codec = await self._codec_provider()
        return self._codec

    async def run(self) -> None:
        """
        Connect, subscribe, forward events; reconnect with backoff on failure.
        Returns after stop(); raises SubscriptionExhausted when the retry budget is spent.
        """
        cfg = self._config
        backoff = cfg.reconnect_min_sec
        failures = 0
        try:
            while not self._stop.is_set():
                self._set_state(SubscriptionState.SUBSCRIBING)
                try:
                    codec = await self._get_codec()
                    async with self._connect(
                        cfg.ws_url,
                        ping_interval=cfg.ws_ping_interval,
                        ping_timeout=cfg.ws_ping_timeout,
                        close_timeout=_WS_CLOSE_TIMEOUT,
                    ) as ws:
                        self._ws = ws
                        sub_id = await self._subscribe(ws, codec)
                        self._set_state(SubscriptionState.ACTIVE)
                        failures = 0
                        backoff = cfg.reconnect_min_sec
                        await self._receive_loop(ws, codec, sub_id)
                    if not self._stop.is_set():
                        logger.warning("subscription_closed_by_server", url=cfg.ws_url)
                except ConnectionClosed as e:
                    if not self._stop.is_set():
                        logger.warning(
                            "subscription_disconnected",
                            code=getattr(e.rcvd, "code", None),
                            reason=getattr(e.rcvd, "reason", None),
                        )
                except Exception as e:
                    if self._stop.is_set():
                        break
                    logger.exception("subscription_error", url=cfg.ws_url, error=str(e))
                finally:
                    self._ws = None

                if self._stop.is_set():
                    break
                self._set_state(SubscriptionState.ERROR)
                failures += 1
                self.stats.reconnects += 1
                if failures >= cfg.reconnect_max_attempts:
                    logger.critical(
                        "subscription_retry_exhausted",
                        attempts=failures,
                        url=cfg.ws_url,
                    )
                    raise SubscriptionExhausted(
                        f"could not resubscribe after {failures} attempts"
                    )
                logger.info(
                    "subscription_reconnect",
                    attempt=failures,
                    backoff_sec=round(backoff, 1),
                )
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=backoff)
                except asyncio.TimeoutError:
                    pass
                backoff = min(backoff * 2, cfg.reconnect_max_sec)
        finally:
            self._set_state(SubscriptionState.DISCONNECTED)
        logger.info("subscription_stopped", notifications=self.stats.notifications)

    async def stop(self) -> None:
        """Stop accepting notifications and close the socket; run() then returns."""
        self._stop.set()
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("subscription_close_failed", error=str(e))

    async def _subscribe(self, ws: Any, codec: EventCodec) -> str:
        """Send eth_subscribe for the contract's logs and wait for the subscription id."""
        req_id = self._next_id()
        req = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "eth_subscribe",
            "params": [
                "logs",
                {"address": self._config.contract_address, "topics": codec.topic_filter()},
            ],
        }
        await ws.send(json.dumps(req))

        async def _await_response() -> str:
            while True:
                msg = json.loads(await ws.recv())
                if msg.get("id") != req_id:
                    continue
                if "error" in msg:
                    err = msg["error"]
                    raise RuntimeError(f"eth_subscribe rejected: {err.get('message', err)}")
                return str(msg["result"])

        sub_id = await asyncio.wait_for(_await_response(), timeout=self._config.subscribe_timeout_sec)
        self.stats.subscription_id = sub_id
        logger.info(
            "subscription_active",
            subscription_id=sub_id,
            contract=self._config.contract_address,
        )
        return sub_id

    async def _receive_loop(self, ws: Any, codec: EventCodec, sub_id: str) -> None:
        async for raw in ws:
            if self._stop.is_set():
                return
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError as e:
                self.stats.decode_errors += 1
                logger.warning("subscription_message_invalid_json", error=str(e))
                continue
            if msg.get("method") != "eth_subscription":
                continue
            params = msg.get("params") or {}
            if str(params.get("subscription")) != sub_id:
                continue
            self.stats.notifications += 1
            try:
                event = codec.decode(params.get("result"))
            except EventDecodeError as e:
                self.stats.decode_errors += 1
                logger.warning("event_decode_failed", error=str(e))
                continue
            try:
                await self._sink(event)
            except DispatcherClosed:
                logger.info("subscription_sink_closed")
                return
