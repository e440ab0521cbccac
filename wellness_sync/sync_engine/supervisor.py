"""
Sync engine lifecycle — the one object that owns store, dispatcher and subscription.

start(): open the Store (fatal if unreachable), start dispatcher workers,
start the ledger subscription.
stop(): stop the subscription first so no new events arrive, drain the
dispatcher with a bounded wait (in-flight transactions always finish), close
the Store.
run(): start, wait for SIGINT/SIGTERM or a fatal subscription error, stop.
Unhandled errors in stray tasks are logged and do not end the process.

Usage: wellness-sync sync
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Callable

from wellness_sync.config.env import ws_url_to_http
from wellness_sync.config.settings import Settings
from wellness_sync.core.exceptions import StoreUnavailable, SubscriptionExhausted
from wellness_sync.database.store import Store
from wellness_sync.ledger_listener.codec import EventCodec
from wellness_sync.ledger_listener.subscription import (
    SubscriptionConfig,
    SubscriptionManager,
    SubscriptionState,
)
from wellness_sync.logging import get_logger
from wellness_sync.sync_engine.dispatcher import DispatcherConfig, KeyedDispatcher

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1


class SyncEngine:
    """
    Explicitly owned synchronization context. Build with SyncEngine.from_settings()
    or pass collaborators directly (tests inject a fake transport via `connect`).
    """

    def __init__(
        self,
        store: Store,
        subscription_config: SubscriptionConfig,
        codec: EventCodec | Callable[[], Any],
        *,
        dispatcher_config: DispatcherConfig | None = None,
        shutdown_timeout_sec: float = 30.0,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = KeyedDispatcher(store, dispatcher_config)
        self.subscription = SubscriptionManager(
            subscription_config,
            codec,
            self.dispatcher.submit,
            connect=connect,
        )
        self._shutdown_timeout = shutdown_timeout_sec
        self._subscription_task: asyncio.Task[None] | None = None
        self._shutdown = asyncio.Event()
        self._running = False

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "SyncEngine":
        contract = settings.require_contract()
        http_url = ws_url_to_http(settings.rpc_ws_url)

        async def _codec() -> EventCodec:
            return await EventCodec.resolve(
                http_url,
                contract_address=contract,
                overrides=settings.event_topics,
            )

        return cls(
            Store(settings.database_url),
            SubscriptionConfig(
                ws_url=settings.rpc_ws_url,
                contract_address=contract,
                reconnect_min_sec=settings.reconnect_min_sec,
                reconnect_max_sec=settings.reconnect_max_sec,
                reconnect_max_attempts=settings.reconnect_max_attempts,
            ),
            _codec,
            dispatcher_config=DispatcherConfig(
                shards=settings.shards,
                worker_threads=settings.worker_threads,
                queue_maxsize=settings.queue_maxsize,
                max_attempts=settings.max_attempts,
                retry_min_sec=settings.retry_min_sec,
                retry_max_sec=settings.retry_max_sec,
            ),
            shutdown_timeout_sec=settings.shutdown_timeout_sec,
            **kwargs,
        )

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Raises:
            StoreUnavailable: store unreachable or schema missing (fatal).
        """
        if self._running:
            return
        self.store.open()
        await self.dispatcher.start()
        self._subscription_task = asyncio.create_task(
            self.subscription.run(), name="ledger-subscription"
        )
        self._subscription_task.add_done_callback(self._on_subscription_done)
        self._running = True
        logger.info("sync_engine_started")

    def _on_subscription_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.critical("sync_engine_subscription_failed", error=str(exc))
            self._shutdown.set()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    async def stop(self, timeout: float | None = None) -> bool:
        """Stop intake, drain in-flight events (bounded), close the store. Returns True if drained."""
        if not self._running:
            return True
        timeout = self._shutdown_timeout if timeout is None else timeout
        logger.info("sync_engine_stopping", timeout_sec=timeout)
        await self.subscription.stop()
        task = self._subscription_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            except Exception:
                # failure already reported by _on_subscription_done
                pass
        drained = await self.dispatcher.close(timeout=timeout)
        self.store.close()
        self._running = False
        logger.info("sync_engine_stopped", drained=drained, **self.dispatcher.stats.to_dict())
        return drained

    def health(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "subscription_state": self.subscription.state.value,
            "subscription_id": self.subscription.stats.subscription_id,
            "notifications": self.subscription.stats.notifications,
            "decode_errors": self.subscription.stats.decode_errors,
            "reconnects": self.subscription.stats.reconnects,
            "pending": self.dispatcher.pending(),
            **self.dispatcher.stats.to_dict(),
        }

    def _install_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        def _handle_exception(_loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
            exc = context.get("exception")
            logger.error(
                "sync_engine_unhandled_error",
                message=context.get("message"),
                error=str(exc) if exc else None,
            )

        loop.set_exception_handler(_handle_exception)
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows / not main thread
                pass

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("sync_engine_shutdown_signal", signal=sig.name)
        self._shutdown.set()

    async def run(self) -> int:
        """Run until a shutdown signal or fatal error. Returns the process exit status."""
        self._install_handlers(asyncio.get_running_loop())
        try:
            await self.start()
        except StoreUnavailable as e:
            logger.critical("sync_engine_store_unavailable", error=str(e))
            return EXIT_FATAL
        await self._shutdown.wait()
        await self.stop()
        task = self._subscription_task
        if task is not None and task.done() and not task.cancelled():
            if isinstance(task.exception(), SubscriptionExhausted):
                return EXIT_FATAL
        return EXIT_OK


def run_sync(settings: Settings) -> int:
    """Blocking entry point used by the CLI."""
    engine = SyncEngine.from_settings(settings)
    try:
        return asyncio.run(engine.run())
    except KeyboardInterrupt:
        logger.info("sync_engine_keyboard_interrupt")
        return EXIT_OK
