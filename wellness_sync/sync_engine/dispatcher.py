"""
Keyed dispatcher — single writer per key, concurrent across keys.

Events are routed to one of `shards` asyncio queues by crc32(event.key); each
queue is drained by exactly one worker coroutine, so events with the same key
(a profile address, shared by votes on that profile, or a delegation pair)
are applied in delivery order while unrelated keys proceed in parallel. The
store transaction for an event runs on a bounded thread pool; once started it
always finishes (commit or rollback), even if shutdown gives up waiting for it.

Per-event error policy:
- TransientStoreError: retry with exponential backoff, drop after max_attempts.
- ProfileNotFound: retried like a transient error (a stake may reach the
  store before its profiles), then reported as an invariant violation.
- InvariantViolation: rolled back, logged critical, not retried.
- anything else: logged and dropped; the worker keeps going.
"""

from __future__ import annotations

import asyncio
import functools
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Callable

from wellness_sync.core.exceptions import (
    DispatcherClosed,
    InvariantViolation,
    ProfileNotFound,
    TransientStoreError,
)
from wellness_sync.database.store import Store, StoreSession
from wellness_sync.logging import get_logger
from wellness_sync.projection.events import LedgerEvent
from wellness_sync.projection.handlers import apply_event

logger = get_logger(__name__)

ApplyFn = Callable[[StoreSession, LedgerEvent], Any]


@dataclass
class DispatcherConfig:
    shards: int = 8
    worker_threads: int = 4
    queue_maxsize: int = 1024
    max_attempts: int = 5
    retry_min_sec: float = 0.5
    retry_max_sec: float = 10.0

    def __post_init__(self) -> None:
        self.shards = max(1, int(self.shards))
        self.worker_threads = max(1, int(self.worker_threads))
        self.queue_maxsize = max(0, int(self.queue_maxsize))
        self.max_attempts = max(1, int(self.max_attempts))


@dataclass
class DispatcherStats:
    """Counters for health reporting."""

    submitted: int = 0
    processed: int = 0
    failed: int = 0
    dropped: int = 0
    retried: int = 0
    invariant_violations: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def shard_for(key: str, shards: int) -> int:
    """Stable shard index for a key (same key, same shard, every run)."""
    return zlib.crc32(key.encode("utf-8")) % shards


def _event_fields(event: LedgerEvent) -> dict[str, Any]:
    return {"event_kind": event.kind, "key": event.key, **event.meta.to_log_fields()}


class KeyedDispatcher:
    """Applies events to the Store through per-key serialized queues."""

    def __init__(
        self,
        store: Store,
        config: DispatcherConfig | None = None,
        *,
        apply: ApplyFn = apply_event,
    ) -> None:
        self._store = store
        self._config = config or DispatcherConfig()
        self._apply = apply
        self._queues: list[asyncio.Queue[LedgerEvent]] = []
        self._workers: list[asyncio.Task[None]] = []
        self._executor: ThreadPoolExecutor | None = None
        self._closed = False
        self.stats = DispatcherStats()

    @property
    def started(self) -> bool:
        return bool(self._workers)

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        """Events queued but not yet picked up by a worker."""
        return sum(q.qsize() for q in self._queues)

    async def start(self) -> None:
        if self._workers:
            return
        cfg = self._config
        self._executor = ThreadPoolExecutor(
            max_workers=cfg.worker_threads, thread_name_prefix="wellness-sync"
        )
        self._queues = [asyncio.Queue(maxsize=cfg.queue_maxsize) for _ in range(cfg.shards)]
        self._workers = [
            asyncio.create_task(self._worker(i, q), name=f"dispatcher-shard-{i}")
            for i, q in enumerate(self._queues)
        ]
        logger.info(
            "dispatcher_started",
            shards=cfg.shards,
            worker_threads=cfg.worker_threads,
            queue_maxsize=cfg.queue_maxsize,
        )

    async def submit(self, event: LedgerEvent) -> None:
        """
        Enqueue an event on its key's shard. Waits only when that shard is full.

        Raises:
            DispatcherClosed: shutdown has started.
        """
        if self._closed:
            raise DispatcherClosed("dispatcher is closed")
        if not self._workers:
            raise RuntimeError("dispatcher not started")
        queue = self._queues[shard_for(event.key, len(self._queues))]
        self.stats.submitted += 1
        await queue.put(event)

    async def join(self) -> None:
        """Wait until every submitted event has been handled."""
        await asyncio.gather(*(q.join() for q in self._queues))

    async def close(self, timeout: float = 30.0) -> bool:
        """
        Stop accepting events, wait up to `timeout` for queued and in-flight
        events, then stop the workers. Returns True when everything drained.
        """
        self._closed = True
        if not self._workers:
            return True
        drained = True
        try:
            await asyncio.wait_for(self.join(), timeout=timeout)
        except asyncio.TimeoutError:
            drained = False
            logger.warning(
                "dispatcher_drain_timeout",
                timeout_sec=timeout,
                abandoned=self.pending(),
            )
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._executor is not None:
            # Running transactions finish (commit or rollback); queued ones are cancelled.
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                functools.partial(self._executor.shutdown, wait=True, cancel_futures=True),
            )
            self._executor = None
        logger.info("dispatcher_closed", drained=drained, **self.stats.to_dict())
        return drained

    def _apply_in_transaction(self, event: LedgerEvent) -> None:
        with self._store.session() as session:
            self._apply(session, event)

    async def _worker(self, index: int, queue: asyncio.Queue[LedgerEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self._process(event)
            except Exception as e:
                # _process contains per-event errors; this guards the loop itself
                logger.exception("dispatcher_worker_error", shard=index, error=str(e))
            finally:
                queue.task_done()

    def _record_violation(self, event: LedgerEvent, e: InvariantViolation, attempts: int) -> None:
        self.stats.invariant_violations += 1
        self.stats.failed += 1
        logger.critical(
            "invariant_violation",
            error=str(e),
            address=e.address,
            attempts=attempts,
            **_event_fields(event),
        )

    async def _process(self, event: LedgerEvent) -> None:
        cfg = self._config
        loop = asyncio.get_running_loop()
        delay = cfg.retry_min_sec
        attempt = 0
        while True:
            attempt += 1
            try:
                await loop.run_in_executor(self._executor, self._apply_in_transaction, event)
            except (TransientStoreError, ProfileNotFound) as e:
                if attempt >= cfg.max_attempts:
                    if isinstance(e, ProfileNotFound):
                        self._record_violation(event, e, attempt)
                        return
                    self.stats.dropped += 1
                    logger.error(
                        "event_dropped",
                        attempts=attempt,
                        error=str(e),
                        **_event_fields(event),
                    )
                    return
                self.stats.retried += 1
                logger.warning(
                    "event_retry",
                    attempt=attempt,
                    backoff_sec=round(delay, 2),
                    error=str(e),
                    **_event_fields(event),
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, cfg.retry_max_sec)
                continue
            except InvariantViolation as e:
                self._record_violation(event, e, attempt)
                return
            except Exception as e:
                self.stats.failed += 1
                logger.exception("event_failed", error=str(e), **_event_fields(event))
                return
            self.stats.processed += 1
            logger.info("event_applied", attempts=attempt, **_event_fields(event))
            return
