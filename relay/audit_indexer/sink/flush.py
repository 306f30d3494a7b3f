"""
Batched bulk writer for change events.

The BatchFlushEngine owns the pending queue shared by the historic scanner
and the live listener. It:
1. Routes each event to its index and queues it (enqueue, synchronous)
2. Triggers a flush when the item count or byte size threshold is reached,
   or when the idle timer / periodic timer fires
3. Creates missing indices, once per name, before writing to them
4. Writes a batch with one bulk request per size-bounded sub-batch
5. Notifies post-flush observers (source row deletion) on success
6. Puts a failed batch back at the front of the queue, in order

Invariants:
    - At most one flush runs at a time (flush lock)
    - Items leave the queue in arrival order; a failed batch is re-inserted
      at the front in its original order
    - len(items) == len(sizes) at every observation point
    - At most one index creation per name is in flight; a failed creation
      is not cached
    - Observers only see batches the store confirmed

How to change safely:
    - Never await between reading and mutating the queue in enqueue()
    - Test failure paths with InMemoryDocumentStore failure injection
    - Keep observers idempotent, a batch may be seen again after a restart
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..config import BulkAction
from ..events import ChangeEvent, PendingItem
from .base import DocumentStoreClient, DocumentStoreError, encode_bulk_pair
from .naming import ContainerNaming

logger = logging.getLogger(__name__)

Observer = Callable[[list[PendingItem]], Awaitable[Any]]


class FlushError(Exception):
    """Base exception for flush engine errors."""
    pass


class BulkWriteError(FlushError):
    """The store reported item failures for a bulk request.

    Attributes:
        failed_keys: Primary keys of the failed items
    """

    def __init__(self, message: str, failed_keys: list[int] | None = None) -> None:
        super().__init__(message)
        self.failed_keys = failed_keys or []


class QueueInvariantError(FlushError):
    """The pending queue's parallel lists diverged (programming error)."""
    pass


class EngineClosedError(FlushError):
    """enqueue() was called after shutdown draining began."""
    pass


class EngineState(Enum):
    """Flush engine states."""

    IDLE = "idle"
    FLUSHING = "flushing"
    DRAINING = "draining"


class BatchFlushEngine:
    """Queues change events and writes them to the document store in batches.

    Attributes:
        store: Document store client
        naming: Index naming rule
        queue_limit: Items per flush, also the count threshold
        queue_max_bytes: Pending bytes threshold (0 = off)
        max_post_bytes: Maximum bulk body size (0 = unlimited)
        idle_timeout: Seconds an item may wait before the idle timer flushes
        bulk_action: Bulk verb for every document

    Example:
        >>> engine = BatchFlushEngine(store, naming, BatchConfig(queue_limit=3))
        >>> engine.add_observer(deleter.on_batch_confirmed)
        >>> engine.enqueue(event)
        >>> await engine.flush()
    """

    def __init__(
        self,
        store: DocumentStoreClient,
        naming: ContainerNaming,
        batch_config: Any,
        bulk_action: BulkAction = BulkAction.INDEX,
        label_name: str | None = None,
        label: str | None = None,
        mapping: dict[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
        on_fatal: Callable[[BaseException], None] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Document store client
            naming: Index naming rule
            batch_config: BatchConfig instance
            bulk_action: Bulk verb for every document
            label_name: Attribute stamped onto every document
            label: Value of the label attribute
            mapping: Mappings body for created indices
            clock: Returns "now" for date-suffixed index names
            on_fatal: Called when a background flush hits a fatal error
        """
        self.store = store
        self.naming = naming
        self.queue_limit = batch_config.queue_limit
        self.queue_max_bytes = batch_config.queue_max_bytes
        self.max_post_bytes = batch_config.max_post_bytes
        self.idle_timeout = batch_config.queue_timeout_seconds
        self.retry_delay = batch_config.retry_delay_ms / 1000
        self.bulk_action = bulk_action
        self.label_name = label_name
        self.label = label
        self.mapping = mapping
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._on_fatal = on_fatal
        self._fatal_error: BaseException | None = None

        # Documents and their serialized sizes, kept in lockstep
        self._items: list[PendingItem] = []
        self._sizes: list[int] = []
        self._pending_bytes = 0

        self._state = EngineState.IDLE
        self._flush_lock = asyncio.Lock()
        self._containers: dict[str, asyncio.Future] = {}
        self._observers: list[Observer] = []

        self._idle_timer: asyncio.TimerHandle | None = None
        self._pump_task: asyncio.Task | None = None
        self._periodic_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._retry_after = 0.0

        self._enqueued_count = 0
        self._flushed_count = 0
        self._failed_flushes = 0
        self._bulk_requests = 0

    # Queueing

    def enqueue(self, event: ChangeEvent) -> PendingItem:
        """Queue an event for the next flush.

        Never blocks: reaching a threshold schedules a flush in the
        background instead of running it inline.

        Args:
            event: Event to queue

        Returns:
            The queued PendingItem

        Raises:
            EngineClosedError: If shutdown draining already began
        """
        if self._state is EngineState.DRAINING:
            raise EngineClosedError(
                f"Engine is draining, rejected {event.stream_name}:{event.primary_key}"
            )

        item = PendingItem(
            container=self.naming.container_for(event.stream_name, self._clock()),
            document_id=event.primary_key,
            event=event,
        )
        size = len(encode_bulk_pair(item.action(self.bulk_action.value), self._document(item)))

        self._items.append(item)
        self._sizes.append(size)
        self._pending_bytes += size
        self._enqueued_count += 1

        if self._threshold_reached():
            logger.debug(
                "Queue threshold reached, flushing",
                extra={"pending": len(self._items), "pending_bytes": self._pending_bytes},
            )
            self._trigger_flush()
        else:
            self._arm_idle_timer()
        return item

    async def wait_for_capacity(
        self,
        max_pending: int,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        """Hold a producer back while max_pending or more items are queued.

        Returns early once should_stop() is true, so a producer that is
        shutting down is never held behind an unreachable store.
        """
        while len(self._items) >= max_pending and self._fatal_error is None:
            if self._state is EngineState.DRAINING:
                return
            if should_stop is not None and should_stop():
                return
            if not await self._background_flush("backpressure"):
                await asyncio.sleep(self.retry_delay)

    def now(self) -> datetime:
        """Current time as seen by index naming."""
        return self._clock()

    def _document(self, item: PendingItem) -> dict[str, Any]:
        return item.event.to_document(self.label_name, self.label)

    def _threshold_reached(self) -> bool:
        if len(self._items) >= self.queue_limit:
            return True
        return bool(self.queue_max_bytes) and self._pending_bytes >= self.queue_max_bytes

    def _trigger_flush(self) -> None:
        loop = asyncio.get_running_loop()
        if loop.time() < self._retry_after:
            self._arm_idle_timer()
            return
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = loop.create_task(self._pump())

    async def _pump(self) -> None:
        """Flush while a threshold is still reached."""
        while self._threshold_reached() and self._state is not EngineState.DRAINING:
            if not await self._background_flush("threshold"):
                self._retry_after = asyncio.get_running_loop().time() + self.retry_delay
                break

    def _arm_idle_timer(self) -> None:
        if self._idle_timer is not None or self._state is EngineState.DRAINING:
            return
        loop = asyncio.get_running_loop()
        self._idle_timer = loop.call_later(self.idle_timeout, self._on_idle_timeout)

    def _on_idle_timeout(self) -> None:
        self._idle_timer = None
        task = asyncio.get_running_loop().create_task(self._background_flush("idle timer"))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    async def _background_flush(self, trigger: str) -> bool:
        """Flush on behalf of a timer or threshold; failures leave items queued."""
        try:
            await self.flush()
            return True
        except QueueInvariantError as e:
            self._report_fatal(e)
        except Exception as e:
            logger.warning(
                f"Flush triggered by {trigger} failed, items stay queued: {e}",
                extra={"pending": len(self._items)},
            )
        return False

    def _report_fatal(self, error: BaseException) -> None:
        self._fatal_error = error
        if self._on_fatal is not None:
            self._on_fatal(error)

    # Flushing

    async def flush(self) -> int:
        """Write the oldest queued items (up to queue_limit).

        Concurrent calls queue behind the running flush.

        Returns:
            Number of items written (0 if the queue was empty)

        Raises:
            QueueInvariantError: If the queue is corrupted
            BulkWriteError: If the store reported item failures
            DocumentStoreError: If the store could not be reached
        """
        async with self._flush_lock:
            return await self._flush_batch()

    async def _flush_batch(self) -> int:
        self._check_invariant()
        if not self._items:
            logger.debug("Skipping flush, no items")
            return 0

        count = min(len(self._items), self.queue_limit)
        batch = self._items[:count]
        sizes = self._sizes[:count]
        del self._items[:count]
        del self._sizes[:count]
        self._pending_bytes -= sum(sizes)

        if self._state is EngineState.IDLE:
            self._state = EngineState.FLUSHING

        written = False
        try:
            for container in dict.fromkeys(item.container for item in batch):
                await self.ensure_container_exists(container)
            for sub_batch in self._split(batch, sizes):
                await self._write(sub_batch)
            written = True
        except Exception as e:
            self._failed_flushes += 1
            logger.error(
                f"Failed to index {count} items, re-queued at the front: {e}",
                extra={
                    "items": count,
                    "first_key": batch[0].document_id,
                    "last_key": batch[-1].document_id,
                    "streams": sorted({item.event.stream_name for item in batch}),
                },
            )
            raise
        finally:
            if not written:
                self._requeue(batch, sizes)
            if self._state is EngineState.FLUSHING:
                self._state = EngineState.IDLE
            if self._items:
                self._arm_idle_timer()

        self._flushed_count += count
        logger.debug(
            f"Successfully indexed {count} items",
            extra={"items": count, "pending": len(self._items)},
        )
        await self._notify_observers(batch)
        return count

    def _split(self, batch: list[PendingItem], sizes: list[int]) -> list[list[PendingItem]]:
        """Ordered sub-batches whose bulk body fits max_post_bytes."""
        if not self.max_post_bytes:
            return [batch]

        sub_batches: list[list[PendingItem]] = []
        current: list[PendingItem] = []
        current_size = 0
        for item, size in zip(batch, sizes):
            if current and current_size + size > self.max_post_bytes:
                sub_batches.append(current)
                current, current_size = [], 0
            if size > self.max_post_bytes:
                logger.warning(
                    "Document exceeds the maximum post size, sending it alone",
                    extra={"stream": item.event.stream_name, "key": item.document_id, "size": size},
                )
            current.append(item)
            current_size += size
        if current:
            sub_batches.append(current)
        return sub_batches

    async def _write(self, sub_batch: list[PendingItem]) -> None:
        verb = self.bulk_action.value
        pairs = [(item.action(verb), self._document(item)) for item in sub_batch]
        self._bulk_requests += 1
        response = await self.store.bulk(pairs)

        failed = [
            (position, result)
            for position, result in response.failed_items(
                tolerate_conflicts=self.bulk_action is BulkAction.CREATE
            )
            if position < len(sub_batch)
        ]
        if not failed and response.errors and len(response.items) != len(sub_batch):
            raise BulkWriteError(
                f"Bulk response reported errors for {len(response.items)} items, "
                f"sent {len(sub_batch)}"
            )
        if not failed:
            return

        for position, result in failed:
            item = sub_batch[position]
            logger.error(
                "Document rejected by the store",
                extra={
                    "stream": item.event.stream_name,
                    "key": item.document_id,
                    "index": item.container,
                    "status": result.get("status"),
                    "error": result.get("error"),
                },
            )
        raise BulkWriteError(
            f"{len(failed)} of {len(sub_batch)} documents were rejected",
            failed_keys=[sub_batch[position].document_id for position, _ in failed],
        )

    def _requeue(self, batch: list[PendingItem], sizes: list[int]) -> None:
        self._items[:0] = batch
        self._sizes[:0] = sizes
        self._pending_bytes += sum(sizes)

    def _check_invariant(self) -> None:
        if len(self._items) != len(self._sizes):
            logger.critical(
                "Pending queue corrupted, documents and routing metadata differ in length",
                extra={"items": len(self._items), "sizes": len(self._sizes)},
            )
            raise QueueInvariantError(
                f"Pending queue corrupted: {len(self._items)} items, {len(self._sizes)} sizes"
            )

    # Index lifecycle

    async def ensure_container_exists(self, name: str) -> str:
        """Create an index if it does not exist, at most once per name.

        Concurrent callers for the same name share one creation. A failed
        creation is forgotten so the next call retries it.

        Args:
            name: Index name

        Returns:
            The index name once it exists

        Raises:
            DocumentStoreError: If checking or creating the index failed
        """
        future = self._containers.get(name)
        if future is not None:
            return await future

        future = asyncio.get_running_loop().create_future()
        self._containers[name] = future
        try:
            if not await self.store.index_exists(name):
                logger.info("Index does not exist, creating", extra={"index": name})
                await self.store.create_index(name, self.mapping)
        except asyncio.CancelledError:
            del self._containers[name]
            future.cancel()
            raise
        except Exception as e:
            del self._containers[name]
            logger.error(f"Could not create index {name}: {e}", extra={"index": name})
            future.set_exception(e)
            # Mark retrieved, waiters (if any) still receive it
            future.exception()
            raise

        future.set_result(name)
        return name

    # Observers

    def add_observer(self, observer: Observer) -> None:
        """Register a coroutine called with every confirmed batch."""
        self._observers.append(observer)

    async def _notify_observers(self, batch: list[PendingItem]) -> None:
        for observer in list(self._observers):
            try:
                await observer(list(batch))
            except Exception as e:
                logger.error(
                    f"Post-flush observer failed: {e}",
                    exc_info=True,
                    extra={
                        "observer": getattr(observer, "__qualname__", repr(observer)),
                        "first_key": batch[0].document_id,
                        "last_key": batch[-1].document_id,
                    },
                )

    # Lifecycle

    def begin_periodic_flush(self, interval: float) -> None:
        """Start flushing every `interval` seconds."""
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_loop(interval))
        logger.debug("Periodic flush started", extra={"interval": interval})

    async def _periodic_loop(self, interval: float) -> None:
        while self._fatal_error is None:
            await asyncio.sleep(interval)
            await self._background_flush("periodic timer")
        logger.critical("Periodic flush stopped after a fatal error")

    async def stop(self) -> None:
        """Stop the periodic and idle timers (queued items stay queued)."""
        self._cancel_idle_timer()
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None

    async def drain(self) -> int:
        """Flush until the queue is empty.

        Returns:
            Number of items written

        Raises:
            FlushError / DocumentStoreError: On the first failed flush
        """
        total = 0
        while self._items:
            total += await self.flush()
        return total

    async def await_idle(self) -> None:
        """Stop accepting events, wait for in-flight work and flush everything.

        Raises:
            FlushError / DocumentStoreError: If the final flush failed
        """
        self._state = EngineState.DRAINING
        await self.stop()

        if self._pump_task is not None and not self._pump_task.done():
            await asyncio.gather(self._pump_task, return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        logger.info("Flushing remaining queue", extra={"pending": len(self._items)})
        try:
            await self.drain()
        except (FlushError, DocumentStoreError):
            logger.error(
                "Unable to flush remaining queue",
                extra={"pending": len(self._items)},
            )
            raise
        logger.info("Flushed remaining queue")

    # Introspection

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def fatal_error(self) -> BaseException | None:
        """The error that stopped background flushing, if any."""
        return self._fatal_error

    @property
    def pending(self) -> list[PendingItem]:
        """Snapshot of queued items, oldest first."""
        return list(self._items)

    @property
    def pending_bytes(self) -> int:
        return self._pending_bytes

    @property
    def stats(self) -> dict[str, Any]:
        """Get engine statistics."""
        return {
            "state": self._state.value,
            "pending": len(self._items),
            "pending_bytes": self._pending_bytes,
            "enqueued_count": self._enqueued_count,
            "flushed_count": self._flushed_count,
            "failed_flushes": self._failed_flushes,
            "bulk_requests": self._bulk_requests,
            "indices": sorted(
                name for name, future in self._containers.items()
                if future.done() and not future.cancelled()
            ),
        }
