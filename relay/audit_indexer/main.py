"""
Audit Indexer - Main entry point.

This module starts the indexer with all components:
- Watermark resolution (Elasticsearch -> resume key)
- Historic backfill (PostgreSQL cursor -> flush engine)
- Optional ranged deletion of the drained backlog
- Live capture (LISTEN/NOTIFY -> flush engine)
- Periodic flush and status reporting

Usage:
    python -m relay.audit_indexer.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Live capture only starts after the backfill was enqueued
    - Shutdown always attempts a final flush of the queue
    - Any fatal error ends the process with a non-zero exit code

How to change safely:
    - Keep the shutdown order: stop producers, flush, close connections
    - Test shutdown and fatal paths with the in-memory collaborators
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .cleanup import DeletionCoordinator, DeletionError
from .config import DeletionMode, IndexerConfig
from .events import KeyRange
from .sink import (
    BatchFlushEngine,
    ContainerNaming,
    DocumentStoreClient,
    DocumentStoreError,
    FlushError,
    WatermarkError,
    WatermarkResolver,
    create_document_store,
)
from .source import (
    AuditStatements,
    HistoricScanner,
    LiveCaptureListener,
    SourceClient,
    SourceError,
    create_source,
)

logger = logging.getLogger(__name__)

# Seconds the listener gets to finish its current notification on shutdown
LISTENER_STOP_TIMEOUT = 5.0


class IndexerError(Exception):
    """The indexer could not start."""
    pass


def setup_logging(config: IndexerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Indexer configuration
    """
    observability = config.observability

    if observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    elif observability.log_timestamp:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    else:
        formatter = logging.Formatter("%(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(observability.log_level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class Indexer:
    """Audit Indexer orchestrator.

    Manages the lifecycle of all components:
    - Source and document store connections
    - Backfill, then live capture, feeding one flush engine
    - Background tasks (listener, periodic flush, status updates)

    Attributes:
        config: Indexer configuration
        source: PostgreSQL (or in-memory) source
        store: Elasticsearch (or in-memory) document store
        engine: Batch flush engine
        scanner: Historic backfill
        listener: Live capture
        deleter: Source row deletion

    Example:
        >>> indexer = Indexer(config)
        >>> exit_code = await indexer.run()
    """

    def __init__(
        self,
        config: IndexerConfig | None = None,
        source: SourceClient | None = None,
        store: DocumentStoreClient | None = None,
    ) -> None:
        """Initialize the indexer.

        Args:
            config: Optional configuration (loaded from env if not provided)
            source: Optional source client (created from config if not provided)
            store: Optional document store (created from config if not provided)
        """
        self.config = config or IndexerConfig.from_env()
        self.source = source or create_source(self.config.source)
        self.store = store or create_document_store(self.config.store)

        self._running = False
        self._stopped = False
        self._clean_stop = True
        self._shutdown_event = asyncio.Event()
        self._fatal_error: BaseException | None = None

        # Components (initialized in start())
        self.statements: AuditStatements | None = None
        self.naming: ContainerNaming | None = None
        self.engine: BatchFlushEngine | None = None
        self.resolver: WatermarkResolver | None = None
        self.scanner: HistoricScanner | None = None
        self.listener: LiveCaptureListener | None = None
        self.deleter: DeletionCoordinator | None = None

        # Background tasks
        self._listener_task: asyncio.Task | None = None
        self._status_task: asyncio.Task | None = None

    def _build(self) -> None:
        source_config = self.config.source
        store_config = self.config.store
        columns = source_config.columns

        self.statements = AuditStatements(source_config.schema, source_config.table, columns)
        self.naming = ContainerNaming.from_config(store_config)
        self.engine = BatchFlushEngine(
            store=self.store,
            naming=self.naming,
            batch_config=self.config.batch,
            bulk_action=store_config.bulk_action,
            label_name=store_config.label_name,
            label=store_config.label,
            mapping=store_config.mapping,
            on_fatal=self._fail,
        )
        self.resolver = WatermarkResolver(
            store=self.store,
            naming=self.naming,
            columns=columns,
            engine=self.engine,
            pre_create=store_config.pre_create_indices,
            label_name=store_config.label_name,
            label=store_config.label,
        )
        self.scanner = HistoricScanner(
            source=self.source,
            statements=self.statements,
            columns=columns,
            engine=self.engine,
            page_size=self.config.batch.queue_limit,
        )
        self.listener = LiveCaptureListener(
            source=self.source,
            statements=self.statements,
            columns=columns,
            engine=self.engine,
            small_channel=source_config.listen_channel,
            big_channel=source_config.listen_channel_id,
        )
        self.deleter = DeletionCoordinator(
            source=self.source,
            statements=self.statements,
            mode=self.config.deletion.mode,
            chunk_size=self.config.deletion.chunk_size,
        )
        if self.deleter.mode is DeletionMode.PER_BATCH:
            self.engine.add_observer(self.deleter.on_batch_confirmed)

    async def start(self) -> None:
        """Connect, backfill and start live capture.

        Raises:
            IndexerError: If any startup step failed
        """
        if self._running:
            logger.warning("Indexer already running")
            return

        logger.info("Starting audit indexer")
        self.config.log_config()

        try:
            await self.source.connect()
            logger.info("Source connected")
            await self.store.connect()
            logger.info("Document store client ready")

            self._build()

            watermark = await self.resolver.resolve(await self._stream_names())
            result = await self.scanner.run(watermark.last_confirmed_key)

            if self._shutdown_event.is_set():
                logger.info("Shutdown requested during backfill, not starting live capture")
                return

            if self.deleter.mode is DeletionMode.HISTORIC_RANGE and result.max_key is not None:
                await self.engine.drain()
                await self._delete_backfilled(
                    KeyRange(watermark.last_confirmed_key, result.max_key)
                )

            self._listener_task = asyncio.create_task(self.listener.start())
            self._listener_task.add_done_callback(self._on_listener_done)

            self.engine.begin_periodic_flush(self.config.batch.queue_timeout_seconds)

            interval = self.config.observability.status_interval_seconds
            if interval > 0:
                self._status_task = asyncio.create_task(self._status_loop(interval))

            self._running = True
            logger.info("Audit indexer started successfully")

        except (SourceError, DocumentStoreError, WatermarkError, FlushError, ValueError) as e:
            raise IndexerError(f"Indexer startup failed: {e}") from e

    async def _delete_backfilled(self, key_range: KeyRange) -> None:
        """Delete the drained backlog; a failure leaves the rows in place."""
        try:
            await self.deleter.on_historic_drained(key_range)
        except DeletionError as e:
            logger.error(
                f"Backfilled rows were indexed but not deleted: {e}",
                extra={"range": str(key_range)},
            )

    async def _stream_names(self) -> list[str]:
        """Streams present in the audit table (only needed for per-stream indices)."""
        if not (self.config.store.pre_create_indices and self.naming.append_stream_name):
            return []
        rows = await self.source.query(self.statements.stream_names())
        return [row["stream_name"] for row in rows]

    async def run(self) -> int:
        """Run until shutdown is requested or a fatal error occurs.

        Returns:
            Process exit code
        """
        try:
            await self.start()
        except IndexerError as e:
            logger.critical(str(e), exc_info=e.__cause__)
            await self.stop()
            return 1

        await self._shutdown_event.wait()
        clean = await self.stop()
        return 0 if clean and self._fatal_error is None else 1

    async def stop(self) -> bool:
        """Stop the indexer gracefully.

        Returns:
            False if the final flush failed
        """
        if self._stopped:
            return self._clean_stop
        self._stopped = True

        logger.info("Stopping audit indexer")

        if self.scanner:
            self.scanner.stop()

        if self.listener:
            await self.listener.stop()
        if self._listener_task is not None:
            _, pending = await asyncio.wait({self._listener_task}, timeout=LISTENER_STOP_TIMEOUT)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self._status_task is not None:
            self._status_task.cancel()
            await asyncio.gather(self._status_task, return_exceptions=True)

        if self.engine:
            try:
                await self.engine.await_idle()
            except (FlushError, DocumentStoreError) as e:
                self._clean_stop = False
                logger.critical(
                    f"Final flush failed, {len(self.engine.pending)} events were not indexed: {e}",
                    extra={"pending": len(self.engine.pending)},
                )

        try:
            await self.store.close()
        except DocumentStoreError as e:
            logger.error(f"Error closing document store: {e}")
        try:
            await self.source.close()
        except SourceError as e:
            logger.error(f"Error closing source: {e}")

        self._running = False
        logger.info("Audit indexer stopped")
        return self._clean_stop

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        if self.scanner:
            self.scanner.stop()
        self._shutdown_event.set()

    def _fail(self, error: BaseException) -> None:
        """Record a fatal runtime error and shut down."""
        if self._fatal_error is None:
            self._fatal_error = error
            logger.critical(f"Fatal error, shutting down: {error}")
        if self.scanner:
            self.scanner.stop()
        self._shutdown_event.set()

    def _on_listener_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._fail(error)
        elif not self._stopped:
            self._fail(IndexerError("Listener ended unexpectedly"))

    async def _status_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            logger.info("Status update", extra=self.status())

    def status(self) -> dict:
        """Snapshot of pipeline counters."""
        status = dict(self.engine.stats) if self.engine else {}
        if self.listener:
            status.update({f"notifications_{key}": value for key, value in self.listener.stats.items()})
        if self.deleter:
            status["rows_deleted"] = self.deleter.deleted_count
        return status

    @property
    def fatal_error(self) -> BaseException | None:
        return self._fatal_error


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = IndexerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # Create indexer
    indexer = Indexer(config)

    # Setup signal handlers
    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        indexer.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run indexer
    exit_code = 1
    try:
        exit_code = loop.run_until_complete(indexer.run())
    except KeyboardInterrupt:
        exit_code = 0 if loop.run_until_complete(indexer.stop()) else 1
    finally:
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
