"""
Historic backfill of the audit table.

On startup everything written to the audit table while the indexer was
down is replayed through a server-side cursor, oldest first, into the
flush engine. The live listener is started as soon as the backfill has
been enqueued, while part of it may still be waiting to be flushed, so
live and backfilled events briefly share the engine queue. A row can be
both backfilled and notified; re-indexing it overwrites the same document.

Invariants:
    - Rows come out ordered by the ordering column, then the primary key
    - Only rows with a primary key above the watermark are read
    - Memory is bounded by the page size plus the engine queue
    - stop() takes effect before the next row, also while waiting for
      queue capacity
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from ..events import ChangeEvent, EventColumns
from ..sink.flush import BatchFlushEngine
from .base import SourceClient
from .statements import AuditStatements

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Outcome of one backfill.

    Attributes:
        rows: Number of events enqueued
        max_key: Highest primary key enqueued (None when nothing was read)
        stopped: Whether stop() ended the scan early
    """

    rows: int = 0
    max_key: int | None = None
    stopped: bool = False


class HistoricScanner:
    """Reads rows newer than the watermark and feeds them to the engine.

    Example:
        >>> scanner = HistoricScanner(source, statements, columns, engine, page_size=500)
        >>> result = await scanner.run(watermark.last_confirmed_key)
        >>> result.rows, result.max_key
        (10, 110)
    """

    def __init__(
        self,
        source: SourceClient,
        statements: AuditStatements,
        columns: EventColumns,
        engine: BatchFlushEngine,
        page_size: int = 500,
    ) -> None:
        self.source = source
        self.statements = statements
        self.columns = columns
        self.engine = engine
        self.page_size = page_size
        self._stopping = False

    async def events(self, since_key_exclusive: int | None) -> AsyncIterator[ChangeEvent]:
        """Yield events with a primary key above since_key_exclusive.

        Each call opens a fresh cursor. None reads the whole table.
        """
        statement = self.statements.scan_after(since_key_exclusive)
        async with self.source.open_cursor(statement) as cursor:
            while not self._stopping:
                rows = await cursor.read(self.page_size)
                if not rows:
                    return
                for row in rows:
                    if self._stopping:
                        return
                    yield ChangeEvent.from_row(row, self.columns)

    async def run(self, since_key_exclusive: int | None) -> ScanResult:
        """Enqueue every event newer than the watermark, in order.

        Returns:
            ScanResult with the row count and the highest key enqueued

        Raises:
            SourceError: If the cursor failed
        """
        logger.info(
            "Starting historic backfill",
            extra={"after_key": since_key_exclusive, "page_size": self.page_size},
        )
        result = ScanResult()
        async for event in self.events(since_key_exclusive):
            self.engine.enqueue(event)
            result.rows += 1
            if result.max_key is None or event.primary_key > result.max_key:
                result.max_key = event.primary_key
            await self.engine.wait_for_capacity(self.page_size * 2, lambda: self._stopping)
        result.stopped = self._stopping

        logger.info(
            f"Historic backfill {'stopped' if result.stopped else 'finished'}, "
            f"{result.rows} rows enqueued",
            extra={"rows": result.rows, "max_key": result.max_key},
        )
        return result

    def stop(self) -> None:
        """Stop before the next page; enqueued events stay queued."""
        if not self._stopping:
            logger.info("Stopping historic backfill")
        self._stopping = True

    @property
    def stopping(self) -> bool:
        return self._stopping
