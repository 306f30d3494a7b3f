"""
In-memory source implementation for testing.

This module provides an in-memory audit table for:
- Unit tests
- Integration tests
- Local development without PostgreSQL

Statements are dispatched on their StatementKind and parameters, the SQL
text is not parsed.

Invariants:
    - All data is lost on process exit
    - Rows are returned as copies, callers never mutate the table
    - Notifications are delivered in publish order

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with SourceClient protocol
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from ..events import EventColumns
from .base import (
    Notification,
    SourceConnectionError,
    SourceError,
    Statement,
    StatementKind,
)

logger = logging.getLogger(__name__)


class _MemoryCursor:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self._rows = rows
        self._offset = 0
        self.reads = 0

    async def read(self, n: int) -> list[dict[str, Any]]:
        self.reads += 1
        page = self._rows[self._offset:self._offset + n]
        self._offset += len(page)
        return page


class InMemorySource:
    """In-memory implementation of SourceClient for testing.

    Attributes:
        columns: Column names of the simulated audit table
        executed: Every statement run through query()/execute()/open_cursor()

    Example:
        >>> source = InMemorySource(EventColumns())
        >>> await source.connect()
        >>> source.insert_row({"event_id": 1, "table_name": "users"})
        >>> await source.notify("audit", '{"event_id": 2}')
    """

    def __init__(self, columns: EventColumns) -> None:
        self.columns = columns
        self.executed: list[Statement] = []
        self._rows: dict[int, dict[str, Any]] = {}
        self._connected = False
        self._listen_queue: asyncio.Queue | None = None
        self._channels: list[str] = []
        self._failures: dict[StatementKind, Exception] = {}

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemorySource connected")

    async def close(self) -> None:
        self._connected = False
        await self.unlisten()
        logger.debug("InMemorySource closed")

    def _require_connected(self) -> None:
        if not self._connected:
            raise SourceConnectionError("Not connected")

    async def listen(self, channels: list[str]) -> AsyncIterator[Notification]:
        self._require_connected()
        queue: asyncio.Queue = asyncio.Queue()
        self._listen_queue = queue
        self._channels = list(channels)
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self._listen_queue = None
            self._channels = []

    async def unlisten(self) -> None:
        if self._listen_queue is not None:
            self._listen_queue.put_nowait(None)

    async def query(self, statement: Statement) -> list[dict[str, Any]]:
        self._require_connected()
        self.executed.append(statement)
        self._raise_injected(statement)

        if statement.kind is StatementKind.FETCH:
            row = self._rows.get(statement.params[0])
            return [dict(row)] if row is not None else []
        if statement.kind is StatementKind.STREAMS:
            names = []
            for row in self._rows.values():
                name = row.get(self.columns.stream)
                if name is not None and name not in names:
                    names.append(name)
            return [{"stream_name": name} for name in names]
        if statement.kind is StatementKind.COUNT_AFTER:
            return [{"total": len(self._scan(statement))}]
        if statement.kind is StatementKind.SCAN:
            return self._scan(statement)
        raise SourceError(f"Unsupported query kind: {statement.kind.value}")

    async def execute(self, statement: Statement) -> int:
        self._require_connected()
        self.executed.append(statement)
        self._raise_injected(statement)

        if statement.kind is StatementKind.DELETE_KEYS:
            keys = [key for key in statement.params if key in self._rows]
        elif statement.kind is StatementKind.DELETE_RANGE:
            if len(statement.params) == 1:
                low, high = None, statement.params[0]
            else:
                low, high = statement.params
            keys = [
                key for key in self._rows
                if (low is None or key > low) and key <= high
            ]
        else:
            raise SourceError(f"Unsupported execute kind: {statement.kind.value}")

        for key in keys:
            del self._rows[key]
        return len(keys)

    @asynccontextmanager
    async def open_cursor(self, statement: Statement) -> AsyncIterator[_MemoryCursor]:
        self._require_connected()
        self.executed.append(statement)
        self._raise_injected(statement)
        yield _MemoryCursor(self._scan(statement))

    def _scan(self, statement: Statement) -> list[dict[str, Any]]:
        since = statement.params[0] if statement.params else None
        rows = [
            dict(row) for key, row in self._rows.items()
            if since is None or key > since
        ]
        order_by = self.columns.order_by
        uid = self.columns.uid
        rows.sort(key=lambda row: (row.get(order_by) is None, row.get(order_by), row[uid]))
        return rows

    def _raise_injected(self, statement: Statement) -> None:
        failure = self._failures.pop(statement.kind, None)
        if failure is not None:
            raise failure

    # Testing helpers

    def insert_row(self, row: dict[str, Any]) -> None:
        """Insert (or replace) a row keyed by its primary key."""
        self._rows[int(row[self.columns.uid])] = dict(row)

    def remove_row(self, key: int) -> None:
        self._rows.pop(key, None)

    def keys(self) -> list[int]:
        """Primary keys currently in the table, ascending."""
        return sorted(self._rows)

    def statements(self, kind: StatementKind) -> list[Statement]:
        return [s for s in self.executed if s.kind is kind]

    def fail_next(self, kind: StatementKind, exception: Exception) -> None:
        """Make the next statement of this kind raise."""
        self._failures[kind] = exception

    @property
    def listening(self) -> bool:
        return self._listen_queue is not None

    async def notify(self, channel: str, payload: str) -> None:
        """Deliver a notification if a listener subscribed to the channel."""
        if self._listen_queue is not None and channel in self._channels:
            self._listen_queue.put_nowait(Notification(channel=channel, payload=payload))

    async def drop_connection(self) -> None:
        """Simulate losing the LISTEN connection."""
        if self._listen_queue is not None:
            self._listen_queue.put_nowait(SourceConnectionError("Connection lost"))

    async def wait_until_listening(self, timeout: float = 2.0) -> bool:
        """Wait for a listen() iterator to subscribe (testing helper)."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if self.listening:
                return True
            await asyncio.sleep(0.01)
        return False
