"""
PostgreSQL source implementation.

Uses asyncpg with two kinds of connections:
- A pool for queries, cursors and deletes
- One dedicated connection that holds the LISTEN subscriptions

Keeping LISTEN on its own connection means key lookups for the big-payload
channel never wait behind (or interleave with) the notification stream.

Invariants:
    - hstore columns are decoded to dicts on every pool connection when the
      hstore extension is installed
    - Cursors run inside a read transaction on one pooled connection
    - Losing the LISTEN connection surfaces as SourceConnectionError from
      the listen() iterator

How to change safely:
    - Test against a real PostgreSQL (tests/e2e) before deploying
    - Keep library exceptions wrapped in SourceError at this boundary
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import asyncpg

from .base import (
    Notification,
    SourceConnectionError,
    SourceError,
    Statement,
)

logger = logging.getLogger(__name__)

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _affected_rows(status: str) -> int:
    """Row count from a command status tag such as 'DELETE 42'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class _PostgresCursor:
    """Cursor adapter returning plain dict rows."""

    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    async def read(self, n: int) -> list[dict[str, Any]]:
        try:
            records = await self._cursor.fetch(n)
        except _DRIVER_ERRORS as e:
            raise SourceError(f"Cursor read failed: {e}") from e
        return [dict(record) for record in records]


class PostgresSource:
    """asyncpg implementation of the SourceClient protocol.

    Attributes:
        config: SourceConfig instance

    Example:
        >>> source = PostgresSource(SourceConfig.from_env())
        >>> await source.connect()
        >>> async for note in source.listen(["audit", "audit_id"]):
        ...     print(note.channel, note.payload)
    """

    def __init__(self, config: Any) -> None:
        self.config = config
        self._pool: asyncpg.Pool | None = None
        self._listen_conn: asyncpg.Connection | None = None
        self._listen_queue: asyncio.Queue | None = None
        self._hstore_schema: str | None = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None and self._listen_conn is not None

    def _connect_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.config.host,
            "port": self.config.port,
            "database": self.config.database,
            "user": self.config.username,
            "password": self.config.password,
        }
        if self.config.ssl:
            kwargs["ssl"] = "require"
        return kwargs

    async def connect(self) -> None:
        """Open the LISTEN connection and the query pool.

        Raises:
            SourceConnectionError: If PostgreSQL is unreachable
        """
        if self.is_connected:
            return

        try:
            self._listen_conn = await asyncpg.connect(**self._connect_kwargs())
            self._hstore_schema = await self._find_hstore_schema(self._listen_conn)
            self._pool = await asyncpg.create_pool(
                min_size=1,
                max_size=self.config.pool_size,
                init=self._init_connection,
                **self._connect_kwargs(),
            )
        except _DRIVER_ERRORS as e:
            await self.close()
            raise SourceConnectionError(
                f"Could not connect to PostgreSQL at {self.config.host}:{self.config.port}: {e}"
            ) from e

        logger.info(
            "PostgreSQL connected",
            extra={
                "host": self.config.host,
                "database": self.config.database,
                "hstore": self._hstore_schema is not None,
            },
        )

    async def close(self) -> None:
        """Close the pool and the LISTEN connection."""
        if self._listen_queue is not None:
            self._listen_queue.put_nowait(None)
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        if self._listen_conn is not None:
            await self._listen_conn.close()
            self._listen_conn = None
        logger.debug("PostgreSQL connections closed")

    async def _find_hstore_schema(self, conn: asyncpg.Connection) -> str | None:
        row = await conn.fetchrow(
            "SELECT n.nspname AS schema FROM pg_type t "
            "JOIN pg_namespace n ON n.oid = t.typnamespace WHERE t.typname = $1",
            "hstore",
        )
        if row is None:
            logger.info("Cannot find hstore type id, will not process hstore data")
            return None
        logger.info("Found hstore type, hstore processing enabled", extra={"schema": row["schema"]})
        return row["schema"]

    async def _init_connection(self, conn: asyncpg.Connection) -> None:
        if self._hstore_schema is not None:
            await conn.set_builtin_type_codec(
                "hstore", schema=self._hstore_schema, codec_name="pg_contrib.hstore"
            )

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise SourceConnectionError("Not connected")
        return self._pool

    async def listen(self, channels: list[str]) -> AsyncIterator[Notification]:
        """Subscribe to channels and yield notifications in arrival order.

        Args:
            channels: Channel names to LISTEN on

        Yields:
            Notification for each NOTIFY received

        Raises:
            SourceConnectionError: If the LISTEN connection is lost
        """
        conn = self._listen_conn
        if conn is None:
            raise SourceConnectionError("Not connected")

        queue: asyncio.Queue = asyncio.Queue()
        self._listen_queue = queue

        def on_notify(connection: Any, pid: int, channel: str, payload: str) -> None:
            queue.put_nowait(Notification(channel=channel, payload=payload))

        def on_terminate(connection: Any) -> None:
            queue.put_nowait(SourceConnectionError("PostgreSQL LISTEN connection lost"))

        conn.add_termination_listener(on_terminate)
        try:
            for channel in channels:
                await conn.add_listener(channel, on_notify)
                logger.info("LISTEN statement completed", extra={"channel": channel})
        except _DRIVER_ERRORS as e:
            conn.remove_termination_listener(on_terminate)
            self._listen_queue = None
            raise SourceConnectionError(f"LISTEN failed: {e}") from e

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
            conn.remove_termination_listener(on_terminate)
            if not conn.is_closed():
                for channel in channels:
                    try:
                        await conn.remove_listener(channel, on_notify)
                    except _DRIVER_ERRORS as e:
                        logger.warning(f"UNLISTEN {channel} failed: {e}")

    async def unlisten(self) -> None:
        """End the active listen() iterator."""
        if self._listen_queue is not None:
            self._listen_queue.put_nowait(None)

    async def query(self, statement: Statement) -> list[dict[str, Any]]:
        """Run a statement on a pooled connection and return all rows."""
        pool = self._require_pool()
        try:
            records = await pool.fetch(statement.sql, *statement.params)
        except _DRIVER_ERRORS as e:
            raise SourceError(f"Query failed ({statement.kind.value}): {e}") from e
        return [dict(record) for record in records]

    async def execute(self, statement: Statement) -> int:
        """Run a statement and return the affected row count."""
        pool = self._require_pool()
        try:
            status = await pool.execute(statement.sql, *statement.params)
        except _DRIVER_ERRORS as e:
            raise SourceError(f"Statement failed ({statement.kind.value}): {e}") from e
        return _affected_rows(status)

    @asynccontextmanager
    async def open_cursor(self, statement: Statement) -> AsyncIterator[_PostgresCursor]:
        """Open a server-side cursor inside a read transaction."""
        pool = self._require_pool()
        try:
            conn = await pool.acquire()
        except _DRIVER_ERRORS as e:
            raise SourceConnectionError(f"Could not acquire connection: {e}") from e

        try:
            async with conn.transaction(readonly=True):
                try:
                    cursor = await conn.cursor(statement.sql, *statement.params)
                except _DRIVER_ERRORS as e:
                    raise SourceError(f"Could not open cursor ({statement.kind.value}): {e}") from e
                yield _PostgresCursor(cursor)
        finally:
            await pool.release(conn)
