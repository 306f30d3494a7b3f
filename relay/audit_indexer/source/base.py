"""
Base protocol and types for the relational source.

This module defines the SourceClient protocol that the PostgreSQL and
in-memory backends implement, along with notifications, statements and
errors.

Invariants:
    - Rows are returned as plain dicts in column order
    - hstore columns arrive already decoded into flat string-keyed dicts
    - A cursor is read in order and is exhausted when read() returns []
    - listen() yields notifications in the order the source delivered them

How to change safely:
    - Protocol changes require updating all implementations
    - New statement kinds must be supported by InMemorySource as well
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Protocol,
    runtime_checkable,
)


class SourceError(Exception):
    """Base exception for source operations."""
    pass


class SourceConnectionError(SourceError):
    """Connection to the source failed or was lost."""
    pass


class StatementKind(Enum):
    """Shapes of the statements the pipeline issues."""

    SCAN = "scan"
    FETCH = "fetch"
    STREAMS = "streams"
    COUNT_AFTER = "count_after"
    DELETE_KEYS = "delete_keys"
    DELETE_RANGE = "delete_range"


@dataclass(frozen=True)
class Statement:
    """A SQL statement with its bind parameters.

    Attributes:
        kind: Which pipeline statement this is
        sql: Statement text with $n placeholders
        params: Bind parameters in placeholder order
    """

    kind: StatementKind
    sql: str
    params: tuple[Any, ...] = field(default_factory=tuple)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.sql}"


@dataclass(frozen=True)
class Notification:
    """A LISTEN/NOTIFY message.

    Attributes:
        channel: Channel the notification arrived on
        payload: Raw payload text
    """

    channel: str
    payload: str


@runtime_checkable
class Cursor(Protocol):
    """Server-side cursor over a statement's rows."""

    @abstractmethod
    async def read(self, n: int) -> list[dict[str, Any]]:
        """Read up to n rows, [] once exhausted."""
        ...


@runtime_checkable
class SourceClient(Protocol):
    """Protocol for relational source backends.

    Example:
        >>> source = PostgresSource(config)
        >>> await source.connect()
        >>> async with source.open_cursor(statements.scan_after(100)) as cursor:
        ...     rows = await cursor.read(500)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the source.

        Raises:
            SourceConnectionError: If the source is unreachable
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release all connections."""
        ...

    @abstractmethod
    def listen(self, channels: list[str]) -> AsyncIterator[Notification]:
        """Subscribe to notification channels.

        The iterator ends after unlisten() and raises SourceConnectionError
        if the connection is lost.
        """
        ...

    @abstractmethod
    async def unlisten(self) -> None:
        """Stop the active listen() iterator."""
        ...

    @abstractmethod
    async def query(self, statement: Statement) -> list[dict[str, Any]]:
        """Run a statement and return all rows."""
        ...

    @abstractmethod
    async def execute(self, statement: Statement) -> int:
        """Run a statement and return the affected row count."""
        ...

    @abstractmethod
    def open_cursor(self, statement: Statement) -> AsyncContextManager[Cursor]:
        """Open a cursor for a statement (closed when the context exits)."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected."""
        ...


def create_source(config: Any) -> SourceClient:
    """Factory function to create the source from configuration.

    Args:
        config: SourceConfig instance

    Returns:
        PostgresSource for the configured database
    """
    from .postgres import PostgresSource

    return PostgresSource(config)
