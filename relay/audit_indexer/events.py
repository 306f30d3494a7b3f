"""
Change event model shared by every pipeline component.

A ChangeEvent is one captured audit row. It is created by the historic
scanner (from a cursor row) or the live listener (from a notification
payload or a keyed re-fetch) and consumed exactly once by the flush engine,
which wraps it in a PendingItem carrying its destination container.

Invariants:
    - ChangeEvent is immutable once created
    - The source primary key is the destination document id
    - Attribute order follows the source row's column order

How to change safely:
    - New document fields must be derived from attributes, not invented
    - Keep json_default() total for every type asyncpg can return
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from types import MappingProxyType
from typing import Any


@dataclass(frozen=True)
class EventColumns:
    """Column names used to interpret an audit row.

    Attributes:
        uid: Primary key column (document id and watermark)
        timestamp: Timestamp column (watermark search sort key)
        order_by: Column the backfill is ordered by
        stream: Column naming the logical stream (usually the audited table)
        default_stream: Stream name used when a row has no stream column
    """

    uid: str = "event_id"
    timestamp: str = "action_timestamp"
    order_by: str = "action_timestamp"
    stream: str = "table_name"
    default_stream: str = "logged_actions"


@dataclass(frozen=True)
class ChangeEvent:
    """One captured audit row.

    Attributes:
        stream_name: Logical stream (routes the event to its container)
        primary_key: Source primary key
        ordering_key: Value of the ordering column
        timestamp: Value of the timestamp column
        attributes: Read-only view of the full row
    """

    stream_name: str
    primary_key: int
    ordering_key: Any
    timestamp: Any
    attributes: Mapping[str, Any]

    @classmethod
    def from_row(cls, row: Mapping[str, Any], columns: EventColumns) -> ChangeEvent:
        """Build an event from a source row or decoded notification payload.

        Args:
            row: Column name to value mapping
            columns: Column names to interpret the row with

        Returns:
            ChangeEvent wrapping a copy of the row

        Raises:
            ValueError: If the row has no integer primary key
        """
        raw_key = row.get(columns.uid)
        if raw_key is None or isinstance(raw_key, bool):
            raise ValueError(f"Row has no '{columns.uid}' primary key")
        try:
            primary_key = int(raw_key)
        except (TypeError, ValueError):
            raise ValueError(f"Primary key '{columns.uid}' is not an integer: {raw_key!r}")

        stream_name = row.get(columns.stream) or columns.default_stream

        return cls(
            stream_name=str(stream_name),
            primary_key=primary_key,
            ordering_key=row.get(columns.order_by),
            timestamp=row.get(columns.timestamp),
            attributes=MappingProxyType(dict(row)),
        )

    def to_document(
        self,
        label_name: str | None = None,
        label: str | None = None,
    ) -> dict[str, Any]:
        """Render the destination document.

        Args:
            label_name: Optional attribute stamped onto every document
            label: Value for the label attribute

        Returns:
            Plain dict of all attributes (plus the label when configured)
        """
        document = dict(self.attributes)
        if label_name and label is not None:
            document[label_name] = label
        return document


@dataclass(frozen=True)
class PendingItem:
    """A queued event and where it will be written.

    Attributes:
        container: Destination index name
        document_id: Destination document id (the source primary key)
        event: The queued event
    """

    container: str
    document_id: int
    event: ChangeEvent

    def action(self, verb: str) -> dict[str, Any]:
        """Bulk action line for this item."""
        return {verb: {"_index": self.container, "_id": str(self.document_id)}}

    def __str__(self) -> str:
        return f"{self.event.stream_name}:{self.document_id}->{self.container}"


@dataclass(frozen=True)
class Watermark:
    """Highest key confirmed present in the destination.

    Attributes:
        stream_name: Container pattern the watermark was read from
        last_confirmed_key: Highest confirmed key, None for a fresh store
    """

    stream_name: str
    last_confirmed_key: int | None = None

    @property
    def found(self) -> bool:
        return self.last_confirmed_key is not None


@dataclass(frozen=True)
class KeyRange:
    """Half-open key range (low_exclusive, high_inclusive].

    A missing lower bound means "from the first row".
    """

    low_exclusive: int | None
    high_inclusive: int

    def __post_init__(self) -> None:
        if self.low_exclusive is not None and self.low_exclusive > self.high_inclusive:
            raise ValueError(
                f"Invalid key range ({self.low_exclusive}, {self.high_inclusive}]"
            )

    @property
    def empty(self) -> bool:
        return self.low_exclusive is not None and self.low_exclusive == self.high_inclusive

    def __str__(self) -> str:
        low = "-inf" if self.low_exclusive is None else str(self.low_exclusive)
        return f"({low}, {self.high_inclusive}]"


@dataclass(frozen=True)
class DeletionJob:
    """Source rows to delete after they were confirmed indexed.

    Exactly one of keys / key_range is set.
    """

    keys: tuple[int, ...] | None = None
    key_range: KeyRange | None = None

    def __post_init__(self) -> None:
        if (self.keys is None) == (self.key_range is None):
            raise ValueError("DeletionJob needs exactly one of keys or key_range")

    @classmethod
    def for_batch(cls, batch: list[PendingItem]) -> DeletionJob:
        return cls(keys=tuple(item.document_id for item in batch))

    @classmethod
    def for_range(cls, key_range: KeyRange) -> DeletionJob:
        return cls(key_range=key_range)


def json_default(value: Any) -> Any:
    """json.dumps hook for the types rows may carry."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, Mapping):
        return dict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_json(value: Any) -> bytes:
    """Compact JSON encoding used for bulk bodies and size accounting."""
    return json.dumps(value, separators=(",", ":"), default=json_default).encode("utf-8")
