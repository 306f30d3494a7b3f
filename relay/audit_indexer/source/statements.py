"""
SQL statements issued against the audit table.

All identifiers come from configuration and are quoted here; values are
always bind parameters.
"""

from __future__ import annotations

from collections.abc import Sequence

from ..events import EventColumns, KeyRange
from .base import Statement, StatementKind


def quote_ident(name: str) -> str:
    """Quote an SQL identifier (double quotes, embedded quotes doubled)."""
    if not name or "\x00" in name:
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return '"' + name.replace('"', '""') + '"'


class AuditStatements:
    """Builds the statements for one audit table.

    Example:
        >>> statements = AuditStatements("audit", "logged_actions", columns)
        >>> statements.scan_after(100).sql
        'SELECT * FROM "audit"."logged_actions" WHERE "event_id" > $1 ORDER BY ...'
    """

    def __init__(self, schema: str, table: str, columns: EventColumns) -> None:
        self.columns = columns
        self.table = f"{quote_ident(schema)}.{quote_ident(table)}"
        self._uid = quote_ident(columns.uid)
        order = [quote_ident(columns.order_by)]
        if columns.order_by != columns.uid:
            order.append(self._uid)
        self._order_by = ", ".join(f"{c} ASC" for c in order)

    def scan_after(self, since_key_exclusive: int | None) -> Statement:
        """Rows newer than a key (every row when the key is None), in order."""
        if since_key_exclusive is None:
            return Statement(
                StatementKind.SCAN,
                f"SELECT * FROM {self.table} ORDER BY {self._order_by}",
            )
        return Statement(
            StatementKind.SCAN,
            f"SELECT * FROM {self.table} WHERE {self._uid} > $1 ORDER BY {self._order_by}",
            (since_key_exclusive,),
        )

    def fetch(self, key: int) -> Statement:
        """The row with exactly this key."""
        return Statement(
            StatementKind.FETCH,
            f"SELECT * FROM {self.table} WHERE {self._uid} = $1",
            (key,),
        )

    def stream_names(self) -> Statement:
        """Distinct stream names present in the table."""
        stream = quote_ident(self.columns.stream)
        return Statement(
            StatementKind.STREAMS,
            f"SELECT DISTINCT {stream} AS stream_name FROM {self.table} "
            f"WHERE {stream} IS NOT NULL",
        )

    def count_after(self, since_key_exclusive: int | None) -> Statement:
        """Number of rows newer than a key."""
        if since_key_exclusive is None:
            return Statement(StatementKind.COUNT_AFTER, f"SELECT count(*) AS total FROM {self.table}")
        return Statement(
            StatementKind.COUNT_AFTER,
            f"SELECT count(*) AS total FROM {self.table} WHERE {self._uid} > $1",
            (since_key_exclusive,),
        )

    def delete_keys(self, keys: Sequence[int]) -> Statement:
        """Delete rows by key set, one bind parameter per key."""
        if not keys:
            raise ValueError("delete_keys needs at least one key")
        placeholders = ",".join(f"${i}" for i in range(1, len(keys) + 1))
        return Statement(
            StatementKind.DELETE_KEYS,
            f"DELETE FROM {self.table} WHERE {self._uid} IN ({placeholders})",
            tuple(keys),
        )

    def delete_range(self, key_range: KeyRange) -> Statement:
        """Delete rows with low_exclusive < key <= high_inclusive."""
        if key_range.low_exclusive is None:
            return Statement(
                StatementKind.DELETE_RANGE,
                f"DELETE FROM {self.table} WHERE {self._uid} <= $1",
                (key_range.high_inclusive,),
            )
        return Statement(
            StatementKind.DELETE_RANGE,
            f"DELETE FROM {self.table} WHERE {self._uid} > $1 AND {self._uid} <= $2",
            (key_range.low_exclusive, key_range.high_inclusive),
        )
