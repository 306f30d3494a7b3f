"""
PostgreSQL audit table source.

This module provides the pluggable source interface and the two ways
events leave the audit table:
- Historic backfill through a paged cursor
- Live capture over LISTEN/NOTIFY (small and big channels)

Implementations:
- PostgreSQL via asyncpg (production)
- In-memory (for testing)

Invariants:
    - All SQL is built by AuditStatements, never by callers
    - Driver exceptions are wrapped in SourceError at the client boundary
    - The LISTEN connection is never shared with queries

How to change safely:
    - New backends must implement the SourceClient protocol
    - Test statement changes against a real database (tests/e2e)
"""

from .base import (
    Cursor,
    Notification,
    SourceClient,
    SourceConnectionError,
    SourceError,
    Statement,
    StatementKind,
    create_source,
)
from .historic import HistoricScanner, ScanResult
from .listener import LiveCaptureListener
from .memory import InMemorySource
from .postgres import PostgresSource
from .statements import AuditStatements

__all__ = [
    # Protocol and types
    "SourceClient",
    "Cursor",
    "Notification",
    "Statement",
    "StatementKind",
    "SourceError",
    "SourceConnectionError",
    # Factory
    "create_source",
    # Statements
    "AuditStatements",
    # Readers
    "HistoricScanner",
    "ScanResult",
    "LiveCaptureListener",
    # Implementations
    "PostgresSource",
    "InMemorySource",
]
