"""
Base protocol and types for the document store destination.

One DocumentStoreClient interface is implemented by the Elasticsearch
client and by the in-memory store used in tests. The implementation is
chosen at composition time by create_document_store(); callers never
branch on the store version.

Invariants:
    - bulk() takes (action, document) pairs in write order
    - A bulk response reports per-item status in request order
    - Transport failures raise DocumentStoreError, item failures do not

How to change safely:
    - Protocol changes require updating all implementations
    - Keep create_index() tolerant of a concurrent creator
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..events import encode_json


class DocumentStoreError(Exception):
    """Base exception for document store operations."""
    pass


class DocumentStoreConnectionError(DocumentStoreError):
    """The document store is unreachable."""
    pass


BulkPair = tuple[dict[str, Any], dict[str, Any]]


def encode_bulk_pair(action: dict[str, Any], document: dict[str, Any]) -> bytes:
    """NDJSON lines (action + document) for one bulk item."""
    return encode_json(action) + b"\n" + encode_json(document) + b"\n"


@dataclass
class BulkResponse:
    """Result of a bulk request.

    Attributes:
        errors: Whether any item failed
        items: Per-item results in request order, each {verb: {status, error?}}
        took_ms: Server side processing time
    """

    errors: bool
    items: list[dict[str, Any]] = field(default_factory=list)
    took_ms: int = 0

    def failed_items(self, tolerate_conflicts: bool = False) -> list[tuple[int, dict[str, Any]]]:
        """Failed items as (position, result) pairs.

        Args:
            tolerate_conflicts: Treat 409 conflicts as success (create verb,
                the document already exists)
        """
        if not self.errors:
            return []

        failed = []
        for position, item in enumerate(self.items):
            result = next(iter(item.values()), {}) if item else {}
            status = result.get("status", 500)
            if status < 300:
                continue
            if tolerate_conflicts and status == 409:
                continue
            failed.append((position, result))
        return failed


@runtime_checkable
class DocumentStoreClient(Protocol):
    """Protocol for document store backends.

    Example:
        >>> store = ElasticsearchStore(config)
        >>> await store.connect()
        >>> await store.ping()
        >>> if not await store.index_exists("audit"):
        ...     await store.create_index("audit")
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the client."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the client."""
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Check the store is reachable.

        Raises:
            DocumentStoreConnectionError: If it is not
        """
        ...

    @abstractmethod
    async def index_exists(self, name: str) -> bool:
        """Whether an index exists."""
        ...

    @abstractmethod
    async def create_index(self, name: str, mapping: dict[str, Any] | None = None) -> None:
        """Create an index (no error if it already exists)."""
        ...

    @abstractmethod
    async def bulk(self, pairs: list[BulkPair]) -> BulkResponse:
        """Write (action, document) pairs in one request."""
        ...

    @abstractmethod
    async def search(
        self,
        index_pattern: str,
        query: dict[str, Any] | None = None,
        sort: list[dict[str, Any]] | None = None,
        size: int = 10,
        allow_missing: bool = False,
    ) -> list[dict[str, Any]]:
        """Search indices matching a pattern and return the hits."""
        ...


def create_document_store(config: Any) -> DocumentStoreClient:
    """Factory function to create the document store from configuration.

    Args:
        config: DocumentStoreConfig instance

    Returns:
        ElasticsearchStore for the configured cluster
    """
    from .elasticsearch import ElasticsearchStore

    return ElasticsearchStore(config)
