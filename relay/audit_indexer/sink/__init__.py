"""
Elasticsearch destination.

This module provides the document store interface and everything that
writes to it:
- Index naming (prefix, optional stream and date suffixes)
- The batch flush engine (queue, thresholds, bulk writes, re-queue)
- Watermark resolution (resume point read back from the store)

Implementations:
- Elasticsearch / OpenSearch REST API via httpx (production)
- In-memory (for testing)

Invariants:
    - The source primary key is the document id, so rewrites are idempotent
    - Documents are written in the order they were captured
    - Nothing is reported as indexed before the store confirmed it
"""

from .base import (
    BulkPair,
    BulkResponse,
    DocumentStoreClient,
    DocumentStoreConnectionError,
    DocumentStoreError,
    create_document_store,
    encode_bulk_pair,
)
from .elasticsearch import ElasticsearchStore
from .flush import (
    BatchFlushEngine,
    BulkWriteError,
    EngineClosedError,
    EngineState,
    FlushError,
    QueueInvariantError,
)
from .memory import InMemoryDocumentStore
from .naming import ContainerNaming
from .watermark import WatermarkError, WatermarkResolver

__all__ = [
    # Protocol and types
    "DocumentStoreClient",
    "BulkPair",
    "BulkResponse",
    "DocumentStoreError",
    "DocumentStoreConnectionError",
    "encode_bulk_pair",
    # Factory
    "create_document_store",
    # Pipeline
    "ContainerNaming",
    "BatchFlushEngine",
    "EngineState",
    "FlushError",
    "BulkWriteError",
    "QueueInvariantError",
    "EngineClosedError",
    "WatermarkResolver",
    "WatermarkError",
    # Implementations
    "ElasticsearchStore",
    "InMemoryDocumentStore",
]
