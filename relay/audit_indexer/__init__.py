"""
Audit Indexer - replicates a PostgreSQL audit log into Elasticsearch.

Rows captured by audit triggers are copied into a document store, in
append order, idempotently and resumably across restarts:
- Historic backfill of rows newer than the destination's watermark
- Live capture via LISTEN/NOTIFY (inline payloads and key-only payloads)
- Batched bulk writes triggered by item count, byte size or time
- Optional deletion of source rows once they are confirmed indexed

Architecture:
    ┌─────────────────────┐ backfill ┌──────────────────┐  bulk  ┌───────────────┐
    │   HistoricScanner   │─────────▶│                  │───────▶│ Elasticsearch │
    └─────────────────────┘          │ BatchFlushEngine │        └───────┬───────┘
    ┌─────────────────────┐  NOTIFY  │                  │                │
    │ LiveCaptureListener │─────────▶│                  │                ▼
    └─────────────────────┘          └────────┬─────────┘      ┌───────────────────┐
                                              │ confirmed      │ WatermarkResolver │
                                              ▼                └───────────────────┘
                                   ┌─────────────────────┐
                                   │ DeletionCoordinator │
                                   └─────────────────────┘

Invariants:
    - The destination is the source of truth for the watermark
    - The source primary key is the document id (re-indexing overwrites)
    - Batches leave the queue in arrival order, failed batches return to
      the front in the same order
    - At most one flush and one creation per container run at a time

How to change safely:
    - Keep enqueue() synchronous, the queue relies on it for atomicity
    - Test shutdown sequence with a failing destination
    - Never widen ranged deletes beyond the confirmed (previous, max] range
"""

from ._version import __version__

__all__ = ["__version__"]
