"""
Source cleanup for the Audit Indexer.

Removes audit rows from PostgreSQL once Elasticsearch holds them, so the
audit table stays small on write-heavy databases.

Invariants:
    - Rows are deleted only after the store confirmed them
    - Deletion is opt-in (PG_DELETE_ON_INDEX)
"""

from .deleter import DeletionCoordinator, DeletionError

__all__ = ["DeletionCoordinator", "DeletionError"]
