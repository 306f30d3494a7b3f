"""
Source row deletion after indexing.

Rows are only deleted once the document store confirmed them, either
batch by batch (PER_BATCH) or as one ranged statement once the historic
backlog was fully drained (HISTORIC_RANGE).

Invariants:
    - Only keys from confirmed batches (or a range below the drained
      maximum) are ever deleted
    - A DELETE never binds more than chunk_size keys
    - Chunks run sequentially, in key order; the first failure stops the rest

How to change safely:
    - Keep chunk_size under PostgreSQL's 65535 bind parameter limit
    - A failed deletion leaves rows behind, never the reverse; keep it that way
"""

from __future__ import annotations

import logging

from ..config import DeletionMode
from ..events import DeletionJob, KeyRange, PendingItem
from ..source.base import SourceClient, SourceError
from ..source.statements import AuditStatements

logger = logging.getLogger(__name__)


class DeletionError(Exception):
    """Deleting indexed rows from the source failed."""
    pass


class DeletionCoordinator:
    """Deletes source rows the document store has confirmed.

    Attributes:
        mode: Deletion mode
        chunk_size: Maximum keys per DELETE statement

    Example:
        >>> deleter = DeletionCoordinator(source, statements, DeletionMode.PER_BATCH)
        >>> engine.add_observer(deleter.on_batch_confirmed)
    """

    def __init__(
        self,
        source: SourceClient,
        statements: AuditStatements,
        mode: DeletionMode = DeletionMode.DISABLED,
        chunk_size: int = 34464,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.source = source
        self.statements = statements
        self.mode = mode
        self.chunk_size = chunk_size
        self._deleted_count = 0

    async def on_batch_confirmed(self, batch: list[PendingItem]) -> int:
        """Delete the rows of a batch the store just confirmed.

        Raises:
            DeletionError: If a chunk failed (later chunks are skipped)
        """
        if not batch:
            return 0
        return await self.execute(DeletionJob.for_batch(batch))

    async def on_historic_drained(self, key_range: KeyRange) -> int:
        """Delete the drained historic backlog with one ranged statement."""
        if key_range.empty:
            logger.info("Nothing to delete after backfill", extra={"range": str(key_range)})
            return 0
        return await self.execute(DeletionJob.for_range(key_range))

    async def execute(self, job: DeletionJob) -> int:
        """Run a deletion job.

        Returns:
            Number of rows deleted

        Raises:
            DeletionError: If a statement failed
        """
        if job.key_range is not None:
            return await self._delete_range(job.key_range)
        return await self._delete_keys(list(job.keys))

    async def _delete_keys(self, keys: list[int]) -> int:
        deleted = 0
        for start in range(0, len(keys), self.chunk_size):
            chunk = keys[start:start + self.chunk_size]
            try:
                affected = await self.source.execute(self.statements.delete_keys(chunk))
            except SourceError as e:
                logger.error(
                    f"Failed to delete {len(chunk)} indexed rows: {e}",
                    extra={
                        "first_key": chunk[0],
                        "last_key": chunk[-1],
                        "skipped": len(keys) - start - len(chunk),
                    },
                )
                raise DeletionError(
                    f"Deleting keys {chunk[0]}..{chunk[-1]} failed: {e}"
                ) from e

            deleted += affected
            log = logger.info if affected == len(chunk) else logger.warning
            log(
                f"Deleted {affected} of {len(chunk)} indexed rows",
                extra={"requested": len(chunk), "deleted": affected,
                       "first_key": chunk[0], "last_key": chunk[-1]},
            )

        self._deleted_count += deleted
        return deleted

    async def _delete_range(self, key_range: KeyRange) -> int:
        try:
            affected = await self.source.execute(self.statements.delete_range(key_range))
        except SourceError as e:
            logger.error(f"Failed to delete backfilled rows {key_range}: {e}")
            raise DeletionError(f"Deleting range {key_range} failed: {e}") from e

        self._deleted_count += affected
        logger.info(
            f"Deleted {affected} backfilled rows",
            extra={"range": str(key_range), "deleted": affected},
        )
        return affected

    @property
    def deleted_count(self) -> int:
        return self._deleted_count
