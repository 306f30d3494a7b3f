"""
Resume point resolution.

The destination is the only record of progress: the highest primary key
already indexed is read back from Elasticsearch on every start and the
backfill resumes strictly after it.

Invariants:
    - A missing destination (no indices, no documents) means "start from
      the first row", never an error
    - An unreachable destination is an error, never "start from the first row"
    - Only documents carrying our label count when a label is configured
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from ..events import EventColumns, Watermark
from .base import DocumentStoreClient, DocumentStoreError
from .flush import BatchFlushEngine
from .naming import ContainerNaming

logger = logging.getLogger(__name__)


class WatermarkError(Exception):
    """The resume point could not be determined."""
    pass


class WatermarkResolver:
    """Reads the highest confirmed primary key from the document store.

    Example:
        >>> resolver = WatermarkResolver(store, naming, columns, engine)
        >>> watermark = await resolver.resolve(["users", "orders"])
        >>> watermark.last_confirmed_key
        100
    """

    def __init__(
        self,
        store: DocumentStoreClient,
        naming: ContainerNaming,
        columns: EventColumns,
        engine: BatchFlushEngine | None = None,
        pre_create: bool = True,
        label_name: str | None = None,
        label: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.naming = naming
        self.columns = columns
        self.engine = engine
        self.pre_create = pre_create and engine is not None
        self.label_name = label_name
        self.label = label
        if clock is None:
            clock = engine.now if engine is not None else (lambda: datetime.now(timezone.utc))
        self._clock = clock

    async def resolve(self, stream_names: Iterable[str]) -> Watermark:
        """Find the highest primary key present in the destination.

        Args:
            stream_names: Streams whose indices should exist before searching

        Returns:
            Watermark (last_confirmed_key is None for a fresh destination)

        Raises:
            WatermarkError: If the store failed or returned an unusable hit
        """
        pattern = self.naming.search_pattern
        try:
            if self.pre_create:
                await self._ensure_containers(stream_names)
            else:
                await self.store.ping()
            hits = await self.store.search(
                pattern,
                query=self._query(),
                sort=[{self.columns.timestamp: {"order": "desc", "unmapped_type": "date"}}],
                size=1,
                allow_missing=not self.pre_create,
            )
        except DocumentStoreError as e:
            raise WatermarkError(f"Unable to read the watermark from {pattern}: {e}") from e

        if not hits:
            logger.info("No documents indexed yet, starting from the first row", extra={"pattern": pattern})
            return Watermark(stream_name=pattern)

        source = hits[0].get("_source") or {}
        raw_key = source.get(self.columns.uid)
        try:
            if raw_key is None or isinstance(raw_key, bool):
                raise ValueError(raw_key)
            key = int(raw_key)
        except (TypeError, ValueError):
            raise WatermarkError(
                f"Latest document in {hits[0].get('_index', pattern)} has no integer "
                f"'{self.columns.uid}': {raw_key!r}"
            )

        logger.info(
            f"Resuming after {self.columns.uid} {key}",
            extra={"pattern": pattern, "index": hits[0].get("_index"), "key": key},
        )
        return Watermark(stream_name=pattern, last_confirmed_key=key)

    async def _ensure_containers(self, stream_names: Iterable[str]) -> None:
        now = self._clock()
        names = self.naming.containers_for(stream_names, now)
        if not names:
            names = [self.naming.container_for(self.columns.default_stream, now)]
        for name in names:
            await self.engine.ensure_container_exists(name)

    def _query(self) -> dict[str, Any]:
        if self.label_name and self.label is not None:
            return {"term": {self.label_name: self.label}}
        return {"match_all": {}}
