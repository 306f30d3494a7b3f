"""
In-memory document store implementation for testing.

Keeps indices as dicts of documents keyed by id, answers the searches the
watermark resolver issues (match_all or a single term filter, one sort
field) and records every call for assertions.

Invariants:
    - Documents with the same id overwrite (index) or conflict (create)
    - Injected failures are consumed by the next matching call

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with DocumentStoreClient protocol
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import defaultdict
from typing import Any

from .base import (
    BulkPair,
    BulkResponse,
    DocumentStoreConnectionError,
    DocumentStoreError,
)

logger = logging.getLogger(__name__)


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStoreClient for testing.

    Attributes:
        indices: index name -> {document id -> document}
        bulk_calls: Every bulk request's pairs, in call order
        create_calls: Every create_index() name, in call order
        search_calls: Every search() argument set

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> await store.bulk([({"index": {"_index": "audit", "_id": "1"}}, {"event_id": 1})])
        >>> store.document("audit", 1)
        {'event_id': 1}
    """

    def __init__(self, create_delay: float = 0.0) -> None:
        self.indices: dict[str, dict[str, dict[str, Any]]] = {}
        self.mappings: dict[str, dict[str, Any] | None] = {}
        self.bulk_calls: list[list[BulkPair]] = []
        self.create_calls: list[str] = []
        self.search_calls: list[dict[str, Any]] = []
        self.reachable = True
        self._connected = False
        self._create_delay = create_delay
        self._bulk_failures: list[Exception] = []
        self._item_failures: dict[str, int] = {}
        self._create_failures: dict[str, Exception] = {}
        self._write_counts: dict[str, int] = defaultdict(int)

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    def _require_reachable(self) -> None:
        if not self._connected or not self.reachable:
            raise DocumentStoreConnectionError("Document store unreachable")

    async def ping(self) -> None:
        self._require_reachable()

    async def index_exists(self, name: str) -> bool:
        self._require_reachable()
        return name in self.indices

    async def create_index(self, name: str, mapping: dict[str, Any] | None = None) -> None:
        self._require_reachable()
        self.create_calls.append(name)
        if self._create_delay:
            await asyncio.sleep(self._create_delay)
        failure = self._create_failures.pop(name, None)
        if failure is not None:
            raise failure
        if name not in self.indices:
            self.indices[name] = {}
            self.mappings[name] = mapping

    async def bulk(self, pairs: list[BulkPair]) -> BulkResponse:
        self._require_reachable()
        self.bulk_calls.append(list(pairs))
        if self._bulk_failures:
            raise self._bulk_failures.pop(0)

        items = []
        errors = False
        for action, document in pairs:
            verb, meta = next(iter(action.items()))
            index, doc_id = meta["_index"], meta["_id"]
            if self._item_failures.get(doc_id):
                self._item_failures[doc_id] -= 1
                items.append({verb: {"_index": index, "_id": doc_id, "status": 500,
                                     "error": {"type": "injected_failure"}}})
                errors = True
                continue
            if index not in self.indices:
                self.indices[index] = {}
            existing = self.indices[index].get(doc_id)
            if verb == "create" and existing is not None:
                items.append({verb: {"_index": index, "_id": doc_id, "status": 409,
                                     "error": {"type": "version_conflict_engine_exception"}}})
                errors = True
                continue
            self.indices[index][doc_id] = dict(document)
            self._write_counts[doc_id] += 1
            items.append({verb: {"_index": index, "_id": doc_id,
                                 "status": 200 if existing is not None else 201}})
        return BulkResponse(errors=errors, items=items)

    async def search(
        self,
        index_pattern: str,
        query: dict[str, Any] | None = None,
        sort: list[dict[str, Any]] | None = None,
        size: int = 10,
        allow_missing: bool = False,
    ) -> list[dict[str, Any]]:
        self._require_reachable()
        self.search_calls.append(
            {"index": index_pattern, "query": query, "sort": sort, "size": size,
             "allow_missing": allow_missing}
        )
        matching = [name for name in self.indices if fnmatch.fnmatchcase(name, index_pattern)]
        if not matching and not allow_missing and "*" not in index_pattern:
            raise DocumentStoreError(f"no such index [{index_pattern}]")

        hits = []
        for name in matching:
            for doc_id, document in self.indices[name].items():
                if self._matches(document, query):
                    hits.append({"_index": name, "_id": doc_id, "_source": dict(document)})

        for clause in reversed(sort or []):
            sort_field, options = next(iter(clause.items()))
            reverse = options.get("order", "asc") == "desc"
            present = [hit for hit in hits if hit["_source"].get(sort_field) is not None]
            missing = [hit for hit in hits if hit["_source"].get(sort_field) is None]
            present.sort(key=lambda hit: hit["_source"][sort_field], reverse=reverse)
            hits = present + missing
        return hits[:size]

    @staticmethod
    def _matches(document: dict[str, Any], query: dict[str, Any] | None) -> bool:
        if not query or "match_all" in query:
            return True
        if "term" in query:
            term_field, value = next(iter(query["term"].items()))
            if isinstance(value, dict):
                value = value.get("value")
            return document.get(term_field) == value
        raise DocumentStoreError(f"Unsupported query: {query}")

    # Testing helpers

    def document(self, index: str, doc_id: int) -> dict[str, Any] | None:
        return self.indices.get(index, {}).get(str(doc_id))

    def documents(self, index: str) -> list[dict[str, Any]]:
        return list(self.indices.get(index, {}).values())

    def write_count(self, doc_id: int) -> int:
        """How many times a document id was written."""
        return self._write_counts.get(str(doc_id), 0)

    def bulk_ids(self, call: int) -> list[int]:
        """Document ids of one bulk call, in request order."""
        return [int(next(iter(action.values()))["_id"]) for action, _ in self.bulk_calls[call]]

    def fail_next_bulk(self, exception: Exception | None = None) -> None:
        """Make the next bulk() raise a transport error."""
        self._bulk_failures.append(exception or DocumentStoreError("Injected bulk failure"))

    def fail_item(self, doc_id: int, times: int = 1) -> None:
        """Report an item error for a document id in the next bulk call(s)."""
        self._item_failures[str(doc_id)] = times

    def fail_next_create(self, name: str, exception: Exception | None = None) -> None:
        self._create_failures[name] = exception or DocumentStoreError(f"Injected create failure for {name}")
