"""
Integration tests for the Indexer with in-memory source and store.

Tests cover:
- Backfill followed by live capture, then graceful shutdown
- Resuming after the destination watermark
- Per-batch and post-backfill source deletion
- Shutdown while the backfill is still running
- Failed deletes and lookups are logged, not fatal
- Exit codes for startup failures, fatal errors and failed final flushes
"""

import asyncio
import json
import logging

import pytest

from relay.audit_indexer.config import (
    BatchConfig,
    DeletionConfig,
    DocumentStoreConfig,
    IndexerConfig,
    ObservabilityConfig,
    SourceConfig,
)
from relay.audit_indexer.main import Indexer
from relay.audit_indexer.sink.base import DocumentStoreError
from relay.audit_indexer.sink.memory import InMemoryDocumentStore
from relay.audit_indexer.source.base import SourceError, StatementKind
from relay.audit_indexer.source.memory import InMemorySource


def audit_row(key, stream="users"):
    return {
        "event_id": key,
        "table_name": stream,
        "action_timestamp": f"2024-05-01T00:{key // 60:02d}:{key % 60:02d}",
        "action": "I",
    }


class SlowWriteStore(InMemoryDocumentStore):
    """Takes a while to answer every bulk request."""

    async def bulk(self, pairs):
        await asyncio.sleep(0.05)
        return await super().bulk(pairs)


class UnwritableStore(InMemoryDocumentStore):
    """Accepts searches and index creation but rejects every bulk request."""

    async def bulk(self, pairs):
        self.bulk_calls.append(list(pairs))
        raise DocumentStoreError("cluster_block_exception")


async def wait_until(condition, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


class TestIndexerIntegration:
    """Integration tests for Indexer."""

    @pytest.fixture
    def make_config(self):
        def factory(deletion=None, store=None, **batch):
            batch_options = {"queue_limit": 2, "queue_timeout_seconds": 0.05, "retry_delay_ms": 10}
            batch_options.update(batch)
            return IndexerConfig(
                source=SourceConfig(),
                deletion=deletion or DeletionConfig(),
                store=store or DocumentStoreConfig(),
                batch=BatchConfig(**batch_options),
                observability=ObservabilityConfig(status_interval_seconds=0),
            )

        return factory

    @pytest.fixture
    def source(self):
        source = InMemorySource(SourceConfig().columns)
        for key in range(1, 6):
            source.insert_row(audit_row(key))
        return source

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    async def start(self, indexer, source):
        task = asyncio.create_task(indexer.run())
        assert await source.wait_until_listening()
        return task

    @pytest.mark.asyncio
    async def test_backfill_then_live(self, make_config, source, store):
        """Backlog rows and live notifications all reach the store in order."""
        indexer = Indexer(make_config(), source=source, store=store)
        task = await self.start(indexer, source)

        source.insert_row(audit_row(7))
        await source.notify("audit", json.dumps(audit_row(6)))
        await source.notify("audit_id", "7")
        await wait_until(lambda: indexer.listener.stats["received"] == 2)

        indexer.request_shutdown()
        assert await asyncio.wait_for(task, timeout=5) == 0

        written = [key for call in range(len(store.bulk_calls)) for key in store.bulk_ids(call)]
        assert written == [1, 2, 3, 4, 5, 6, 7]
        assert len(store.documents("audit")) == 7
        assert source.keys() == [1, 2, 3, 4, 5, 7]
        assert not source.is_connected

    @pytest.mark.asyncio
    async def test_resumes_after_watermark(self, make_config, source, store):
        await store.connect()
        for key in (1, 2, 3):
            await store.bulk([({"index": {"_index": "audit", "_id": str(key)}}, audit_row(key))])
        store.bulk_calls.clear()

        indexer = Indexer(make_config(), source=source, store=store)
        task = await self.start(indexer, source)
        indexer.request_shutdown()

        assert await asyncio.wait_for(task, timeout=5) == 0
        written = [key for call in range(len(store.bulk_calls)) for key in store.bulk_ids(call)]
        assert written == [4, 5]

    @pytest.mark.asyncio
    async def test_per_stream_indices(self, make_config, source, store):
        source.insert_row(audit_row(6, stream="orders"))
        config = make_config(store=DocumentStoreConfig(index_append_table_name=True))

        indexer = Indexer(config, source=source, store=store)
        task = await self.start(indexer, source)
        indexer.request_shutdown()

        assert await asyncio.wait_for(task, timeout=5) == 0
        assert sorted(store.create_calls) == ["audit-orders", "audit-users"]
        assert store.document("audit-orders", 6) is not None

    @pytest.mark.asyncio
    async def test_delete_per_batch(self, make_config, source, store):
        config = make_config(deletion=DeletionConfig(delete_on_index=True, chunk_size=2))
        indexer = Indexer(config, source=source, store=store)
        task = await self.start(indexer, source)

        source.insert_row(audit_row(6))
        await source.notify("audit_id", "6")
        await wait_until(lambda: indexer.listener.stats["received"] == 1)
        indexer.request_shutdown()

        assert await asyncio.wait_for(task, timeout=5) == 0
        assert source.keys() == []
        assert indexer.status()["rows_deleted"] == 6

    @pytest.mark.asyncio
    async def test_delete_after_historic(self, make_config, source, store):
        """Only the drained backlog above the old watermark is deleted, in one statement."""
        await store.connect()
        for key in (1, 2):
            await store.bulk([({"index": {"_index": "audit", "_id": str(key)}}, audit_row(key))])

        config = make_config(
            deletion=DeletionConfig(delete_on_index=True, delete_after_historic=True),
        )
        indexer = Indexer(config, source=source, store=store)
        task = await self.start(indexer, source)

        assert source.keys() == [1, 2]
        for key in (3, 4, 5):
            assert store.document("audit", key) is not None

        source.insert_row(audit_row(6))
        await source.notify("audit_id", "6")
        await wait_until(lambda: indexer.listener.stats["received"] == 1)
        indexer.request_shutdown()

        assert await asyncio.wait_for(task, timeout=5) == 0
        assert source.keys() == [1, 2, 6]
        assert store.document("audit", 6) is not None

    @pytest.mark.asyncio
    async def test_failed_ranged_delete_keeps_running(self, make_config, source, store, caplog):
        """The backlog is indexed, so a failed ranged delete only leaves rows behind."""
        config = make_config(
            deletion=DeletionConfig(delete_on_index=True, delete_after_historic=True),
        )
        source.fail_next(StatementKind.DELETE_RANGE, SourceError("lock timeout"))
        indexer = Indexer(config, source=source, store=store)

        with caplog.at_level(logging.ERROR):
            task = await self.start(indexer, source)

        assert source.keys() == [1, 2, 3, 4, 5]
        assert any(getattr(record, "range", None) == "(-inf, 5]" for record in caplog.records)

        await source.notify("audit", json.dumps(audit_row(6)))
        await wait_until(lambda: indexer.listener.stats["received"] == 1)
        indexer.request_shutdown()

        assert await asyncio.wait_for(task, timeout=5) == 0
        assert len(store.documents("audit")) == 6

    @pytest.mark.asyncio
    async def test_failed_lookup_is_not_fatal(self, make_config, source, store):
        indexer = Indexer(make_config(), source=source, store=store)
        task = await self.start(indexer, source)

        source.insert_row(audit_row(6))
        source.fail_next(StatementKind.FETCH, SourceError("canceling statement due to statement timeout"))
        await source.notify("audit_id", "6")
        await source.notify("audit", json.dumps(audit_row(7)))
        await wait_until(lambda: indexer.listener.stats["received"] == 2)

        assert not task.done()
        indexer.request_shutdown()

        assert await asyncio.wait_for(task, timeout=5) == 0
        assert indexer.fatal_error is None
        assert indexer.status()["notifications_dropped"] == 1
        assert store.document("audit", 6) is None
        assert store.document("audit", 7) is not None

    @pytest.mark.asyncio
    async def test_shutdown_during_backfill(self, make_config, source):
        """Stopping mid-backfill skips live capture and ranged deletion, then flushes."""
        for key in range(6, 21):
            source.insert_row(audit_row(key))
        store = SlowWriteStore()
        config = make_config(
            deletion=DeletionConfig(delete_on_index=True, delete_after_historic=True),
        )
        indexer = Indexer(config, source=source, store=store)

        task = asyncio.create_task(indexer.run())
        await wait_until(lambda: len(store.bulk_calls) >= 1)
        indexer.request_shutdown()

        assert await asyncio.wait_for(task, timeout=5) == 0
        enqueued = indexer.status()["enqueued_count"]
        assert 0 < enqueued < 20
        assert indexer.engine.pending == []
        assert len(store.documents("audit")) == enqueued
        assert indexer.listener.stats["received"] == 0
        assert source.keys() == list(range(1, 21))

    @pytest.mark.asyncio
    async def test_shutdown_during_stalled_backfill(self, make_config, source):
        """An unwritable store cannot hold shutdown back; the final flush fails with exit 1."""
        for key in range(6, 11):
            source.insert_row(audit_row(key))
        store = UnwritableStore()
        indexer = Indexer(make_config(), source=source, store=store)

        task = asyncio.create_task(indexer.run())
        await wait_until(lambda: len(store.bulk_calls) >= 2)
        indexer.request_shutdown()

        assert await asyncio.wait_for(task, timeout=3) == 1
        assert [item.document_id for item in indexer.engine.pending] == [1, 2, 3, 4]
        assert store.documents("audit") == []
        assert not source.listening

    @pytest.mark.asyncio
    async def test_startup_failure(self, make_config, source, store):
        store.reachable = False
        indexer = Indexer(make_config(), source=source, store=store)

        assert await asyncio.wait_for(indexer.run(), timeout=5) == 1
        assert not source.listening

    @pytest.mark.asyncio
    async def test_connection_loss_is_fatal(self, make_config, source, store):
        """Losing LISTEN ends the process non-zero after flushing what was queued."""
        indexer = Indexer(make_config(queue_timeout_seconds=60), source=source, store=store)
        task = await self.start(indexer, source)

        await source.notify("audit", json.dumps(audit_row(6)))
        await wait_until(lambda: indexer.listener.stats["received"] == 1)
        await source.drop_connection()

        assert await asyncio.wait_for(task, timeout=5) == 1
        assert store.document("audit", 6) is not None
        assert indexer.fatal_error is not None

    @pytest.mark.asyncio
    async def test_failed_final_flush(self, make_config, source, store):
        indexer = Indexer(
            make_config(queue_limit=10, queue_timeout_seconds=60), source=source, store=store
        )
        task = await self.start(indexer, source)

        await source.notify("audit", json.dumps(audit_row(6)))
        await wait_until(lambda: indexer.listener.stats["received"] == 1)
        store.reachable = False
        indexer.request_shutdown()

        assert await asyncio.wait_for(task, timeout=5) == 1
        assert [item.document_id for item in indexer.engine.pending] == [1, 2, 3, 4, 5, 6]
        assert store.documents("audit") == []

    @pytest.mark.asyncio
    async def test_queue_corruption_is_fatal(self, make_config, source, store):
        indexer = Indexer(make_config(), source=source, store=store)
        task = await self.start(indexer, source)

        await source.notify("audit", json.dumps(audit_row(6)))
        await wait_until(lambda: indexer.listener.stats["received"] == 1)
        indexer.engine._sizes.append(0)

        assert await asyncio.wait_for(task, timeout=5) == 1

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_config, source, store):
        indexer = Indexer(make_config(), source=source, store=store)
        task = await self.start(indexer, source)
        indexer.request_shutdown()
        assert await asyncio.wait_for(task, timeout=5) == 0

        assert await indexer.stop() is True

    @pytest.mark.asyncio
    async def test_status(self, make_config, source, store):
        indexer = Indexer(make_config(), source=source, store=store)
        task = await self.start(indexer, source)

        status = indexer.status()

        indexer.request_shutdown()
        await asyncio.wait_for(task, timeout=5)
        assert status["enqueued_count"] == 5
        assert status["notifications_received"] == 0
        assert status["rows_deleted"] == 0
