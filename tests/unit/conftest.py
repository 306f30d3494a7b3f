"""
Shared fixtures for unit tests.

Everything here runs against the in-memory source and document store.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from relay.audit_indexer.config import BatchConfig
from relay.audit_indexer.events import ChangeEvent, EventColumns
from relay.audit_indexer.sink.flush import BatchFlushEngine
from relay.audit_indexer.sink.memory import InMemoryDocumentStore
from relay.audit_indexer.sink.naming import ContainerNaming
from relay.audit_indexer.source.memory import InMemorySource
from relay.audit_indexer.source.statements import AuditStatements

FIXED_NOW = datetime(2024, 5, 17, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def columns():
    return EventColumns()


@pytest.fixture
def statements(columns):
    return AuditStatements("audit", "logged_actions", columns)


@pytest.fixture
def row():
    """Build an audit row; keys double as ordering values."""

    def factory(key, stream="users", **attributes):
        return {
            "event_id": key,
            "table_name": stream,
            "action_timestamp": f"2024-05-01T00:00:{key % 60:02d}",
            **attributes,
        }

    return factory


@pytest.fixture
def make_event(columns, row):
    def factory(key, stream="users", **attributes):
        return ChangeEvent.from_row(row(key, stream, **attributes), columns)

    return factory


@pytest.fixture
async def store():
    store = InMemoryDocumentStore()
    await store.connect()
    return store


@pytest.fixture
async def source(columns):
    source = InMemorySource(columns)
    await source.connect()
    return source


@pytest.fixture
async def make_engine(store):
    """Build engines on the shared store; timers are stopped on teardown."""
    engines = []

    def factory(naming=None, target=None, **options):
        batch_options = {
            "queue_limit": 500,
            "queue_timeout_seconds": 60,
            "retry_delay_ms": 0,
        }
        for name in ("queue_limit", "queue_max_bytes", "max_post_bytes",
                     "queue_timeout_seconds", "retry_delay_ms"):
            if name in options:
                batch_options[name] = options.pop(name)
        options.setdefault("clock", lambda: FIXED_NOW)
        engine = BatchFlushEngine(
            target or store,
            naming or ContainerNaming("audit"),
            BatchConfig(**batch_options),
            **options,
        )
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.stop()


@pytest.fixture
def eventually():
    """Wait until a condition holds (fails after the timeout)."""

    async def wait(condition, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition():
            if loop.time() > deadline:
                raise AssertionError("Condition not met in time")
            await asyncio.sleep(0.01)

    return wait
