"""
E2E test fixtures for the Audit Indexer.

These tests need a running PostgreSQL and Elasticsearch, located through the
same PG_* and ES_* variables the indexer reads.
"""

import os
import socket
import time
import uuid
from dataclasses import replace

import asyncpg
import httpx
import pytest

from relay.audit_indexer.config import IndexerConfig, ObservabilityConfig

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("AUDIT_INDEXER_E2E_TESTS", "0") == "1"

pytestmark = pytest.mark.skipif(
    not E2E_ENABLED,
    reason="E2E tests disabled. Set AUDIT_INDEXER_E2E_TESTS=1 to enable."
)


def wait_for_service(host: str, port: int, timeout: int = 60) -> bool:
    """Wait for a service to become available."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            time.sleep(1)
    return False


@pytest.fixture(scope="session")
def base_config():
    """Environment configuration, after both services accept connections."""
    if not E2E_ENABLED:
        pytest.skip("E2E tests disabled")

    config = IndexerConfig.from_env()
    assert wait_for_service(config.source.host, config.source.port), "PostgreSQL not ready"
    assert wait_for_service(config.store.host, config.store.port), "Elasticsearch not ready"
    return config


@pytest.fixture
def config(base_config):
    """Configuration isolated to a fresh table, channel pair and index prefix."""
    suffix = uuid.uuid4().hex[:8]
    return replace(
        base_config,
        source=replace(
            base_config.source,
            schema="audit_e2e",
            table=f"logged_actions_{suffix}",
            listen_channel=f"audit_{suffix}",
            listen_channel_id=f"audit_{suffix}_id",
            order_by_column="event_id",
        ),
        store=replace(base_config.store, index_prefix=f"audit-e2e-{suffix}"),
        batch=replace(base_config.batch, queue_limit=50, queue_timeout_seconds=0.5),
        observability=ObservabilityConfig(status_interval_seconds=0),
    )


@pytest.fixture
async def pg(config):
    """Connection to PostgreSQL with the audit table created (dropped afterwards)."""
    source = config.source
    conn = await asyncpg.connect(
        host=source.host,
        port=source.port,
        database=source.database,
        user=source.username,
        password=source.password,
        ssl="require" if source.ssl else None,
    )
    await conn.execute(f'CREATE SCHEMA IF NOT EXISTS "{source.schema}"')
    await conn.execute(
        f'CREATE TABLE "{source.schema}"."{source.table}" ('
        "event_id bigserial PRIMARY KEY, "
        "table_name text NOT NULL, "
        "action text NOT NULL, "
        "action_timestamp timestamptz NOT NULL DEFAULT clock_timestamp(), "
        "row_data jsonb)"
    )
    try:
        yield conn
    finally:
        await conn.execute(f'DROP TABLE IF EXISTS "{source.schema}"."{source.table}"')
        await conn.close()


@pytest.fixture
async def es(config):
    """HTTP client for Elasticsearch; indices of the test prefix are deleted afterwards."""
    store = config.store
    auth = (store.username, store.password or "") if store.username else None
    async with httpx.AsyncClient(
        base_url=store.base_url,
        auth=auth,
        verify=not store.allow_insecure_ssl,
        timeout=store.request_timeout,
    ) as client:
        yield client
        await client.delete(f"/{store.index_prefix}*")
