"""
Unit tests for the Elasticsearch REST client.

Requests are answered by httpx.MockTransport, so these tests check the
wire format (paths, bodies, headers) and status handling without a cluster.

Tests cover:
- Client configuration (auth, base URL)
- Ping, index existence and creation
- NDJSON bulk bodies and item results
- Search bodies and missing indices
- Transport failures
"""

import json

import httpx
import pytest

from relay.audit_indexer.config import DocumentStoreConfig
from relay.audit_indexer.sink.base import (
    DocumentStoreConnectionError,
    DocumentStoreError,
    create_document_store,
)
from relay.audit_indexer.sink.elasticsearch import ElasticsearchStore


class Recorder:
    """MockTransport handler answering from a route table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        for (method, path), response in self.routes.items():
            if request.method == method and request.url.path == path:
                return response(request) if callable(response) else response
        return httpx.Response(404, json={"error": {"type": "no_route"}})


@pytest.fixture
def config():
    return DocumentStoreConfig(proto="http", host="es", port=9200, username="elastic", password="secret")


@pytest.fixture
async def make_store(config):
    stores = []

    async def factory(routes):
        recorder = Recorder(routes)
        store = ElasticsearchStore(config, transport=httpx.MockTransport(recorder))
        await store.connect()
        stores.append(store)
        return store, recorder

    yield factory

    for store in stores:
        await store.close()


class TestClient:
    """Tests for connection handling."""

    def test_factory(self, config):
        assert isinstance(create_document_store(config), ElasticsearchStore)

    @pytest.mark.asyncio
    async def test_requires_connect(self, config):
        store = ElasticsearchStore(config)
        with pytest.raises(DocumentStoreConnectionError):
            await store.ping()

    @pytest.mark.asyncio
    async def test_ping_with_basic_auth(self, make_store):
        store, recorder = await make_store({("GET", "/"): httpx.Response(200, json={"version": {}})})

        await store.ping()

        request = recorder.requests[0]
        assert str(request.url) == "http://es:9200/"
        assert request.headers["authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_ping_refused(self, make_store):
        store, _ = await make_store({("GET", "/"): httpx.Response(401)})
        with pytest.raises(DocumentStoreConnectionError):
            await store.ping()

    @pytest.mark.asyncio
    async def test_transport_error(self, make_store):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        store, _ = await make_store({("GET", "/"): refuse})

        with pytest.raises(DocumentStoreConnectionError):
            await store.ping()


class TestIndices:
    """Tests for index existence and creation."""

    @pytest.mark.asyncio
    async def test_index_exists(self, make_store):
        store, _ = await make_store({("HEAD", "/audit"): httpx.Response(200)})

        assert await store.index_exists("audit") is True
        assert await store.index_exists("other") is False

    @pytest.mark.asyncio
    async def test_index_exists_error(self, make_store):
        store, _ = await make_store({("HEAD", "/audit"): httpx.Response(503)})
        with pytest.raises(DocumentStoreError):
            await store.index_exists("audit")

    @pytest.mark.asyncio
    async def test_create_index_with_mapping(self, make_store):
        store, recorder = await make_store({("PUT", "/audit"): httpx.Response(200, json={"acknowledged": True})})
        mapping = {"properties": {"event_id": {"type": "long"}}}

        await store.create_index("audit", mapping)

        assert json.loads(recorder.requests[0].content) == {"mappings": mapping}

    @pytest.mark.asyncio
    async def test_create_existing_index_tolerated(self, make_store):
        store, _ = await make_store({
            ("PUT", "/audit"): httpx.Response(
                400, json={"error": {"type": "resource_already_exists_exception"}}
            ),
        })

        await store.create_index("audit")

    @pytest.mark.asyncio
    async def test_create_index_failure(self, make_store):
        store, _ = await make_store({
            ("PUT", "/audit"): httpx.Response(400, json={"error": {"type": "invalid_index_name_exception"}}),
        })

        with pytest.raises(DocumentStoreError, match="invalid_index_name_exception"):
            await store.create_index("audit")


class TestBulk:
    """Tests for bulk writes."""

    @pytest.mark.asyncio
    async def test_ndjson_body(self, make_store):
        store, recorder = await make_store({
            ("POST", "/_bulk"): httpx.Response(200, json={
                "took": 3,
                "errors": False,
                "items": [{"index": {"_id": "1", "status": 201}}, {"index": {"_id": "2", "status": 200}}],
            }),
        })

        response = await store.bulk([
            ({"index": {"_index": "audit", "_id": "1"}}, {"event_id": 1}),
            ({"index": {"_index": "audit", "_id": "2"}}, {"event_id": 2}),
        ])

        request = recorder.requests[0]
        assert request.headers["content-type"] == "application/x-ndjson"
        lines = request.content.decode().split("\n")
        assert lines == [
            '{"index":{"_index":"audit","_id":"1"}}',
            '{"event_id":1}',
            '{"index":{"_index":"audit","_id":"2"}}',
            '{"event_id":2}',
            "",
        ]
        assert not response.errors
        assert response.took_ms == 3
        assert response.failed_items() == []

    @pytest.mark.asyncio
    async def test_item_errors_are_returned(self, make_store):
        store, _ = await make_store({
            ("POST", "/_bulk"): httpx.Response(200, json={
                "errors": True,
                "items": [
                    {"index": {"_id": "1", "status": 201}},
                    {"index": {"_id": "2", "status": 400, "error": {"type": "mapper_parsing_exception"}}},
                ],
            }),
        })

        response = await store.bulk([
            ({"index": {"_index": "audit", "_id": "1"}}, {}),
            ({"index": {"_index": "audit", "_id": "2"}}, {}),
        ])

        assert [position for position, _ in response.failed_items()] == [1]

    @pytest.mark.asyncio
    async def test_request_failure_raises(self, make_store):
        store, _ = await make_store({("POST", "/_bulk"): httpx.Response(413)})
        with pytest.raises(DocumentStoreError, match="413"):
            await store.bulk([({"index": {"_index": "audit", "_id": "1"}}, {})])


class TestSearch:
    """Tests for search."""

    @pytest.mark.asyncio
    async def test_search_body(self, make_store):
        hits = [{"_index": "audit", "_id": "7", "_source": {"event_id": 7}}]
        store, recorder = await make_store({
            ("POST", "/audit-*/_search"): httpx.Response(200, json={"hits": {"hits": hits}}),
        })

        result = await store.search(
            "audit-*",
            query={"term": {"source": "db1"}},
            sort=[{"action_timestamp": {"order": "desc"}}],
            size=1,
        )

        assert result == hits
        body = json.loads(recorder.requests[0].content)
        assert body == {
            "from": 0,
            "size": 1,
            "sort": [{"action_timestamp": {"order": "desc"}}],
            "query": {"term": {"source": "db1"}},
        }
        assert "ignore_unavailable" not in recorder.requests[0].url.params

    @pytest.mark.asyncio
    async def test_allow_missing(self, make_store):
        store, recorder = await make_store({})

        assert await store.search("audit", allow_missing=True) == []

        params = recorder.requests[0].url.params
        assert params["ignore_unavailable"] == "true"
        assert params["allow_no_indices"] == "true"

    @pytest.mark.asyncio
    async def test_missing_index_is_an_error(self, make_store):
        store, _ = await make_store({})
        with pytest.raises(DocumentStoreError):
            await store.search("audit")

    @pytest.mark.asyncio
    async def test_unexpected_body(self, make_store):
        store, _ = await make_store({("POST", "/audit/_search"): httpx.Response(200, json={"oops": 1})})
        with pytest.raises(DocumentStoreError):
            await store.search("audit")
