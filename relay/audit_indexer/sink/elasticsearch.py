"""
Elasticsearch document store implementation.

Talks to the REST API directly with httpx so the same client works against
Elasticsearch 7+/8 and OpenSearch without version branches: typeless bulk
actions, index creation with a mappings body, and _search with a JSON body.

Invariants:
    - Transport failures raise DocumentStoreConnectionError
    - HTTP error statuses raise DocumentStoreError with the server's reason
    - Item-level bulk failures are returned, not raised
    - Creating an index that already exists is not an error

How to change safely:
    - Test against a real cluster (tests/e2e) before deploying
    - Keep request bodies compatible with the oldest supported version
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from .base import (
    BulkPair,
    BulkResponse,
    DocumentStoreConnectionError,
    DocumentStoreError,
    encode_bulk_pair,
)

logger = logging.getLogger(__name__)


def _error_type(response: httpx.Response) -> str | None:
    try:
        error = response.json().get("error")
    except ValueError:
        return None
    if isinstance(error, dict):
        return error.get("type")
    return None


class ElasticsearchStore:
    """httpx implementation of the DocumentStoreClient protocol.

    Attributes:
        config: DocumentStoreConfig instance

    Example:
        >>> store = ElasticsearchStore(DocumentStoreConfig.from_env())
        >>> await store.connect()
        >>> await store.ping()
        >>> response = await store.bulk(pairs)
    """

    def __init__(self, config: Any, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize the client.

        Args:
            config: DocumentStoreConfig instance
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        if self._client is not None:
            return

        auth = None
        if self.config.username and self.config.password:
            auth = httpx.BasicAuth(self.config.username, self.config.password)

        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            auth=auth,
            verify=not self.config.allow_insecure_ssl,
            timeout=self.config.request_timeout,
            headers={"Accept": "application/json"},
            transport=self._transport,
        )
        logger.debug("Elasticsearch client created", extra={"url": self.config.base_url})

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            raise DocumentStoreConnectionError("Not connected")
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise DocumentStoreConnectionError(
                f"{method} {path} failed, Elasticsearch unreachable: {e}"
            ) from e
        except httpx.HTTPError as e:
            raise DocumentStoreError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.status_code < 300:
            return
        reason = _error_type(response) or response.reason_phrase
        raise DocumentStoreError(f"{action} failed with HTTP {response.status_code}: {reason}")

    async def ping(self) -> None:
        """Check the cluster answers.

        Raises:
            DocumentStoreConnectionError: If the cluster is unreachable or refuses us
        """
        response = await self._request("GET", "/")
        if response.status_code >= 300:
            raise DocumentStoreConnectionError(
                f"Elasticsearch ping failed with HTTP {response.status_code}"
            )

    async def index_exists(self, name: str) -> bool:
        response = await self._request("HEAD", f"/{quote(name)}")
        if response.status_code == 404:
            return False
        self._raise_for_status(response, f"indices.exists({name})")
        return True

    async def create_index(self, name: str, mapping: dict[str, Any] | None = None) -> None:
        body: dict[str, Any] = {}
        if mapping:
            body["mappings"] = mapping

        response = await self._request("PUT", f"/{quote(name)}", json=body)
        if response.status_code == 400 and _error_type(response) == "resource_already_exists_exception":
            logger.debug("Index already exists", extra={"index": name})
            return
        self._raise_for_status(response, f"indices.create({name})")
        logger.info("Index created", extra={"index": name})

    async def bulk(self, pairs: list[BulkPair]) -> BulkResponse:
        body = b"".join(encode_bulk_pair(action, document) for action, document in pairs)
        response = await self._request(
            "POST",
            "/_bulk",
            content=body,
            headers={"Content-Type": "application/x-ndjson"},
        )
        self._raise_for_status(response, "bulk")

        try:
            data = response.json()
        except ValueError as e:
            raise DocumentStoreError(f"bulk returned invalid JSON: {e}") from e

        return BulkResponse(
            errors=bool(data.get("errors")),
            items=data.get("items", []),
            took_ms=data.get("took", 0),
        )

    async def search(
        self,
        index_pattern: str,
        query: dict[str, Any] | None = None,
        sort: list[dict[str, Any]] | None = None,
        size: int = 10,
        allow_missing: bool = False,
    ) -> list[dict[str, Any]]:
        body: dict[str, Any] = {"from": 0, "size": size}
        if sort:
            body["sort"] = sort
        if query:
            body["query"] = query

        params = {}
        if allow_missing:
            params = {"ignore_unavailable": "true", "allow_no_indices": "true"}

        response = await self._request(
            "POST", f"/{quote(index_pattern, safe='*,')}/_search", json=body, params=params
        )
        if allow_missing and response.status_code == 404:
            return []
        self._raise_for_status(response, f"search({index_pattern})")

        try:
            return response.json()["hits"]["hits"]
        except (ValueError, KeyError, TypeError) as e:
            raise DocumentStoreError(f"search returned an unexpected body: {e}") from e
