"""Tests for the OpenSearch engine transport and k-NN specifics."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from opensearchpy import exceptions as os_exc

from searchindex.engines.base.exceptions import (
    ConfigurationError,
    ConnectionError,
    PermissionRestrictedError,
    QueryError,
)
from searchindex.engines.opensearch.engine import OpenSearchEngine
from searchindex.models.index import FieldMapping, FieldType, Index
from searchindex.models.options import SearchOptions


@pytest.fixture
def transport() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def engine(transport: AsyncMock) -> OpenSearchEngine:
    engine = OpenSearchEngine({"host": "http://os.test:9200"})
    client = MagicMock()
    client.transport.perform_request = transport
    client.close = AsyncMock()
    engine._client = client
    return engine


class TestTransport:
    async def test_request_passes_body_and_params(self, engine: OpenSearchEngine, transport: AsyncMock) -> None:
        transport.return_value = {"count": 4}

        result = await engine._request("GET", "/articles/_count", params={"q": "x"})

        assert result == {"count": 4}
        transport.assert_awaited_once_with("GET", "/articles/_count", params={"q": "x"}, body=None, headers=None)

    async def test_not_found(self, engine: OpenSearchEngine, transport: AsyncMock, articles_index: Index) -> None:
        transport.side_effect = os_exc.NotFoundError(404, "index_not_found_exception", {})

        assert await engine.get_document(articles_index, "1") is None
        with pytest.raises(QueryError) as exc_info:
            await engine.get_document_count(articles_index)
        assert exc_info.value.status_code == 404

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (os_exc.AuthorizationException(403, "security_exception", {}), PermissionRestrictedError),
            (os_exc.AuthenticationException(401, "security_exception", {}), ConnectionError),
            (os_exc.ConnectionError("N/A", "Connection refused", OSError("refused")), ConnectionError),
            (os_exc.RequestError(400, "parsing_exception", {}), QueryError),
        ],
    )
    async def test_error_mapping(
        self, engine: OpenSearchEngine, transport: AsyncMock, error: Exception, expected: type[Exception]
    ) -> None:
        transport.side_effect = error
        with pytest.raises(expected):
            await engine._request("POST", "/articles/_search", json_body={})

    async def test_bad_request_keeps_status(self, engine: OpenSearchEngine, transport: AsyncMock) -> None:
        transport.side_effect = os_exc.RequestError(400, "parsing_exception", {})
        with pytest.raises(QueryError) as exc_info:
            await engine._request("POST", "/articles/_search", json_body={})
        assert exc_info.value.status_code == 400

    async def test_bulk_sends_ndjson(
        self, engine: OpenSearchEngine, transport: AsyncMock, articles_index: Index
    ) -> None:
        transport.return_value = {"errors": False, "items": []}

        await engine.index_documents(articles_index, [{"objectID": "1", "title": "One"}])

        method, path = transport.await_args.args
        kwargs = transport.await_args.kwargs
        assert (method, path) == ("POST", "/_bulk")
        assert kwargs["headers"] == {"Content-Type": "application/x-ndjson"}
        assert kwargs["body"].startswith('{"index": {"_index": "articles", "_id": "1"}}\n')
        assert kwargs["body"].endswith("\n")

    async def test_close(self, engine: OpenSearchEngine) -> None:
        client = engine._client
        await engine.close()
        client.close.assert_awaited_once()
        assert engine._client is None

    def test_requires_host(self) -> None:
        with pytest.raises(ConfigurationError, match="No OpenSearch host"):
            OpenSearchEngine({})._get_client()


class TestPermissions:
    async def test_exists_falls_back_to_count(
        self, engine: OpenSearchEngine, transport: AsyncMock, articles_index: Index
    ) -> None:
        async def respond(method: str, path: str, **kwargs: Any) -> Any:
            if method == "HEAD":
                raise os_exc.AuthorizationException(403, "security_exception", {})
            return {"count": 0}

        transport.side_effect = respond
        assert await engine.index_exists(articles_index) is True

    async def test_head_false_on_missing(
        self, engine: OpenSearchEngine, transport: AsyncMock, articles_index: Index
    ) -> None:
        transport.return_value = False
        assert await engine.index_exists(articles_index) is False
        assert [c.args for c in transport.await_args_list] == [("HEAD", "/articles"), ("HEAD", "/_alias/articles")]

    async def test_connection_down(self, engine: OpenSearchEngine, transport: AsyncMock) -> None:
        transport.side_effect = os_exc.ConnectionError("N/A", "Connection refused", OSError("refused"))
        assert await engine.test_connection() is False


class TestKnn:
    @pytest.fixture
    def vector_index(self, articles_index: Index) -> Index:
        mapping = FieldMapping(
            index_field_name="vec", index_field_type=FieldType.EMBEDDING, resolver_config={"dimension": 4}
        )
        return articles_index.model_copy(update={"field_mappings": [*articles_index.field_mappings, mapping]})

    async def test_create_enables_knn(
        self, engine: OpenSearchEngine, transport: AsyncMock, vector_index: Index
    ) -> None:
        await engine.create_index(vector_index)

        body = transport.await_args.kwargs["body"]
        assert body["settings"] == {"index": {"knn": True}}
        assert body["mappings"]["properties"]["vec"] == {"type": "knn_vector", "dimension": 4}

    async def test_plain_index_has_no_knn_setting(
        self, engine: OpenSearchEngine, transport: AsyncMock, articles_index: Index
    ) -> None:
        await engine.create_index(articles_index)
        assert "settings" not in transport.await_args.kwargs["body"]

    def test_vector_only_query(self, engine: OpenSearchEngine, vector_index: Index) -> None:
        options = SearchOptions.parse({"embedding": [1, 0, 0, 0], "perPage": 7})
        body = engine.build_search_body(vector_index, "", options)
        assert body["query"] == {"knn": {"vec": {"vector": [1.0, 0.0, 0.0, 0.0], "k": 7}}}
