"""Elasticsearch engine — Elasticsearch v8+ over its REST API.

Talks to the cluster with ``httpx`` through :class:`HttpClientMixin`.
Authentication is either an API key (``Authorization: ApiKey ...``) or
HTTP basic auth; the API key wins when both are configured.

Config keys: ``host``, ``api_key``, ``username``, ``password``,
``index_prefix``, ``embedding_dimension``, ``verify_certs``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from searchindex.engines.base.engine import as_bool
from searchindex.engines.base.exceptions import ConfigurationError, ConnectionError, PermissionRestrictedError
from searchindex.engines.base.http import HttpClientMixin
from searchindex.engines.elastic_compat.engine import ElasticCompatEngine
from searchindex.models.index import EngineType, FieldMapping

logger = logging.getLogger(__name__)


class ElasticsearchEngine(HttpClientMixin, ElasticCompatEngine):
    """Search engine backed by Elasticsearch.

    Vectors are stored as ``dense_vector`` fields and queried with the
    ``knn`` query, which Elasticsearch accepts inside ``bool.should`` for
    hybrid text + vector search.
    """

    engine_type = EngineType.ELASTICSEARCH
    display_name = "Elasticsearch"

    vector_type = "dense_vector"
    vector_dimension_key = "dims"

    def _client_options(self) -> dict[str, Any]:
        host = str(self.setting("host", "") or "").rstrip("/")
        if not host:
            raise ConfigurationError("No Elasticsearch host configured. Set it globally or on the index.")

        options: dict[str, Any] = {
            "base_url": host,
            "headers": {"Accept": "application/json"},
            "verify": as_bool(self.setting("verify_certs", True)),
        }
        api_key = self.setting("api_key", "")
        if api_key:
            options["headers"]["Authorization"] = f"ApiKey {api_key}"
        else:
            username = self.setting("username", "")
            password = self.setting("password", "")
            if username and password:
                options["auth"] = httpx.BasicAuth(str(username), str(password))
        return options

    async def _head(self, path: str) -> bool:
        client = self._get_client()
        try:
            resp = await client.head(path)
        except httpx.HTTPError as e:
            raise ConnectionError(f"Elasticsearch request HEAD {path} failed: {e}") from e
        if resp.status_code == 403:
            raise PermissionRestrictedError(f"Elasticsearch denied HEAD {path} (HTTP 403)")
        if resp.status_code == 401:
            raise ConnectionError(f"Elasticsearch rejected the credentials (HTTP 401) for HEAD {path}")
        return resp.status_code < 300

    def knn_clause(self, field: str, vector: list[float], k: int) -> dict[str, Any]:
        return {"knn": {"field": field, "query_vector": vector, "k": k, "num_candidates": max(k * 10, 100)}}

    def vector_field_options(self, mapping: FieldMapping) -> dict[str, Any]:
        options = super().vector_field_options(mapping)
        options.update({"index": True, "similarity": "cosine"})
        return options

