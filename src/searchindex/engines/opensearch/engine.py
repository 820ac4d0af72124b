"""OpenSearch engine — OpenSearch v2+ via ``opensearch-py`` (async).

Requests go through ``AsyncOpenSearch.transport.perform_request`` so the
shared Elastic-compatible DSL is sent unchanged.  Vectors use the k-NN
plugin's ``knn_vector`` type, which needs ``index.knn`` enabled on the
index.

Config keys: ``host``, ``username``, ``password``, ``index_prefix``,
``embedding_dimension``, ``verify_certs``.
"""

from __future__ import annotations

import logging
from typing import Any

from searchindex.engines.base.engine import as_bool
from searchindex.engines.base.exceptions import (
    ConfigurationError,
    ConnectionError,
    PermissionRestrictedError,
    QueryError,
)
from searchindex.engines.elastic_compat.engine import ElasticCompatEngine
from searchindex.models.index import EngineType, FieldMapping, FieldType

logger = logging.getLogger(__name__)


class OpenSearchEngine(ElasticCompatEngine):
    """Search engine backed by OpenSearch."""

    engine_type = EngineType.OPENSEARCH
    display_name = "OpenSearch"

    vector_type = "knn_vector"
    vector_dimension_key = "dimension"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__(config)
        self._client: Any = None

    def _get_client(self) -> Any:
        """Create the ``AsyncOpenSearch`` client on first use."""
        if self._client is None:
            try:
                from opensearchpy import AsyncOpenSearch
            except ImportError as e:
                raise ConfigurationError(
                    "opensearch-py package is required.  Install with: pip install 'opensearch-py[async]'"
                ) from e

            host = str(self.setting("host", "") or "")
            if not host:
                raise ConfigurationError("No OpenSearch host configured. Set it globally or on the index.")

            client_kwargs: dict[str, Any] = {
                "hosts": [host],
                "verify_certs": as_bool(self.setting("verify_certs", True)),
                "ssl_show_warn": False,
                "timeout": 10,
            }
            username = self.setting("username", "")
            password = self.setting("password", "")
            if username and password:
                client_kwargs["http_auth"] = (str(username), str(password))
            self._client = AsyncOpenSearch(**client_kwargs)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    # ── Transport ────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: dict[str, Any] | None = None,
        content: str | bytes | None = None,
        content_type: str | None = None,
        not_found_ok: bool = False,
    ) -> Any:
        from opensearchpy import exceptions as os_exc

        client = self._get_client()
        body = content if content is not None else json_body
        headers = {"Content-Type": content_type} if content_type else None
        try:
            return await client.transport.perform_request(
                method,
                path,
                params=params or None,
                body=body,
                headers=headers,
            )
        except os_exc.NotFoundError as e:
            if not_found_ok:
                return None
            raise QueryError(f"OpenSearch {method} {path} failed: {e}", status_code=404) from e
        except os_exc.AuthorizationException as e:
            raise PermissionRestrictedError(f"OpenSearch denied {method} {path} (HTTP 403): {e}") from e
        except os_exc.AuthenticationException as e:
            raise ConnectionError(f"OpenSearch rejected the credentials (HTTP 401) for {method} {path}") from e
        except os_exc.ConnectionError as e:
            raise ConnectionError(f"OpenSearch request {method} {path} failed: {e}") from e
        except os_exc.TransportError as e:
            status = e.status_code if isinstance(e.status_code, int) else None
            raise QueryError(f"OpenSearch {method} {path} failed: {e}", status_code=status) from e

    async def _head(self, path: str) -> bool:
        # perform_request answers HEAD with a bool; 404 comes back as False.
        return bool(await self._request("HEAD", path, not_found_ok=True))

    # ── Schema ───────────────────────────────────────────────────────────

    def index_settings(self, field_mappings: list[FieldMapping]) -> dict[str, Any]:
        if any(m.enabled and m.index_field_type == FieldType.EMBEDDING for m in field_mappings):
            return {"index": {"knn": True}}
        return {}
