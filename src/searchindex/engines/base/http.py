"""Shared ``httpx`` plumbing for REST-speaking engines.

Maps transport and status failures onto the engine error taxonomy:

- network faults and 401 → :class:`ConnectionError`
- 403 → :class:`PermissionRestrictedError`
- any other 4xx/5xx → :class:`QueryError` carrying the status code
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from searchindex.engines.base.exceptions import ConnectionError, PermissionRestrictedError, QueryError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class HttpClientMixin:
    """Lazily-built ``httpx.AsyncClient`` with typed error mapping.

    Subclasses implement :meth:`_client_options` returning the base URL and
    headers; the client is only built on first use so environment
    references in the config are read at call time.
    """

    display_name: str
    _client: httpx.AsyncClient | None = None
    # Statuses meaning "authenticated but not allowed".
    permission_statuses: tuple[int, ...] = (403,)

    def _client_options(self) -> dict[str, Any]:
        raise NotImplementedError

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            options = self._client_options()
            options.setdefault("timeout", httpx.Timeout(DEFAULT_TIMEOUT))
            self._client = httpx.AsyncClient(**options)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

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
        """Send one request and decode the JSON response.

        Args:
            method: HTTP method.
            path: Path relative to the client's base URL.
            json_body: JSON payload.
            params: Query string parameters.
            content: Raw body (NDJSON / JSONL), sent with ``content_type``.
            content_type: Content type for ``content``.
            not_found_ok: Return ``None`` instead of raising on HTTP 404.

        Returns:
            Decoded JSON, the raw text for non-JSON bodies, or ``None``.
        """
        client = self._get_client()
        headers = {"Content-Type": content_type} if content_type else None
        try:
            resp = await client.request(
                method,
                path,
                json=json_body,
                params=params,
                content=content,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise ConnectionError(f"{self.display_name} request {method} {path} failed: {e}") from e

        if resp.status_code == 404 and not_found_ok:
            return None
        if resp.status_code in self.permission_statuses:
            raise PermissionRestrictedError(
                f"{self.display_name} denied {method} {path} (HTTP {resp.status_code}): {_error_text(resp)}"
            )
        if resp.status_code == 401:
            raise ConnectionError(f"{self.display_name} rejected the credentials (HTTP 401) for {method} {path}")
        if resp.status_code >= 400:
            raise QueryError(
                f"{self.display_name} {method} {path} failed with HTTP {resp.status_code}: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except json.JSONDecodeError:
            return resp.text


def _error_text(resp: httpx.Response) -> str:
    text = resp.text
    return text[:500] if len(text) > 500 else text
