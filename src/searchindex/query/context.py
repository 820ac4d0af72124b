"""Request context — Per-request index lookup and caches.

One :class:`RequestContext` lives for one API request, CLI command or
worker invocation.  It owns an :class:`EngineRegistry` (so engines are
built once per backend connection within that scope) and memoises each
index's role-field map.  Nothing is shared across contexts.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from searchindex.engines.base.engine import SearchEngine
from searchindex.engines.base.exceptions import IndexNotFoundError
from searchindex.engines.base.registry import EngineRegistry
from searchindex.models.index import Index

logger = logging.getLogger(__name__)


class RequestContext:
    """Indexes, engines and role fields for one unit of work.

    Args:
        indexes: Configured indexes, as a list or a ``handle -> Index`` map.
        registry: Engine registry; a fresh one is created when omitted.
    """

    def __init__(
        self,
        indexes: Mapping[str, Index] | Iterable[Index],
        registry: EngineRegistry | None = None,
    ) -> None:
        if isinstance(indexes, Mapping):
            self.indexes: dict[str, Index] = dict(indexes)
        else:
            self.indexes = {index.handle: index for index in indexes}
        self.registry = registry or EngineRegistry()
        self._role_fields: dict[str, dict[str, str]] = {}

    async def __aenter__(self) -> RequestContext:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def get_index(self, handle: str) -> Index:
        """Look up an index by handle.

        Raises:
            IndexNotFoundError: If no index has that handle.
        """
        index = self.indexes.get(handle) if handle else None
        if index is None:
            raise IndexNotFoundError(handle)
        return index

    def find_index(self, handle: str) -> Index | None:
        return self.indexes.get(handle)

    def engine_for(self, index: Index) -> SearchEngine:
        return self.registry.get(index)

    def role_fields(self, index: Index) -> dict[str, str]:
        """``{role: index_field_name}`` for the index, computed once per context."""
        fields = self._role_fields.get(index.handle)
        if fields is None:
            fields = index.role_fields()
            self._role_fields[index.handle] = fields
        return fields

    async def close(self) -> None:
        await self.registry.shutdown_all()
