"""Search Service — The unified query facade used by the API and templates.

Wraps engine calls with index lookup, option parsing, query embeddings
and role injection.  Failures are typed: an unknown handle raises
:class:`IndexNotFoundError`, malformed options raise
:class:`ValidationError`, and a backend failure raises the engine's own
:class:`EngineError` subclass.  No operation returns a partial result.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from searchindex.engines.base.engine import SearchQuery
from searchindex.engines.base.exceptions import EngineError, ValidationError
from searchindex.models.index import FieldType, Index
from searchindex.models.options import SearchOptions, parse_filters
from searchindex.models.result import FacetValue, SearchResult
from searchindex.query.context import RequestContext

if TYPE_CHECKING:
    from searchindex.embeddings.client import EmbeddingClient

logger = logging.getLogger(__name__)

AUTOCOMPLETE_PER_PAGE = 5
DEFAULT_FACET_VALUES = 10


class SearchService:
    """Facade over the configured indexes.

    Args:
        context: Request-scoped index and engine context.
        embeddings: Optional embeddings client for ``vectorSearch``.
    """

    def __init__(self, context: RequestContext, embeddings: EmbeddingClient | None = None) -> None:
        self.context = context
        self.embeddings = embeddings

    # ── Search ───────────────────────────────────────────────────────────

    async def search(
        self,
        handle: str,
        query: str = "",
        options: Mapping[str, Any] | SearchOptions | None = None,
    ) -> SearchResult:
        """Search one index; every hit gains a ``_roles`` map."""
        index = self.context.get_index(handle)
        opts = await self._prepare_options(index, query, options)
        engine = self.context.engine_for(index)

        start = time.perf_counter()
        result = await engine.search(index, query, opts)
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        logger.debug(
            "Searched %s (%s) for %r in %dms (engine %sms), options=%s",
            handle,
            index.engine_type.value,
            query,
            elapsed_ms,
            result.processing_time_ms,
            opts.loggable(),
        )
        return self._with_roles(index, result)

    async def autocomplete(
        self,
        handle: str,
        query: str,
        options: Mapping[str, Any] | None = None,
    ) -> SearchResult:
        """Small, lightweight search for type-ahead.

        Defaults to 5 hits and, when the index maps roles, retrieves only
        ``objectID`` plus the role fields.  Any option can be overridden.
        """
        index = self.context.get_index(handle)
        raw = dict(options or {})
        raw.setdefault("perPage", AUTOCOMPLETE_PER_PAGE)
        role_fields = self.context.role_fields(index)
        if "attributesToRetrieve" not in raw and role_fields:
            raw["attributesToRetrieve"] = ["objectID", *role_fields.values()]
        return await self.search(handle, query, raw)

    async def multi_search(self, searches: Sequence[Mapping[str, Any]]) -> list[SearchResult]:
        """Run several searches, batched per backend connection.

        Each entry is ``{"handle": ..., "query": ..., "options": {...}}``.
        Queries sharing an engine go out in one native multi-search call.
        Results keep the order of ``searches``.
        """
        groups: dict[Any, list[tuple[int, SearchQuery]]] = {}
        indexes: list[Index] = []
        for i, search in enumerate(searches):
            handle = str(search.get("handle") or search.get("index") or "")
            index = self.context.get_index(handle)
            query = str(search.get("query") or "")
            opts = await self._prepare_options(index, query, search.get("options"))
            key = self.context.registry.key_for(index)
            groups.setdefault(key, []).append((i, SearchQuery(index=index, query=query, options=opts)))
            indexes.append(index)

        results: list[SearchResult | None] = [None] * len(indexes)
        for entries in groups.values():
            engine = self.context.engine_for(entries[0][1].index)
            start = time.perf_counter()
            group_results = await engine.multi_search([q for _, q in entries])
            logger.debug(
                "Multi-search on %s: %d queries in %dms",
                engine.name,
                len(entries),
                int((time.perf_counter() - start) * 1000),
            )
            for (position, _), result in zip(entries, group_results, strict=True):
                results[position] = self._with_roles(indexes[position], result)

        return [r if r is not None else SearchResult.empty() for r in results]

    async def search_facet_values(
        self,
        handle: str,
        field: str,
        query: str = "",
        options: Mapping[str, Any] | None = None,
    ) -> list[FacetValue]:
        """Search within the values of one facet field.

        Options: ``filters`` narrows the documents whose values count and
        ``maxValues`` caps the result (default 10).
        """
        index = self.context.get_index(handle)
        if not field:
            raise ValidationError("A facet field is required")
        raw = dict(options or {})
        max_values = raw.get("maxValues", DEFAULT_FACET_VALUES)
        try:
            max_values = max(1, int(max_values))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"maxValues must be an integer, got {max_values!r}") from e

        filters = parse_filters(raw.get("filters"))
        engine = self.context.engine_for(index)
        values = await engine.search_facet_values(index, [field], query, max_values, filters)
        return values.get(field, [])

    # ── Documents and status ─────────────────────────────────────────────

    async def get_document(self, handle: str, object_id: str) -> dict[str, Any] | None:
        """Fetch one document; ``None`` when it does not exist."""
        index = self.context.get_index(handle)
        return await self.context.engine_for(index).get_document(index, str(object_id))

    async def is_ready(self, handle: str) -> bool:
        """True if the index is configured, enabled and exists on its backend.  Never raises."""
        index = self.context.find_index(handle)
        if index is None or not index.enabled:
            return False
        try:
            return await self.context.engine_for(index).index_exists(index)
        except EngineError as e:
            logger.debug("Index %s not ready: %s", handle, e)
            return False

    async def doc_count(self, handle: str) -> int | None:
        """Document count, or ``None`` if the index is unknown, missing or unreachable."""
        index = self.context.find_index(handle)
        if index is None:
            return None
        try:
            engine = self.context.engine_for(index)
            if not await engine.index_exists(index):
                return None
            return await engine.get_document_count(index)
        except EngineError as e:
            logger.debug("Document count for %s unavailable: %s", handle, e)
            return None

    def meta(self, handle: str) -> dict[str, Any]:
        """Roles, facet fields and sort options derived from the field mappings."""
        index = self.context.get_index(handle)
        roles: dict[str, str] = {}
        facet_fields: list[str] = []
        sort_options: list[dict[str, str]] = [{"label": "Relevance", "value": ""}]

        for mapping in index.enabled_mappings():
            name = mapping.index_field_name
            if mapping.role is not None:
                roles[mapping.role.value] = name
            if mapping.index_field_type == FieldType.FACET and name not in facet_fields:
                facet_fields.append(name)
            if (
                mapping.index_field_type in (FieldType.INTEGER, FieldType.FLOAT, FieldType.DATE)
                and mapping.role is None
            ):
                sort_options.append({"label": name, "value": name})

        return {"roles": roles, "facetFields": facet_fields, "sortOptions": sort_options}

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _prepare_options(
        self,
        index: Index,
        query: str,
        options: Mapping[str, Any] | SearchOptions | None,
    ) -> SearchOptions:
        opts = SearchOptions.parse(options)
        if opts.vector_search and opts.embedding is None and self.embeddings is not None:
            opts = await self.embeddings.resolve_embedding_options(index, query, opts)
        return opts

    def _with_roles(self, index: Index, result: SearchResult) -> SearchResult:
        role_fields = self.context.role_fields(index)
        if not role_fields:
            return result
        hits = [{**hit, "_roles": {role: hit.get(field) for role, field in role_fields.items()}} for hit in result.hits]
        return result.model_copy(update={"hits": hits})
