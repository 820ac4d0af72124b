"""Meilisearch engine — Instant, typo-tolerant search over the REST API.

Uses ``httpx`` via :class:`HttpClientMixin`.  Every write in Meilisearch
is an asynchronous task; this adapter waits for each task to finish so a
completed call means the change is visible (and a failed task surfaces
as an error instead of disappearing in the task queue).

Config keys: ``host``, ``api_key``, ``index_prefix``, ``task_timeout``
(seconds, default 30).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

from searchindex.engines.base.engine import (
    Document,
    SearchEngine,
    SearchQuery,
    date_value_to_epoch_seconds,
    normalise_facet_counts,
    normalise_hit,
    raise_for_embedding_fields,
)
from searchindex.engines.base.exceptions import (
    BulkFailure,
    BulkIndexError,
    ConfigurationError,
    EngineError,
    PermissionRestrictedError,
    QueryError,
    ValidationError,
)
from searchindex.engines.base.http import HttpClientMixin
from searchindex.models.index import EngineType, FieldMapping, FieldType, Index
from searchindex.models.options import RangeFilter, SearchOptions
from searchindex.models.result import FacetValue, SearchResult

logger = logging.getLogger(__name__)

PRIMARY_KEY = "objectID"
GEO_FIELD = "_geo"
DEFAULT_TASK_TIMEOUT = 30.0
_DOCUMENT_PAGE_SIZE = 1000

_SETTING_KINDS: dict[FieldType, str] = {
    FieldType.TEXT: "searchable",
    FieldType.OBJECT: "searchable",
    FieldType.KEYWORD: "filterable",
    FieldType.FACET: "filterable",
    FieldType.BOOLEAN: "filterable",
    FieldType.INTEGER: "filterable_sortable",
    FieldType.FLOAT: "filterable_sortable",
    FieldType.DATE: "filterable_sortable",
    FieldType.GEO_POINT: "filterable_sortable",
}


# ── Filter grammar ───────────────────────────────────────────────────────


def quote_filter_value(value: Any) -> str:
    """Render one filter operand.

    Strings are double-quoted with backslashes escaped before quotes, so
    a value can never close its own quote and inject an operator.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(int(value)) if isinstance(value, float) and value.is_integer() else str(value)
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def build_filter_expression(filters: Mapping[str, Any], date_fields: frozenset[str] = frozenset()) -> str:
    """Translate unified filters into a Meilisearch filter expression.

    Values of one field are ORed inside parentheses; fields are ANDed.
    """
    clauses: list[str] = []
    for field, value in filters.items():
        if isinstance(value, RangeFilter):
            bounds = []
            for op, bound in ((">=", value.min), ("<=", value.max)):
                if bound is None:
                    continue
                if field in date_fields:
                    bound = date_value_to_epoch_seconds(bound)
                    if bound is None:
                        raise ValidationError(f"Invalid date bound for '{field}'")
                bounds.append(f"{field} {op} {quote_filter_value(bound)}")
            if len(bounds) == 1:
                clauses.append(bounds[0])
            elif bounds:
                clauses.append(f"({' AND '.join(bounds)})")
        elif isinstance(value, list):
            clauses.append("(" + " OR ".join(f"{field} = {quote_filter_value(v)}" for v in value) + ")")
        else:
            clauses.append(f"{field} = {quote_filter_value(value)}")
    return " AND ".join(clauses)


class MeilisearchEngine(HttpClientMixin, SearchEngine):
    """Search engine backed by Meilisearch.

    Documents use ``objectID`` as primary key.  Geo points are mirrored
    into Meilisearch's reserved ``_geo`` field.  Vector fields are not
    supported and rejected at schema time.
    """

    engine_type = EngineType.MEILISEARCH
    display_name = "Meilisearch"

    def _client_options(self) -> dict[str, Any]:
        host = str(self.setting("host", "") or "").rstrip("/")
        if not host:
            raise ConfigurationError("No Meilisearch host configured. Set it globally or on the index.")
        headers = {"Accept": "application/json"}
        api_key = self.setting("api_key", "")
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return {"base_url": host, "headers": headers}

    def _index_path(self, index: Index, *parts: str) -> str:
        segments = [quote(self.get_index_name(index), safe=""), *(quote(str(p), safe="") for p in parts)]
        return "/indexes/" + "/".join(segments)

    # ── Tasks ────────────────────────────────────────────────────────────

    async def _wait_for_task(self, response: Any) -> dict[str, Any]:
        """Poll ``/tasks/{uid}`` until the task leaves the queue.

        Raises:
            QueryError: If the task failed, was canceled or timed out.
        """
        if not isinstance(response, Mapping) or "taskUid" not in response:
            return dict(response or {}) if isinstance(response, Mapping) else {}
        uid = response["taskUid"]
        timeout = float(self.setting("task_timeout", DEFAULT_TASK_TIMEOUT))
        deadline = time.monotonic() + timeout
        delay = 0.05
        while True:
            task = await self._request("GET", f"/tasks/{uid}") or {}
            status = task.get("status")
            if status == "succeeded":
                return task
            if status in ("failed", "canceled"):
                error = task.get("error") or {}
                raise QueryError(
                    f"Meilisearch task {uid} ({task.get('type')}) {status}: {error.get('message', 'no details')}",
                    status_code=None,
                )
            if time.monotonic() >= deadline:
                raise QueryError(f"Meilisearch task {uid} did not finish within {timeout:g}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, 0.5)

    # ── Index lifecycle ──────────────────────────────────────────────────

    async def create_index(self, index: Index) -> None:
        raise_for_embedding_fields(self, index.field_mappings)
        response = await self._request(
            "POST",
            "/indexes",
            json_body={"uid": self.get_index_name(index), "primaryKey": PRIMARY_KEY},
        )
        await self._wait_for_task(response)
        logger.info("Created Meilisearch index %s", self.get_index_name(index))
        await self.update_index_settings(index)

    async def update_index_settings(self, index: Index) -> None:
        schema = self.build_schema(index.enabled_mappings())
        if not schema:
            return
        response = await self._request("PATCH", self._index_path(index, "settings"), json_body=schema)
        await self._wait_for_task(response)

    async def delete_index(self, index: Index) -> None:
        response = await self._request("DELETE", self._index_path(index), not_found_ok=True)
        if response is not None:
            await self._wait_for_task(response)

    async def index_exists(self, index: Index) -> bool:
        try:
            return await self._request("GET", self._index_path(index), not_found_ok=True) is not None
        except PermissionRestrictedError:
            # Search-only keys cannot read index metadata but may search.
            logger.info("Index lookup for %s is permission-restricted; probing with search", index.handle)
            try:
                await self._request("POST", self._index_path(index, "search"), json_body={"q": "", "limit": 0})
            except QueryError as e:
                if e.status_code == 404:
                    return False
                raise
            return True

    # ── Documents ────────────────────────────────────────────────────────

    def prepare_document(self, index: Index, object_id: str, document: Document) -> Document:
        doc = super().prepare_document(index, object_id, document)
        for field in index.fields_of_type(FieldType.GEO_POINT):
            point = doc.get(field)
            if isinstance(point, Mapping) and point.get("lat") is not None:
                doc[GEO_FIELD] = {"lat": point["lat"], "lng": point.get("lng", point.get("lon"))}
                break
        return doc

    async def index_document(self, index: Index, object_id: str, document: Document) -> None:
        await self._add_documents(index, [self.prepare_document(index, object_id, document)])

    async def index_documents(self, index: Index, documents: list[Document]) -> None:
        prepared = []
        for document in documents:
            object_id = document.get(PRIMARY_KEY)
            if object_id is None or object_id == "":
                logger.warning("Skipping document without objectID for %s", index.handle)
                continue
            prepared.append(self.prepare_document(index, str(object_id), document))
        if prepared:
            await self._add_documents(index, prepared)

    async def _add_documents(self, index: Index, documents: list[Document]) -> None:
        response = await self._request(
            "POST",
            self._index_path(index, "documents"),
            json_body=documents,
            params={"primaryKey": PRIMARY_KEY},
        )
        try:
            await self._wait_for_task(response)
        except QueryError as e:
            # A failed documentAdditionOrUpdate task rejects the whole batch.
            raise BulkIndexError(
                self.get_index_name(index),
                [BulkFailure(object_id=str(d[PRIMARY_KEY]), reason=str(e)) for d in documents],
            ) from e

    async def delete_document(self, index: Index, object_id: str) -> None:
        response = await self._request(
            "DELETE",
            self._index_path(index, "documents", str(object_id)),
            not_found_ok=True,
        )
        if response is not None:
            await self._wait_for_task(response)

    async def delete_documents(self, index: Index, object_ids: list[str]) -> None:
        if not object_ids:
            return
        response = await self._request(
            "POST",
            self._index_path(index, "documents", "delete-batch"),
            json_body=[str(i) for i in object_ids],
        )
        await self._wait_for_task(response)

    async def flush_index(self, index: Index) -> None:
        response = await self._request("DELETE", self._index_path(index, "documents"))
        await self._wait_for_task(response)

    async def get_document(self, index: Index, object_id: str) -> Document | None:
        return await self._request("GET", self._index_path(index, "documents", str(object_id)), not_found_ok=True)

    async def get_document_count(self, index: Index) -> int:
        stats = await self._request("GET", self._index_path(index, "stats")) or {}
        return int(stats.get("numberOfDocuments", 0))

    async def get_all_document_ids(self, index: Index) -> list[str]:
        ids: list[str] = []
        offset = 0
        while True:
            response = await self._request(
                "GET",
                self._index_path(index, "documents"),
                params={"fields": PRIMARY_KEY, "offset": offset, "limit": _DOCUMENT_PAGE_SIZE},
            ) or {}
            results = response.get("results") or []
            ids.extend(str(doc[PRIMARY_KEY]) for doc in results if PRIMARY_KEY in doc)
            if len(results) < _DOCUMENT_PAGE_SIZE:
                return ids
            offset += _DOCUMENT_PAGE_SIZE

    # ── Search ───────────────────────────────────────────────────────────

    async def search(self, index: Index, query: str, options: SearchOptions | None = None) -> SearchResult:
        options = SearchOptions.parse(options)
        body = self.build_search_body(index, query, options)
        response = await self._request("POST", self._index_path(index, "search"), json_body=body) or {}
        return self.parse_search_response(response, body, options)

    async def multi_search(self, queries: list[SearchQuery]) -> list[SearchResult]:
        if not queries:
            return []
        bodies: list[dict[str, Any]] = []
        parsed: list[SearchOptions] = []
        for q in queries:
            options = SearchOptions.parse(q.options)
            body = self.build_search_body(q.index, q.query, options)
            bodies.append({"indexUid": self.get_index_name(q.index), **body})
            parsed.append(options)
        response = await self._request("POST", "/multi-search", json_body={"queries": bodies}) or {}
        results = response.get("results") or []
        if len(results) != len(queries):
            raise QueryError(f"Meilisearch multi-search returned {len(results)} results for {len(queries)} queries")
        return [
            self.parse_search_response(resp, body, options)
            for resp, body, options in zip(results, bodies, parsed, strict=True)
        ]

    async def search_facet_values(
        self,
        index: Index,
        fields: list[str],
        query: str = "",
        max_per_field: int = 10,
        filters: Mapping[str, Any] | None = None,
    ) -> dict[str, list[FacetValue]]:
        options = SearchOptions.parse({"filters": dict(filters or {})})
        filter_expression = build_filter_expression(options.filters, frozenset(index.fields_of_type(FieldType.DATE)))
        values: dict[str, list[FacetValue]] = {}
        for field in fields:
            body: dict[str, Any] = {"facetName": field}
            if query:
                body["facetQuery"] = query
            if filter_expression:
                body["filter"] = filter_expression
            response = await self._request("POST", self._index_path(index, "facet-search"), json_body=body) or {}
            hits = normalise_facet_counts((h.get("value"), h.get("count", 0)) for h in response.get("facetHits", []))
            values[field] = hits[: max(0, max_per_field)]
        return values

    def build_search_body(self, index: Index, query: str, options: SearchOptions) -> dict[str, Any]:
        body: dict[str, Any] = {
            "q": query,
            "offset": options.offset,
            "limit": options.per_page,
            "showRankingScore": True,
        }

        facets = list(dict.fromkeys([*options.facets, *options.stats]))
        if facets:
            body["facets"] = facets

        expression = build_filter_expression(options.filters, frozenset(index.fields_of_type(FieldType.DATE)))
        if options.geo_filter is not None:
            geo = options.geo_filter
            geo_clause = f"_geoRadius({geo.lat}, {geo.lng}, {geo.radius:g})"
            expression = f"{expression} AND {geo_clause}" if expression else geo_clause
        if expression:
            body["filter"] = expression

        sort = [f"{field}:{direction}" for field, direction in options.sort.items()]
        if options.geo_sort is not None:
            sort.append(f"_geoPoint({options.geo_sort.lat}, {options.geo_sort.lng}):asc")
        if sort:
            body["sort"] = sort

        if options.wants_highlight:
            body["attributesToHighlight"] = options.highlight_fields or ["*"]
        if options.fields:
            body["attributesToSearchOn"] = options.fields
        if options.attributes_to_retrieve is not None:
            body["attributesToRetrieve"] = options.attributes_to_retrieve
        if options.embedding is not None:
            logger.warning("Meilisearch engine ignores the embedding for %s; running text search", index.handle)

        # Native keys (offset, limit, filter, sort, facets ...) win.
        body.update(options.native)
        return body

    def parse_search_response(
        self,
        response: dict[str, Any],
        body: dict[str, Any],
        options: SearchOptions,
    ) -> SearchResult:
        hits = [self._normalise_raw_hit(h) for h in response.get("hits", [])]
        total = response.get("totalHits", response.get("estimatedTotalHits", 0))
        limit = int(response.get("limit", body.get("limit", options.per_page)))
        offset = int(response.get("offset", body.get("offset", 0)))

        distribution = response.get("facetDistribution") or {}
        facets = {f: normalise_facet_counts(counts) for f, counts in distribution.items() if f in options.facets}
        if "facets" in options.native:
            facets = {f: normalise_facet_counts(counts) for f, counts in distribution.items()}

        stats: dict[str, dict[str, float]] = {}
        for field, values in (response.get("facetStats") or {}).items():
            if field in options.stats:
                stats[field] = {k: v for k, v in values.items() if k in ("min", "max")}

        # hitsPerPage/page responses carry totalHits but no offset.
        if "hitsPerPage" in response:
            limit = int(response["hitsPerPage"])
            page = int(response.get("page", 1))
        else:
            page = offset // limit + 1 if limit > 0 else 1

        return self.build_result(
            hits=hits,
            total_hits=int(total or 0),
            options=options,
            page=page,
            per_page=limit,
            processing_time_ms=response.get("processingTimeMs"),
            facets=facets,
            stats=stats,
            raw=response,
        )

    @staticmethod
    def _normalise_raw_hit(hit: dict[str, Any]) -> Document:
        doc = dict(hit)
        score = doc.pop("_rankingScore", None)
        formatted = doc.pop("_formatted", None) or {}
        highlights: dict[str, Any] = {}
        for field, value in formatted.items():
            if isinstance(value, str) and "<em>" in value:
                highlights[field] = value
            elif isinstance(value, list):
                fragments = [v for v in value if isinstance(v, str) and "<em>" in v]
                if fragments:
                    highlights[field] = fragments
        return normalise_hit(doc, score=score, highlights=highlights)

    # ── Schema ───────────────────────────────────────────────────────────

    def map_field_type(self, field_type: FieldType) -> str:
        return _SETTING_KINDS.get(field_type, "searchable")

    def build_schema(self, field_mappings: list[FieldMapping]) -> dict[str, Any]:
        raise_for_embedding_fields(self, field_mappings)
        searchable: list[FieldMapping] = []
        filterable: list[str] = []
        sortable: list[str] = []
        for mapping in field_mappings:
            if not mapping.enabled:
                continue
            kind = self.map_field_type(mapping.index_field_type)
            name = GEO_FIELD if mapping.index_field_type == FieldType.GEO_POINT else mapping.index_field_name
            if kind == "searchable":
                searchable.append(mapping)
            elif kind == "filterable":
                filterable.append(name)
            else:
                filterable.append(name)
                sortable.append(name)

        schema: dict[str, Any] = {}
        if searchable:
            schema["searchableAttributes"] = self.sort_by_weight(searchable)
        if filterable:
            schema["filterableAttributes"] = list(dict.fromkeys(filterable))
        if sortable:
            schema["sortableAttributes"] = list(dict.fromkeys(sortable))
        return schema

    async def get_index_schema(self, index: Index) -> dict[str, Any]:
        return await self._request("GET", self._index_path(index, "settings")) or {}

    async def get_schema_fields(self, index: Index) -> list[dict[str, str]]:
        schema = await self.get_index_schema(index)
        fields: dict[str, str] = {}
        for name in schema.get("searchableAttributes") or []:
            if name != "*":
                fields.setdefault(name, FieldType.TEXT.value)
        for key in ("filterableAttributes", "sortableAttributes"):
            for name in schema.get(key) or []:
                if isinstance(name, str):
                    fields.setdefault(name, FieldType.KEYWORD.value)
        return [{"name": name, "type": type_} for name, type_ in fields.items()]

    # ── Atomic swap ──────────────────────────────────────────────────────

    def supports_atomic_swap(self) -> bool:
        return True

    async def swap_index(self, index: Index, swap_index: Index) -> None:
        live_name = self.get_index_name(index)
        swap_name = self.get_index_name(swap_index)
        if not await self.index_exists(index):
            # /swap-indexes needs both sides to exist.
            await self.create_index(index)
        response = await self._request("POST", "/swap-indexes", json_body=[{"indexes": [live_name, swap_name]}])
        await self._wait_for_task(response)
        # The temporary index now holds the previous content.
        await self.delete_index(swap_index)
        logger.info("Swapped Meilisearch index %s with %s", live_name, swap_name)

    # ── Health ───────────────────────────────────────────────────────────

    async def test_connection(self) -> bool:
        try:
            health = await self._request("GET", "/health") or {}
        except PermissionRestrictedError:
            return True
        except EngineError as e:
            logger.warning("Meilisearch connection test failed: %s", e)
            return False
        return health.get("status") == "available"
