"""Algolia engine — Hosted search over the Algolia REST API (v1).

Uses ``httpx`` via :class:`HttpClientMixin`; authentication is the
``X-Algolia-Application-Id`` / ``X-Algolia-API-Key`` header pair.  Write
operations return a ``taskID`` and are awaited until published.

Config keys: ``app_id``, ``api_key``, ``host`` (defaults to
``https://{app_id}.algolia.net``), ``index_prefix``, ``task_timeout``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

from searchindex.engines.base.engine import (
    DATE_EPOCH_SECONDS,
    Document,
    SearchEngine,
    SearchQuery,
    date_value_to_epoch_seconds,
    normalise_facet_counts,
    normalise_hit,
    raise_for_embedding_fields,
)
from searchindex.engines.base.exceptions import (
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

GEO_FIELD = "_geoloc"
DEFAULT_TASK_TIMEOUT = 30.0

_SETTING_KINDS: dict[FieldType, str] = {
    FieldType.TEXT: "searchableAttributes",
    FieldType.OBJECT: "searchableAttributes",
    FieldType.KEYWORD: "attributesForFaceting",
    FieldType.FACET: "attributesForFaceting",
    FieldType.BOOLEAN: "attributesForFaceting",
    FieldType.INTEGER: "numericAttributesForFiltering",
    FieldType.FLOAT: "numericAttributesForFiltering",
    FieldType.DATE: "numericAttributesForFiltering",
    FieldType.GEO_POINT: GEO_FIELD,
}

# Algolia answers a wrong app id or key with HTTP 403 and this message.
_INVALID_CREDENTIALS = "invalid application-id or api key"
_SEARCHABLE_WRAPPER = re.compile(r"^(?:ordered|unordered)\((.+)\)$")
_FACETING_WRAPPER = re.compile(r"^(?:searchable|filterOnly|afterDistinct)\((.+)\)$")


def facet_filter(field: str, value: Any) -> str:
    """Render ``field:value`` for ``facetFilters``.

    A leading ``-`` would negate the filter, so it is escaped.
    """
    if isinstance(value, bool):
        text = "true" if value else "false"
    else:
        text = str(value)
    if text.startswith("-"):
        text = "\\" + text
    return f"{field}:{text}"


def build_filter_params(
    filters: Mapping[str, Any],
    date_fields: frozenset[str] = frozenset(),
) -> dict[str, list[Any]]:
    """Split unified filters into ``facetFilters`` and ``numericFilters``.

    Top-level ``facetFilters`` entries are ANDed; a nested list is ORed.
    """
    facet_filters: list[Any] = []
    numeric_filters: list[str] = []
    for field, value in filters.items():
        if isinstance(value, RangeFilter):
            for op, bound in ((">=", value.min), ("<=", value.max)):
                if bound is None:
                    continue
                if field in date_fields:
                    bound = date_value_to_epoch_seconds(bound)
                if bound is None or isinstance(bound, str):
                    raise ValidationError(f"Invalid numeric bound for '{field}'")
                numeric_filters.append(f"{field}{op}{_format_number(bound)}")
        elif isinstance(value, list):
            facet_filters.append([facet_filter(field, v) for v in value])
        else:
            facet_filters.append(facet_filter(field, value))
    params: dict[str, list[Any]] = {}
    if facet_filters:
        params["facetFilters"] = facet_filters
    if numeric_filters:
        params["numericFilters"] = numeric_filters
    return params


class AlgoliaEngine(HttpClientMixin, SearchEngine):
    """Search engine backed by Algolia.

    Algolia has no vector fields; embedding mappings are rejected.  Query
    time sorting needs replica indexes, so unified ``sort`` is ignored
    with a warning.
    """

    engine_type = EngineType.ALGOLIA
    display_name = "Algolia"
    date_format = DATE_EPOCH_SECONDS

    def _client_options(self) -> dict[str, Any]:
        app_id = str(self.setting("app_id", "") or "")
        api_key = str(self.setting("api_key", "") or "")
        if not app_id or not api_key:
            raise ConfigurationError("Algolia requires app_id and api_key. Set them globally or on the index.")
        host = str(self.setting("host", "") or f"https://{app_id}.algolia.net").rstrip("/")
        return {
            "base_url": host,
            "headers": {
                "X-Algolia-Application-Id": app_id,
                "X-Algolia-API-Key": api_key,
                "Accept": "application/json",
            },
        }

    def _index_path(self, index: Index | str, *parts: str) -> str:
        name = index if isinstance(index, str) else self.get_index_name(index)
        segments = [quote(name, safe=""), *(quote(str(p), safe="") for p in parts)]
        return "/1/indexes/" + "/".join(segments)

    async def _wait_for_task(self, index: Index | str, response: Any) -> None:
        if not isinstance(response, Mapping) or "taskID" not in response:
            return
        task_id = response["taskID"]
        timeout = float(self.setting("task_timeout", DEFAULT_TASK_TIMEOUT))
        deadline = time.monotonic() + timeout
        delay = 0.05
        while True:
            task = await self._request("GET", self._index_path(index, "task", str(task_id))) or {}
            if task.get("status") == "published":
                return
            if time.monotonic() >= deadline:
                raise QueryError(f"Algolia task {task_id} was not published within {timeout:g}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, 0.5)

    # ── Index lifecycle ──────────────────────────────────────────────────

    async def create_index(self, index: Index) -> None:
        # Algolia creates an index implicitly on its first write.
        await self.update_index_settings(index)
        logger.info("Created Algolia index %s", self.get_index_name(index))

    async def update_index_settings(self, index: Index) -> None:
        schema = self.build_schema(index.enabled_mappings())
        response = await self._request("PUT", self._index_path(index, "settings"), json_body=schema)
        await self._wait_for_task(index, response)

    async def delete_index(self, index: Index) -> None:
        response = await self._request("DELETE", self._index_path(index), not_found_ok=True)
        await self._wait_for_task(index, response)

    async def index_exists(self, index: Index) -> bool:
        try:
            return await self._request("GET", self._index_path(index, "settings"), not_found_ok=True) is not None
        except PermissionRestrictedError:
            # Search-only keys lack the settings ACL.
            logger.info("Settings of %s are not readable; probing with search", index.handle)
            try:
                await self._request("POST", self._index_path(index, "query"), json_body={"hitsPerPage": 0})
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
        body = self.prepare_document(index, object_id, document)
        response = await self._request("PUT", self._index_path(index, str(object_id)), json_body=body)
        await self._wait_for_task(index, response)

    async def index_documents(self, index: Index, documents: list[Document]) -> None:
        requests = []
        for document in documents:
            object_id = document.get("objectID")
            if object_id is None or object_id == "":
                logger.warning("Skipping document without objectID for %s", index.handle)
                continue
            requests.append({"action": "updateObject", "body": self.prepare_document(index, str(object_id), document)})
        if not requests:
            return
        response = await self._request("POST", self._index_path(index, "batch"), json_body={"requests": requests})
        await self._wait_for_task(index, response)

    async def delete_document(self, index: Index, object_id: str) -> None:
        response = await self._request("DELETE", self._index_path(index, str(object_id)), not_found_ok=True)
        await self._wait_for_task(index, response)

    async def delete_documents(self, index: Index, object_ids: list[str]) -> None:
        if not object_ids:
            return
        requests = [{"action": "deleteObject", "body": {"objectID": str(i)}} for i in object_ids]
        response = await self._request("POST", self._index_path(index, "batch"), json_body={"requests": requests})
        await self._wait_for_task(index, response)

    async def flush_index(self, index: Index) -> None:
        response = await self._request("POST", self._index_path(index, "clear"))
        await self._wait_for_task(index, response)

    async def get_document(self, index: Index, object_id: str) -> Document | None:
        return await self._request("GET", self._index_path(index, str(object_id)), not_found_ok=True)

    async def get_document_count(self, index: Index) -> int:
        response = await self._request(
            "POST",
            self._index_path(index, "query"),
            json_body={"query": "", "hitsPerPage": 0},
        ) or {}
        return int(response.get("nbHits", 0))

    async def get_all_document_ids(self, index: Index) -> list[str]:
        ids: list[str] = []
        body: dict[str, Any] = {"attributesToRetrieve": []}
        while True:
            response = await self._request("POST", self._index_path(index, "browse"), json_body=body) or {}
            ids.extend(str(hit["objectID"]) for hit in response.get("hits", []))
            cursor = response.get("cursor")
            if not cursor:
                return ids
            body = {"attributesToRetrieve": [], "cursor": cursor}

    # ── Search ───────────────────────────────────────────────────────────

    async def search(self, index: Index, query: str, options: SearchOptions | None = None) -> SearchResult:
        options = SearchOptions.parse(options)
        params = self.build_search_params(index, query, options)
        response = await self._request("POST", self._index_path(index, "query"), json_body=params) or {}
        return self.parse_search_response(response, options)

    async def multi_search(self, queries: list[SearchQuery]) -> list[SearchResult]:
        if not queries:
            return []
        requests = []
        parsed: list[SearchOptions] = []
        for q in queries:
            options = SearchOptions.parse(q.options)
            params = self.build_search_params(q.index, q.query, options)
            requests.append({"indexName": self.get_index_name(q.index), **params})
            parsed.append(options)
        response = await self._request("POST", "/1/indexes/*/queries", json_body={"requests": requests}) or {}
        results = response.get("results") or []
        if len(results) != len(queries):
            raise QueryError(f"Algolia multi-query returned {len(results)} results for {len(queries)} queries")
        return [self.parse_search_response(r, o) for r, o in zip(results, parsed, strict=True)]

    async def search_facet_values(
        self,
        index: Index,
        fields: list[str],
        query: str = "",
        max_per_field: int = 10,
        filters: Mapping[str, Any] | None = None,
    ) -> dict[str, list[FacetValue]]:
        options = SearchOptions.parse({"filters": dict(filters or {})})
        filter_params = build_filter_params(options.filters, frozenset(index.fields_of_type(FieldType.DATE)))
        values: dict[str, list[FacetValue]] = {}
        for field in fields:
            body: dict[str, Any] = {
                "facetQuery": query,
                "maxFacetHits": min(max(max_per_field, 1), 100),
                **filter_params,
            }
            path = self._index_path(index, "facets", field, "query")
            response = await self._request("POST", path, json_body=body) or {}
            hits = normalise_facet_counts((h.get("value"), h.get("count", 0)) for h in response.get("facetHits", []))
            values[field] = hits[: max(0, max_per_field)]
        return values

    def build_search_params(self, index: Index, query: str, options: SearchOptions) -> dict[str, Any]:
        params: dict[str, Any] = {
            "query": query,
            "page": options.page - 1,
            "hitsPerPage": options.per_page,
        }
        facets = list(dict.fromkeys([*options.facets, *options.stats]))
        if facets:
            params["facets"] = facets
        if options.max_values_per_facet:
            params["maxValuesPerFacet"] = options.max_values_per_facet

        params.update(build_filter_params(options.filters, frozenset(index.fields_of_type(FieldType.DATE))))

        if options.geo_filter is not None:
            params["aroundLatLng"] = f"{options.geo_filter.lat}, {options.geo_filter.lng}"
            params["aroundRadius"] = max(1, int(options.geo_filter.radius))
        elif options.geo_sort is not None:
            # Algolia ranks by distance whenever aroundLatLng is set.
            params["aroundLatLng"] = f"{options.geo_sort.lat}, {options.geo_sort.lng}"
            params["aroundRadius"] = "all"

        if options.sort:
            logger.warning("Algolia sorts through replica indexes; ignoring sort %s on %s", options.sort, index.handle)

        params["attributesToHighlight"] = (options.highlight_fields or ["*"]) if options.wants_highlight else []
        if options.fields:
            params["restrictSearchableAttributes"] = options.fields
        if options.attributes_to_retrieve is not None:
            params["attributesToRetrieve"] = options.attributes_to_retrieve
        if options.embedding is not None:
            logger.warning("Algolia has no vector search; ignoring the embedding for %s", index.handle)

        # Native keys (hitsPerPage, page, filters ...) win.
        params.update(options.native)
        return params

    def parse_search_response(self, response: dict[str, Any], options: SearchOptions) -> SearchResult:
        hits = [
            normalise_hit(h, highlights=normalise_highlight_result(h.pop("_highlightResult", None)))
            for h in (dict(raw) for raw in response.get("hits", []))
        ]
        facets_raw = response.get("facets") or {}
        wanted = set(options.facets) if "facets" not in options.native else set(facets_raw)
        facets = {f: normalise_facet_counts(counts) for f, counts in facets_raw.items() if f in wanted}
        stats = {
            f: {k: v for k, v in values.items() if k in ("min", "max", "avg", "sum")}
            for f, values in (response.get("facets_stats") or {}).items()
            if f in options.stats
        }
        return self.build_result(
            hits=hits,
            total_hits=int(response.get("nbHits", 0)),
            options=options,
            page=int(response.get("page", options.page - 1)) + 1,
            per_page=int(response.get("hitsPerPage", options.per_page)),
            processing_time_ms=response.get("processingTimeMS"),
            facets=facets,
            stats=stats,
            raw=response,
        )

    # ── Schema ───────────────────────────────────────────────────────────

    def map_field_type(self, field_type: FieldType) -> str:
        return _SETTING_KINDS.get(field_type, "searchableAttributes")

    def build_schema(self, field_mappings: list[FieldMapping]) -> dict[str, Any]:
        raise_for_embedding_fields(self, field_mappings)
        searchable: list[FieldMapping] = []
        faceting: list[str] = []
        numeric: list[str] = []
        for mapping in field_mappings:
            if not mapping.enabled:
                continue
            kind = self.map_field_type(mapping.index_field_type)
            if kind == "searchableAttributes":
                searchable.append(mapping)
            elif kind == "attributesForFaceting":
                wrapper = "filterOnly" if mapping.index_field_type == FieldType.BOOLEAN else "searchable"
                faceting.append(f"{wrapper}({mapping.index_field_name})")
            elif kind == "numericAttributesForFiltering":
                numeric.append(mapping.index_field_name)
            # _geoloc is recognised by name; no setting needed.

        settings: dict[str, Any] = {}
        if searchable:
            settings["searchableAttributes"] = self.sort_by_weight(searchable)
        if faceting:
            settings["attributesForFaceting"] = faceting
        if numeric:
            settings["numericAttributesForFiltering"] = numeric
        return settings

    async def get_index_schema(self, index: Index) -> dict[str, Any]:
        return await self._request("GET", self._index_path(index, "settings")) or {}

    async def get_schema_fields(self, index: Index) -> list[dict[str, str]]:
        schema = await self.get_index_schema(index)
        fields: dict[str, str] = {}
        for attr in schema.get("searchableAttributes") or []:
            # "title,summary" declares equally ranked attributes.
            for name in _SEARCHABLE_WRAPPER.sub(r"\1", attr).split(","):
                fields.setdefault(name.strip(), FieldType.TEXT.value)
        for attr in schema.get("attributesForFaceting") or []:
            fields.setdefault(_FACETING_WRAPPER.sub(r"\1", attr), FieldType.FACET.value)
        for name in schema.get("numericAttributesForFiltering") or []:
            fields.setdefault(name, FieldType.INTEGER.value)
        return [{"name": name, "type": type_} for name, type_ in fields.items()]

    # ── Atomic swap ──────────────────────────────────────────────────────

    def supports_atomic_swap(self) -> bool:
        return True

    async def swap_index(self, index: Index, swap_index: Index) -> None:
        swap_name = self.get_index_name(swap_index)
        live_name = self.get_index_name(index)
        # move replaces the destination atomically and removes the source.
        response = await self._request(
            "POST",
            self._index_path(swap_name, "operation"),
            json_body={"operation": "move", "destination": live_name},
        )
        await self._wait_for_task(live_name, response)
        logger.info("Moved Algolia index %s onto %s", swap_name, live_name)

    # ── Health ───────────────────────────────────────────────────────────

    async def test_connection(self) -> bool:
        try:
            await self._request("GET", "/1/indexes", params={"page": 0, "hitsPerPage": 1})
        except PermissionRestrictedError as e:
            if _INVALID_CREDENTIALS in str(e).lower():
                logger.warning("Algolia rejected the credentials: %s", e)
                return False
            # Search-only keys cannot list indexes.
            return True
        except EngineError as e:
            logger.warning("Algolia connection test failed: %s", e)
            return False
        return True


def normalise_highlight_result(data: Any) -> dict[str, list[str]]:
    """Flatten ``_highlightResult`` into ``{field: [fragment, ...]}``.

    Entries with ``matchLevel == "none"`` carry no highlight and are
    skipped; list-valued attributes keep only their matching elements.
    """
    if not isinstance(data, Mapping):
        return {}
    highlights: dict[str, list[str]] = {}
    for field, value in data.items():
        entries = value if isinstance(value, list) else [value]
        fragments = [
            e["value"]
            for e in entries
            if isinstance(e, Mapping) and isinstance(e.get("value"), str) and e.get("matchLevel", "none") != "none"
        ]
        if fragments:
            highlights[field] = fragments
    return highlights


def _format_number(value: float | int) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
