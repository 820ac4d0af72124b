"""Typesense engine — Typed collections over the Typesense REST API.

Uses ``httpx`` via :class:`HttpClientMixin` with the
``X-TYPESENSE-API-KEY`` header.  Searches go through ``/multi_search``
(POST) so long vector queries never hit URL length limits.  Atomic swap
points a collection alias at a freshly built collection, alternating
between ``_swap_a`` and ``_swap_b``.

Config keys: ``host`` (full URL, or combined with ``port`` and
``protocol``), ``api_key``, ``index_prefix``, ``embedding_dimension``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, ClassVar
from urllib.parse import quote

from searchindex.engines.base.engine import (
    Document,
    SearchEngine,
    SearchQuery,
    date_value_to_epoch_seconds,
    document_id,
    normalise_facet_counts,
    normalise_hit,
)
from searchindex.engines.base.exceptions import (
    BulkFailure,
    BulkIndexError,
    ConfigurationError,
    EngineError,
    PermissionRestrictedError,
    QueryError,
    SchemaError,
    ValidationError,
)
from searchindex.engines.base.http import HttpClientMixin
from searchindex.models.index import EngineType, FieldMapping, FieldType, Index
from searchindex.models.options import RangeFilter, SearchOptions
from searchindex.models.result import FacetValue, SearchResult

logger = logging.getLogger(__name__)

_FIELD_TYPES: dict[FieldType, tuple[str, bool]] = {
    FieldType.TEXT: ("string", False),
    FieldType.KEYWORD: ("string", True),
    FieldType.INTEGER: ("int32", False),
    FieldType.FLOAT: ("float", False),
    FieldType.BOOLEAN: ("bool", False),
    FieldType.DATE: ("int64", False),
    FieldType.GEO_POINT: ("geopoint", False),
    FieldType.FACET: ("string", True),
    FieldType.OBJECT: ("object", False),
    FieldType.EMBEDDING: ("float[]", False),
}

_REVERSE_TYPES: dict[str, FieldType] = {
    "string": FieldType.TEXT,
    "string[]": FieldType.FACET,
    "int32": FieldType.INTEGER,
    "int64": FieldType.INTEGER,
    "float": FieldType.FLOAT,
    "bool": FieldType.BOOLEAN,
    "geopoint": FieldType.GEO_POINT,
    "object": FieldType.OBJECT,
    "object[]": FieldType.OBJECT,
    "float[]": FieldType.EMBEDDING,
}

_SORTABLE_TYPES = frozenset({"int32", "int64", "float"})


# ── Filter grammar ───────────────────────────────────────────────────────


def quote_filter_value(value: Any) -> str:
    """Render one ``filter_by`` operand; strings are backtick-quoted."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(int(value)) if isinstance(value, float) and value.is_integer() else str(value)
    text = str(value).replace("\\", "\\\\").replace("`", "\\`")
    return f"`{text}`"


def build_filter_by(filters: Mapping[str, Any], date_fields: frozenset[str] = frozenset()) -> str:
    """Translate unified filters into a ``filter_by`` expression.

    List values become ``field:=[a, b]`` (OR); fields are joined with ``&&``.
    """
    clauses: list[str] = []
    for field, value in filters.items():
        if isinstance(value, RangeFilter):
            lo, hi = value.min, value.max
            if field in date_fields:
                lo = date_value_to_epoch_seconds(lo) if lo is not None else None
                hi = date_value_to_epoch_seconds(hi) if hi is not None else None
            if isinstance(lo, str) or isinstance(hi, str):
                raise ValidationError(f"Invalid numeric bound for '{field}'")
            if lo is not None and hi is not None:
                clauses.append(f"{field}:[{quote_filter_value(lo)}..{quote_filter_value(hi)}]")
            elif lo is not None:
                clauses.append(f"{field}:>={quote_filter_value(lo)}")
            elif hi is not None:
                clauses.append(f"{field}:<={quote_filter_value(hi)}")
        elif isinstance(value, list):
            clauses.append(f"{field}:=[{', '.join(quote_filter_value(v) for v in value)}]")
        else:
            clauses.append(f"{field}:={quote_filter_value(value)}")
    return " && ".join(clauses)


class TypesenseEngine(HttpClientMixin, SearchEngine):
    """Search engine backed by Typesense."""

    engine_type = EngineType.TYPESENSE
    display_name = "Typesense"

    # Scoped keys without the needed action get 401 from Typesense.
    permission_statuses = (401, 403)
    swap_suffixes: ClassVar[tuple[str, str]] = ("_swap_a", "_swap_b")

    def _client_options(self) -> dict[str, Any]:
        host = str(self.setting("host", "") or "")
        if not host:
            raise ConfigurationError("No Typesense host configured. Set it globally or on the index.")
        if "://" not in host:
            protocol = self.setting("protocol", "http")
            port = self.setting("port", "")
            host = f"{protocol}://{host}" + (f":{port}" if port else "")
        headers = {"Accept": "application/json"}
        api_key = self.setting("api_key", "")
        if api_key:
            headers["X-TYPESENSE-API-KEY"] = str(api_key)
        return {"base_url": host.rstrip("/"), "headers": headers}

    def _collection_path(self, name: str, *parts: str) -> str:
        return "/collections/" + "/".join([quote(name, safe=""), *(quote(str(p), safe="") for p in parts)])

    # ── Index lifecycle ──────────────────────────────────────────────────

    async def create_index(self, index: Index) -> None:
        name = self.get_index_name(index)
        await self._request("POST", "/collections", json_body=self._collection_schema(name, index.enabled_mappings()))
        logger.info("Created Typesense collection %s", name)

    async def update_index_settings(self, index: Index) -> None:
        """Add new fields and re-declare fields whose type changed.

        Typesense rejects re-adding an unchanged field, so only the
        difference against the live schema is sent.
        """
        name = self.get_index_name(index)
        current = await self._request("GET", self._collection_path(name)) or {}
        existing = {f["name"]: f for f in current.get("fields", [])}
        changes: list[dict[str, Any]] = []
        for field in self.build_schema(index.enabled_mappings()):
            live = existing.get(field["name"])
            if live is None:
                changes.append(field)
            elif live.get("type") != field["type"] or bool(live.get("facet")) != field["facet"]:
                changes.append({"name": field["name"], "drop": True})
                changes.append(field)
        if changes:
            await self._request("PATCH", self._collection_path(name), json_body={"fields": changes})

    async def delete_index(self, index: Index) -> None:
        name = self.get_index_name(index)
        target = await self._get_alias_target(name)
        if target is not None:
            await self._request("DELETE", f"/aliases/{quote(name, safe='')}", not_found_ok=True)
            await self._request("DELETE", self._collection_path(target), not_found_ok=True)
        else:
            await self._request("DELETE", self._collection_path(name), not_found_ok=True)

    async def index_exists(self, index: Index) -> bool:
        name = self.get_index_name(index)
        try:
            return await self._request("GET", self._collection_path(name), not_found_ok=True) is not None
        except PermissionRestrictedError:
            logger.info("Collection lookup for %s is permission-restricted; probing with search", index.handle)
            try:
                await self._search_one({"collection": name, "q": "*", "per_page": 0})
            except QueryError as e:
                if e.status_code == 404:
                    return False
                raise
            return True

    # ── Documents ────────────────────────────────────────────────────────

    def prepare_document(self, index: Index, object_id: str, document: Document) -> Document:
        doc = super().prepare_document(index, object_id, document)
        doc["id"] = str(object_id)
        for field in index.fields_of_type(FieldType.GEO_POINT):
            point = doc.get(field)
            if isinstance(point, Mapping) and point.get("lat") is not None:
                doc[field] = [float(point["lat"]), float(point.get("lng", point.get("lon")))]
        return doc

    async def index_document(self, index: Index, object_id: str, document: Document) -> None:
        await self._request(
            "POST",
            self._collection_path(self.get_index_name(index), "documents"),
            json_body=self.prepare_document(index, object_id, document),
            params={"action": "upsert"},
        )

    async def index_documents(self, index: Index, documents: list[Document]) -> None:
        prepared: list[Document] = []
        for document in documents:
            object_id = document_id(document)
            if object_id is None:
                logger.warning("Skipping document without objectID for %s", index.handle)
                continue
            prepared.append(self.prepare_document(index, object_id, document))
        if not prepared:
            return

        name = self.get_index_name(index)
        body = "\n".join(json.dumps(doc, default=str) for doc in prepared)
        response = await self._request(
            "POST",
            self._collection_path(name, "documents", "import"),
            content=body,
            content_type="text/plain",
            params={"action": "upsert"},
        )
        failures = [
            BulkFailure(object_id=doc["id"], reason=str(line.get("error", "unknown error")))
            for doc, line in zip(prepared, _jsonl(response), strict=False)
            if not line.get("success", False)
        ]
        if failures:
            logger.warning("Typesense import into %s had %d failed document(s)", name, len(failures))
            raise BulkIndexError(name, failures)

    async def delete_document(self, index: Index, object_id: str) -> None:
        await self._request(
            "DELETE",
            self._collection_path(self.get_index_name(index), "documents", str(object_id)),
            not_found_ok=True,
        )

    async def delete_documents(self, index: Index, object_ids: list[str]) -> None:
        if not object_ids:
            return
        await self._request(
            "DELETE",
            self._collection_path(self.get_index_name(index), "documents"),
            params={"filter_by": f"id:[{', '.join(quote_filter_value(str(i)) for i in object_ids)}]"},
        )

    async def flush_index(self, index: Index) -> None:
        """Drop and recreate the backing collection with the same schema."""
        name = self.get_index_name(index)
        target = await self._get_alias_target(name) or name
        info = await self._request("GET", self._collection_path(target)) or {}
        fields = [{k: v for k, v in f.items() if k != "indexed"} for f in info.get("fields", [])]
        schema: dict[str, Any] = {"name": target, "fields": fields}
        if info.get("enable_nested_fields"):
            schema["enable_nested_fields"] = True
        await self._request("DELETE", self._collection_path(target))
        await self._request("POST", "/collections", json_body=schema)

    async def get_document(self, index: Index, object_id: str) -> Document | None:
        doc = await self._request(
            "GET",
            self._collection_path(self.get_index_name(index), "documents", str(object_id)),
            not_found_ok=True,
        )
        if doc is None:
            return None
        doc.setdefault("objectID", str(doc.get("id", object_id)))
        return doc

    async def get_document_count(self, index: Index) -> int:
        info = await self._request("GET", self._collection_path(self.get_index_name(index))) or {}
        return int(info.get("num_documents", 0))

    async def get_all_document_ids(self, index: Index) -> list[str]:
        response = await self._request(
            "GET",
            self._collection_path(self.get_index_name(index), "documents", "export"),
            params={"include_fields": "id"},
        )
        return [str(doc["id"]) for doc in _jsonl(response) if "id" in doc]

    # ── Search ───────────────────────────────────────────────────────────

    async def search(self, index: Index, query: str, options: SearchOptions | None = None) -> SearchResult:
        options = SearchOptions.parse(options)
        params = self.build_search_params(index, query, options)
        response = await self._search_one(params)
        return self.parse_search_response(response, options, params)

    async def multi_search(self, queries: list[SearchQuery]) -> list[SearchResult]:
        if not queries:
            return []
        searches: list[dict[str, Any]] = []
        parsed: list[SearchOptions] = []
        for q in queries:
            options = SearchOptions.parse(q.options)
            searches.append(self.build_search_params(q.index, q.query, options))
            parsed.append(options)
        response = await self._request("POST", "/multi_search", json_body={"searches": searches}) or {}
        results = response.get("results") or []
        if len(results) != len(queries):
            raise QueryError(f"Typesense multi_search returned {len(results)} results for {len(queries)} searches")
        out = []
        for result, options, params in zip(results, parsed, searches, strict=True):
            _raise_for_search_error(result)
            out.append(self.parse_search_response(result, options, params))
        return out

    async def search_facet_values(
        self,
        index: Index,
        fields: list[str],
        query: str = "",
        max_per_field: int = 10,
        filters: Mapping[str, Any] | None = None,
    ) -> dict[str, list[FacetValue]]:
        options = SearchOptions.parse({"filters": dict(filters or {})})
        filter_by = build_filter_by(options.filters, frozenset(index.fields_of_type(FieldType.DATE)))
        values: dict[str, list[FacetValue]] = {}
        for field in fields:
            params: dict[str, Any] = {
                "collection": self.get_index_name(index),
                "q": "*",
                "query_by": self._query_by(index),
                "facet_by": field,
                "max_facet_values": max(max_per_field, 1),
                "per_page": 0,
            }
            if query:
                params["facet_query"] = f"{field}:{query}"
            if filter_by:
                params["filter_by"] = filter_by
            response = await self._search_one(params)
            counts = next((fc for fc in response.get("facet_counts", []) if fc.get("field_name") == field), {})
            hits = normalise_facet_counts((c.get("value"), c.get("count", 0)) for c in counts.get("counts", []))
            values[field] = hits[: max(0, max_per_field)]
        return values

    async def _search_one(self, params: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", "/multi_search", json_body={"searches": [params]}) or {}
        results = response.get("results") or [{}]
        _raise_for_search_error(results[0])
        return results[0]

    def build_search_params(self, index: Index, query: str, options: SearchOptions) -> dict[str, Any]:
        date_fields = frozenset(index.fields_of_type(FieldType.DATE))
        params: dict[str, Any] = {
            "collection": self.get_index_name(index),
            "q": query or "*",
            "query_by": ",".join(options.fields) if options.fields else self._query_by(index),
            "page": options.page,
            "per_page": options.per_page,
        }
        if not options.fields:
            weights = self._query_by_weights(index)
            if weights:
                params["query_by_weights"] = weights

        clauses = [build_filter_by(options.filters, date_fields)] if options.filters else []
        if options.geo_filter is not None:
            geo = options.geo_filter
            field = geo.field or self._geo_field(index)
            clauses.append(f"{field}:({geo.lat}, {geo.lng}, {geo.radius / 1000:g} km)")
        clauses = [c for c in clauses if c]
        if clauses:
            params["filter_by"] = " && ".join(clauses)

        sort = [f"{field}:{direction}" for field, direction in options.sort.items()]
        if options.geo_sort is not None:
            sort.append(f"{self._geo_field(index)}({options.geo_sort.lat}, {options.geo_sort.lng}):asc")
        if sort:
            params["sort_by"] = ",".join(sort)

        facets = list(dict.fromkeys([*options.facets, *options.stats]))
        if facets:
            params["facet_by"] = ",".join(facets)
            if options.max_values_per_facet:
                params["max_facet_values"] = options.max_values_per_facet

        if options.wants_highlight and options.highlight_fields:
            params["highlight_fields"] = ",".join(options.highlight_fields)
        if options.attributes_to_retrieve is not None:
            params["include_fields"] = ",".join(options.attributes_to_retrieve)

        embedding_field = self.resolve_embedding_field(index, options)
        if options.embedding is not None:
            if embedding_field is None:
                logger.warning("Embedding supplied for %s but no embedding field could be resolved", index.handle)
            else:
                vector = ",".join(repr(float(v)) for v in options.embedding)
                k = max(options.per_page * options.page, 1)
                params["vector_query"] = f"{embedding_field}:([{vector}], k:{k})"

        params.update(options.native)
        return params

    def parse_search_response(
        self,
        response: dict[str, Any],
        options: SearchOptions,
        params: dict[str, Any],
    ) -> SearchResult:
        hits = [self._normalise_raw_hit(h) for h in response.get("hits", [])]
        per_page = int((response.get("request_params") or {}).get("per_page", params.get("per_page", options.per_page)))

        facets: dict[str, list[FacetValue]] = {}
        stats: dict[str, dict[str, float]] = {}
        for counts in response.get("facet_counts", []):
            field = counts.get("field_name")
            if field in options.facets or "facet_by" in options.native:
                pairs = ((c.get("value"), c.get("count", 0)) for c in counts.get("counts", []))
                facets[field] = normalise_facet_counts(pairs)
            if field in options.stats and counts.get("stats"):
                stats[field] = {k: v for k, v in counts["stats"].items() if k in ("min", "max", "avg", "sum")}

        return self.build_result(
            hits=hits,
            total_hits=int(response.get("found", 0)),
            options=options,
            page=int(response.get("page", params.get("page", options.page))),
            per_page=per_page,
            processing_time_ms=response.get("search_time_ms"),
            facets=facets,
            stats=stats,
            raw=response,
        )

    @staticmethod
    def _normalise_raw_hit(hit: dict[str, Any]) -> Document:
        doc = dict(hit.get("document") or {})
        highlights: dict[str, Any] = {}
        # v0.24+ returns an object keyed by field; older versions a list.
        for field, value in (hit.get("highlight") or {}).items():
            if isinstance(value, Mapping) and value.get("snippet"):
                highlights[field] = value["snippet"]
            elif isinstance(value, list):
                snippets = [v.get("snippet") for v in value if isinstance(v, Mapping) and v.get("snippet")]
                if snippets:
                    highlights[field] = snippets
        if not highlights:
            for entry in hit.get("highlights") or []:
                snippet = entry.get("snippets") or entry.get("snippet")
                if entry.get("field") and snippet:
                    highlights[entry["field"]] = snippet
        score = hit.get("text_match")
        if score is None and hit.get("vector_distance") is not None:
            score = 1.0 - float(hit["vector_distance"])
        return normalise_hit(doc, id_key="id", score=score, highlights=highlights)

    def _query_by(self, index: Index) -> str:
        names = [m.index_field_name for m in self._string_mappings(index)]
        return ",".join(names) if names else "*"

    def _query_by_weights(self, index: Index) -> str:
        mappings = self._string_mappings(index)
        return ",".join(str(m.weight) for m in mappings)

    def _string_mappings(self, index: Index) -> list[FieldMapping]:
        return [
            m
            for m in index.enabled_mappings()
            if _FIELD_TYPES.get(m.index_field_type, ("string", False))[0] == "string"
        ]

    @staticmethod
    def _geo_field(index: Index) -> str:
        fields = index.fields_of_type(FieldType.GEO_POINT)
        if not fields:
            raise ValidationError(f"Index '{index.handle}' has no geo_point field for geo queries")
        return fields[0]

    # ── Schema ───────────────────────────────────────────────────────────

    def map_field_type(self, field_type: FieldType) -> dict[str, Any]:
        native, facet = _FIELD_TYPES.get(field_type, ("string", False))
        return {"type": native, "facet": facet}

    def build_schema(self, field_mappings: list[FieldMapping]) -> list[dict[str, Any]]:
        fields: list[dict[str, Any]] = []
        for mapping in field_mappings:
            if not mapping.enabled:
                continue
            field = {
                "name": mapping.index_field_name,
                **self.map_field_type(mapping.index_field_type),
                "optional": True,
            }
            if field["type"] in _SORTABLE_TYPES:
                field["sort"] = True
            if mapping.index_field_type == FieldType.EMBEDDING:
                dimension = mapping.dimension or int(self.setting("embedding_dimension", 0) or 0)
                if dimension <= 0:
                    raise SchemaError(
                        f"Embedding field '{mapping.index_field_name}' needs a vector dimension: set "
                        f"resolver_config.dimension or the engine's embedding_dimension"
                    )
                field["num_dim"] = dimension
            fields.append(field)
        return fields

    def _collection_schema(self, name: str, field_mappings: list[FieldMapping]) -> dict[str, Any]:
        schema: dict[str, Any] = {"name": name, "fields": self.build_schema(field_mappings)}
        if any(f.index_field_type == FieldType.OBJECT for f in field_mappings if f.enabled):
            schema["enable_nested_fields"] = True
        return schema

    async def get_index_schema(self, index: Index) -> dict[str, Any]:
        return await self._request("GET", self._collection_path(self.get_index_name(index))) or {}

    async def get_schema_fields(self, index: Index) -> list[dict[str, str]]:
        schema = await self.get_index_schema(index)
        fields = []
        for field in schema.get("fields", []):
            if field.get("name") in ("id", ".*"):
                continue
            unified = _REVERSE_TYPES.get(field.get("type", ""), FieldType.TEXT)
            if unified == FieldType.TEXT and field.get("facet"):
                unified = FieldType.KEYWORD
            fields.append({"name": field["name"], "type": unified.value})
        return fields

    # ── Atomic swap ──────────────────────────────────────────────────────

    def supports_atomic_swap(self) -> bool:
        return True

    async def build_swap_handle(self, index: Index) -> str:
        first, second = self.swap_suffixes
        current = await self._get_alias_target(self.get_index_name(index))
        if current is not None and current.endswith(first):
            return f"{index.handle}{second}"
        return f"{index.handle}{first}"

    async def swap_index(self, index: Index, swap_index: Index) -> None:
        alias = self.get_index_name(index)
        new_target = self.get_index_name(swap_index)
        current = await self._get_alias_target(alias)
        if current == new_target:
            logger.info("Alias %s already points at %s", alias, new_target)
            return
        if current is None:
            # First swap: a direct collection must make way for the alias.
            await self._request("DELETE", self._collection_path(alias), not_found_ok=True)
        # Upserting an alias repoints it atomically.
        await self._request("PUT", f"/aliases/{quote(alias, safe='')}", json_body={"collection_name": new_target})
        if current is not None:
            await self._request("DELETE", self._collection_path(current), not_found_ok=True)
        logger.info("Alias %s now points at %s", alias, new_target)

    async def _get_alias_target(self, alias: str) -> str | None:
        try:
            response = await self._request("GET", f"/aliases/{quote(alias, safe='')}", not_found_ok=True)
        except PermissionRestrictedError:
            return None
        if not isinstance(response, Mapping):
            return None
        return response.get("collection_name")

    # ── Health ───────────────────────────────────────────────────────────

    async def test_connection(self) -> bool:
        try:
            health = await self._request("GET", "/health") or {}
        except PermissionRestrictedError:
            return True
        except EngineError as e:
            logger.warning("Typesense connection test failed: %s", e)
            return False
        return health.get("ok") is True


def _jsonl(response: Any) -> list[dict[str, Any]]:
    """Decode a JSONL body; a single line already arrives decoded."""
    if isinstance(response, Mapping):
        return [dict(response)]
    if not isinstance(response, str):
        return []
    return [json.loads(line) for line in response.splitlines() if line.strip()]


def _raise_for_search_error(result: Mapping[str, Any]) -> None:
    if "error" in result:
        raise QueryError(f"Typesense search failed: {result['error']}", status_code=result.get("code"))
