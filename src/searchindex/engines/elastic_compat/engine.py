"""Elastic-compatible engine — Shared logic for Elasticsearch and OpenSearch.

Both backends speak the same REST surface and query DSL.  This base owns:

  - mappings (text fields carry a ``.keyword`` sub-field, dates accept
    epoch seconds, epoch millis and ISO-8601, vectors carry a dimension)
  - the search DSL builder (multi_match / knn / hybrid ``bool.should``,
    filters, sort, highlight, phrase suggester, aggregations)
  - ``_bulk`` writes with per-item failure collection
  - alias-based atomic swap alternating between ``_swap_a`` / ``_swap_b``
  - permission-restricted fallbacks for read-only credentials

Subclasses provide the transport (:meth:`_request`, :meth:`_head`) and
their vector field flavour.
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from typing import Any, ClassVar
from urllib.parse import quote

from searchindex.engines.base.engine import (
    DATE_ISO8601,
    Document,
    SearchEngine,
    SearchQuery,
    document_id,
    normalise_facet_counts,
    normalise_hit,
)
from searchindex.engines.base.exceptions import (
    BulkFailure,
    BulkIndexError,
    EngineError,
    PermissionRestrictedError,
    QueryError,
    SchemaError,
    ValidationError,
)
from searchindex.models.index import FieldMapping, FieldType, Index
from searchindex.models.options import RangeFilter, SearchOptions
from searchindex.models.result import FacetValue, GeoCluster, HistogramBucket, SearchResult

logger = logging.getLogger(__name__)

DATE_MAPPING_FORMAT = "epoch_second||epoch_millis||strict_date_optional_time"

_FIELD_TYPES: dict[FieldType, str] = {
    FieldType.TEXT: "text",
    FieldType.KEYWORD: "keyword",
    FieldType.INTEGER: "integer",
    FieldType.FLOAT: "float",
    FieldType.BOOLEAN: "boolean",
    FieldType.DATE: "date",
    FieldType.GEO_POINT: "geo_point",
    FieldType.FACET: "keyword",
    FieldType.OBJECT: "object",
}

_REVERSE_TYPES: dict[str, FieldType] = {
    "text": FieldType.TEXT,
    "match_only_text": FieldType.TEXT,
    "keyword": FieldType.KEYWORD,
    "integer": FieldType.INTEGER,
    "long": FieldType.INTEGER,
    "short": FieldType.INTEGER,
    "byte": FieldType.INTEGER,
    "float": FieldType.FLOAT,
    "double": FieldType.FLOAT,
    "half_float": FieldType.FLOAT,
    "scaled_float": FieldType.FLOAT,
    "boolean": FieldType.BOOLEAN,
    "date": FieldType.DATE,
    "date_nanos": FieldType.DATE,
    "geo_point": FieldType.GEO_POINT,
    "object": FieldType.OBJECT,
    "nested": FieldType.OBJECT,
    "knn_vector": FieldType.EMBEDDING,
    "dense_vector": FieldType.EMBEDDING,
}

_STATS_SUFFIX = "_stats"
_HISTOGRAM_SUFFIX = "_histogram"
_GEO_GRID_AGG = "_geo_grid"
_SUGGESTER = "phrase_suggestion"


def _path(*parts: str) -> str:
    return "/" + "/".join(quote(str(p), safe="") for p in parts)


def _ndjson(lines: list[dict[str, Any]]) -> str:
    return "\n".join(json.dumps(line, default=str) for line in lines) + "\n"


class ElasticCompatEngine(SearchEngine):
    """Shared implementation for the Elasticsearch family."""

    date_format = DATE_ISO8601
    embedding_min_length = 51

    vector_type: ClassVar[str] = "knn_vector"
    vector_dimension_key: ClassVar[str] = "dimension"
    swap_suffixes: ClassVar[tuple[str, str]] = ("_swap_a", "_swap_b")
    default_facet_size: ClassVar[int] = 100
    id_page_size: ClassVar[int] = 1000

    # ── Transport ────────────────────────────────────────────────────────

    @abstractmethod
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
        """Send one request; see :class:`~searchindex.engines.base.http.HttpClientMixin`."""

    @abstractmethod
    async def _head(self, path: str) -> bool:
        """HEAD request: True on 2xx, False on 404.

        Raises:
            PermissionRestrictedError: On HTTP 403.
        """

    # ── Index lifecycle ──────────────────────────────────────────────────

    async def create_index(self, index: Index) -> None:
        mappings = index.enabled_mappings()
        body: dict[str, Any] = {"mappings": self.build_schema(mappings)}
        settings = self.index_settings(mappings)
        if settings:
            body["settings"] = settings
        await self._request("PUT", _path(self.get_index_name(index)), json_body=body)
        logger.info("Created %s index %s", self.display_name, self.get_index_name(index))

    async def update_index_settings(self, index: Index) -> None:
        schema = self.build_schema(index.enabled_mappings())
        await self._request("PUT", _path(self.get_index_name(index), "_mapping"), json_body=schema)

    async def delete_index(self, index: Index) -> None:
        name = self.get_index_name(index)
        target = await self._get_alias_target(name)
        if target is not None:
            await self._request("DELETE", _path(target, "_alias", name), not_found_ok=True)
            await self._request("DELETE", _path(target), not_found_ok=True)
        else:
            await self._request("DELETE", _path(name), not_found_ok=True)

    async def index_exists(self, index: Index) -> bool:
        name = self.get_index_name(index)
        try:
            return await self._head(_path(name)) or await self._head(_path("_alias", name))
        except PermissionRestrictedError:
            # Read-only credentials may lack indices:admin/exists; _count
            # only needs read access and still tells "missing" from "present".
            logger.info("Index existence check on %s is permission-restricted; probing with _count", name)
            try:
                await self._request("GET", _path(name, "_count"))
            except QueryError as e:
                if e.status_code == 404:
                    return False
                raise
            return True

    def index_settings(self, field_mappings: list[FieldMapping]) -> dict[str, Any]:
        """Index-level settings sent with ``create_index``."""
        return {}

    # ── Documents ────────────────────────────────────────────────────────

    async def index_document(self, index: Index, object_id: str, document: Document) -> None:
        body = self.prepare_document(index, object_id, document)
        await self._request("PUT", _path(self.get_index_name(index), "_doc", str(object_id)), json_body=body)

    async def index_documents(self, index: Index, documents: list[Document]) -> None:
        name = self.get_index_name(index)
        lines: list[dict[str, Any]] = []
        for document in documents:
            object_id = document_id(document)
            if object_id is None:
                logger.warning("Skipping document without objectID in bulk request to %s", name)
                continue
            lines.append({"index": {"_index": name, "_id": object_id}})
            lines.append(self.prepare_document(index, object_id, document))
        if not lines:
            return
        response = await self._bulk(lines)
        self._raise_for_bulk_errors(name, response)

    async def delete_document(self, index: Index, object_id: str) -> None:
        await self._request(
            "DELETE",
            _path(self.get_index_name(index), "_doc", str(object_id)),
            not_found_ok=True,
        )

    async def delete_documents(self, index: Index, object_ids: list[str]) -> None:
        if not object_ids:
            return
        name = self.get_index_name(index)
        lines = [{"delete": {"_index": name, "_id": str(object_id)}} for object_id in object_ids]
        response = await self._bulk(lines)
        self._raise_for_bulk_errors(name, response)

    async def flush_index(self, index: Index) -> None:
        await self._request(
            "POST",
            _path(self.get_index_name(index), "_delete_by_query"),
            json_body={"query": {"match_all": {}}},
            params={"conflicts": "proceed", "refresh": "true"},
        )

    async def get_document(self, index: Index, object_id: str) -> Document | None:
        response = await self._request(
            "GET",
            _path(self.get_index_name(index), "_doc", str(object_id)),
            not_found_ok=True,
        )
        if not response or not response.get("found", True):
            return None
        source = dict(response.get("_source") or {})
        source.setdefault("objectID", str(response.get("_id", object_id)))
        return source

    async def get_document_count(self, index: Index) -> int:
        response = await self._request("GET", _path(self.get_index_name(index), "_count"))
        return int((response or {}).get("count", 0))

    async def get_all_document_ids(self, index: Index) -> list[str]:
        path = _path(self.get_index_name(index), "_search")
        body: dict[str, Any] = {
            "size": self.id_page_size,
            "query": {"match_all": {}},
            "sort": ["_doc"],
            "_source": False,
        }
        ids: list[str] = []
        while True:
            response = await self._request("POST", path, json_body=body)
            hits = ((response or {}).get("hits") or {}).get("hits") or []
            if not hits:
                return ids
            ids.extend(str(hit["_id"]) for hit in hits)
            body["search_after"] = hits[-1]["sort"]

    async def _bulk(self, lines: list[dict[str, Any]]) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/_bulk",
            content=_ndjson(lines),
            content_type="application/x-ndjson",
        ) or {}

    @staticmethod
    def _raise_for_bulk_errors(index_name: str, response: dict[str, Any]) -> None:
        if not response.get("errors"):
            return
        failures: list[BulkFailure] = []
        for item in response.get("items", []):
            action = next(iter(item.values()), {}) if item else {}
            error = action.get("error")
            if not error:
                continue
            if isinstance(error, dict):
                reason = error.get("reason") or error.get("type") or "unknown error"
            else:
                reason = str(error)
            failures.append(BulkFailure(object_id=str(action.get("_id", "")), reason=reason))
        if failures:
            logger.warning("Bulk request to %s had %d failed item(s)", index_name, len(failures))
            raise BulkIndexError(index_name, failures)

    # ── Search ───────────────────────────────────────────────────────────

    async def search(self, index: Index, query: str, options: SearchOptions | None = None) -> SearchResult:
        options = SearchOptions.parse(options)
        body = self.build_search_body(index, query, options)
        response = await self._request("POST", _path(self.get_index_name(index), "_search"), json_body=body)
        return self.parse_search_response(response or {}, query, options, body)

    async def multi_search(self, queries: list[SearchQuery]) -> list[SearchResult]:
        if not queries:
            return []
        lines: list[dict[str, Any]] = []
        bodies: list[dict[str, Any]] = []
        parsed: list[SearchOptions] = []
        for q in queries:
            options = SearchOptions.parse(q.options)
            body = self.build_search_body(q.index, q.query, options)
            lines.append({"index": self.get_index_name(q.index)})
            lines.append(body)
            bodies.append(body)
            parsed.append(options)

        response = await self._request(
            "POST",
            "/_msearch",
            content=_ndjson(lines),
            content_type="application/x-ndjson",
        ) or {}
        responses = response.get("responses", [])
        if len(responses) != len(queries):
            raise QueryError(
                f"{self.display_name} _msearch returned {len(responses)} responses for {len(queries)} queries"
            )

        results: list[SearchResult] = []
        for q, options, body, resp in zip(queries, parsed, bodies, responses, strict=True):
            if "error" in resp:
                error = resp["error"]
                reason = error.get("reason", error) if isinstance(error, dict) else error
                raise QueryError(
                    f"{self.display_name} search on '{q.index.handle}' failed: {reason}",
                    status_code=resp.get("status"),
                )
            results.append(self.parse_search_response(resp, q.query, options, body))
        return results

    def build_search_body(self, index: Index, query: str, options: SearchOptions) -> dict[str, Any]:
        """Translate unified options into a ``_search`` body.

        Native ``from``/``size``/``sort``/``highlight``/``aggs`` keys in
        ``options.native`` replace their unified equivalents.
        """
        native = options.native
        types = index.field_types()
        fields = options.fields or ["*"]
        size = int(native["size"]) if "size" in native else options.per_page
        offset = int(native["from"]) if "from" in native else options.offset

        text_query: dict[str, Any] | None = None
        if query != "":
            text_query = {
                "multi_match": {
                    "query": query,
                    "fields": fields,
                    "type": native.get("matchType", "bool_prefix"),
                }
            }

        knn_query: dict[str, Any] | None = None
        embedding_field = self.resolve_embedding_field(index, options)
        if options.embedding is not None:
            if embedding_field is None:
                logger.warning("Embedding supplied for %s but no embedding field could be resolved", index.handle)
            else:
                knn_query = self.knn_clause(embedding_field, options.embedding, max(size, 1))

        if knn_query is not None and text_query is not None:
            match_query: dict[str, Any] = {"bool": {"should": [text_query, knn_query]}}
        elif knn_query is not None:
            match_query = knn_query
        elif text_query is not None:
            match_query = text_query
        else:
            match_query = {"match_all": {}}

        filter_clauses = self.build_filter_clauses(index, options)
        if filter_clauses:
            body: dict[str, Any] = {"query": {"bool": {"must": [match_query], "filter": filter_clauses}}}
        else:
            body = {"query": match_query}

        body["from"] = offset
        body["size"] = size
        body["track_total_hits"] = True

        if "sort" in native:
            body["sort"] = native["sort"]
        else:
            sort = [{self._exact_field(types, f): {"order": d}} for f, d in options.sort.items()]
            if options.geo_sort is not None:
                geo_field = self._geo_field(index, None)
                sort.append(
                    {
                        "_geo_distance": {
                            geo_field: {"lat": options.geo_sort.lat, "lon": options.geo_sort.lng},
                            "order": "asc",
                            "unit": "m",
                        }
                    }
                )
            if sort:
                body["sort"] = sort

        if options.attributes_to_retrieve is not None:
            body["_source"] = options.attributes_to_retrieve

        if "highlight" in native:
            body["highlight"] = native["highlight"]
        elif options.wants_highlight:
            highlight_fields = options.highlight_fields or ["*"]
            body["highlight"] = {"fields": {f: {} for f in highlight_fields}}

        # Phrase suggester needs a concrete text field; there is no _all field.
        if options.suggest and query != "" and fields[0] != "*":
            body["suggest"] = {
                "text": query,
                _SUGGESTER: {
                    "phrase": {
                        "field": fields[0],
                        "size": 3,
                        "gram_size": 3,
                        "direct_generator": [{"field": fields[0], "suggest_mode": "missing"}],
                    }
                },
            }

        if "aggs" in native:
            body["aggs"] = native["aggs"]
        else:
            aggs = self.build_aggregations(index, options)
            if aggs:
                body["aggs"] = aggs
        return body

    def knn_clause(self, field: str, vector: list[float], k: int) -> dict[str, Any]:
        return {"knn": {field: {"vector": vector, "k": k}}}

    def build_filter_clauses(self, index: Index, options: SearchOptions) -> list[dict[str, Any]]:
        """One clause per field (ANDed); list values become ``terms`` (OR)."""
        types = index.field_types()
        clauses: list[dict[str, Any]] = []
        for field, value in options.filters.items():
            if isinstance(value, RangeFilter):
                bounds: dict[str, Any] = {}
                if value.min is not None:
                    bounds["gte"] = value.min
                if value.max is not None:
                    bounds["lte"] = value.max
                clauses.append({"range": {field: bounds}})
            elif isinstance(value, list):
                clauses.append({"terms": {self._exact_field(types, field): value}})
            else:
                clauses.append({"term": {self._exact_field(types, field): value}})
        if options.geo_filter is not None:
            geo = options.geo_filter
            clauses.append(
                {
                    "geo_distance": {
                        "distance": f"{geo.radius}m",
                        self._geo_field(index, geo.field): {"lat": geo.lat, "lon": geo.lng},
                    }
                }
            )
        return clauses

    def build_aggregations(self, index: Index, options: SearchOptions) -> dict[str, Any]:
        types = index.field_types()
        size = options.max_values_per_facet or self.default_facet_size
        aggs: dict[str, Any] = {}
        for field in options.facets:
            aggs[field] = {"terms": {"field": self._exact_field(types, field), "size": size}}
        for field in options.stats:
            aggs[f"{field}{_STATS_SUFFIX}"] = {"stats": {"field": field}}
        for field, config in options.histogram.items():
            histogram: dict[str, Any] = {"field": field, "interval": config.interval, "min_doc_count": 0}
            if config.min is not None or config.max is not None:
                bounds = {k: v for k, v in (("min", config.min), ("max", config.max)) if v is not None}
                histogram["hard_bounds"] = bounds
            aggs[f"{field}{_HISTOGRAM_SUFFIX}"] = {"histogram": histogram}
        if options.geo_grid is not None:
            geo_field = self._geo_field(index, options.geo_grid.field)
            aggs[_GEO_GRID_AGG] = {
                "geotile_grid": {"field": geo_field, "precision": options.geo_grid.precision},
                "aggs": {"centroid": {"geo_centroid": {"field": geo_field}}},
            }
        return aggs

    def parse_search_response(
        self,
        response: dict[str, Any],
        query: str,
        options: SearchOptions,
        body: dict[str, Any],
    ) -> SearchResult:
        hits_block = response.get("hits") or {}
        hits = [self._normalise_raw_hit(h) for h in hits_block.get("hits", [])]
        total = hits_block.get("total", 0)
        total_hits = int(total.get("value", 0)) if isinstance(total, dict) else int(total or 0)

        size = int(body.get("size", options.per_page))
        offset = int(body.get("from", 0))
        aggregations = response.get("aggregations") or {}

        return self.build_result(
            hits=hits,
            total_hits=total_hits,
            options=options,
            page=offset // size + 1 if size > 0 else 1,
            per_page=size,
            processing_time_ms=response.get("took"),
            facets=self._parse_facets(aggregations, options),
            stats=self._parse_stats(aggregations, options),
            histograms=self._parse_histograms(aggregations, options),
            geo_clusters=self._parse_geo_clusters(aggregations),
            suggestions=self._parse_suggestions(response, query),
            raw=response,
        )

    @staticmethod
    def _normalise_raw_hit(hit: dict[str, Any]) -> Document:
        doc = dict(hit.get("_source") or {})
        doc["_id"] = hit.get("_id")
        return normalise_hit(doc, id_key="_id", score=hit.get("_score"), highlights=hit.get("highlight") or {})

    def _parse_facets(self, aggregations: dict[str, Any], options: SearchOptions) -> dict[str, list[FacetValue]]:
        if "aggs" in options.native:
            names = [
                k
                for k, v in aggregations.items()
                if isinstance(v, dict) and isinstance(v.get("buckets"), list) and k != _GEO_GRID_AGG
            ]
        else:
            names = [f for f in options.facets if f in aggregations]
        facets: dict[str, list[FacetValue]] = {}
        for name in names:
            buckets = aggregations[name].get("buckets") or []
            facets[name] = normalise_facet_counts(
                (b.get("key_as_string", b.get("key")), b.get("doc_count", 0)) for b in buckets
            )
        return facets

    @staticmethod
    def _parse_stats(aggregations: dict[str, Any], options: SearchOptions) -> dict[str, dict[str, float]]:
        stats: dict[str, dict[str, float]] = {}
        for field in options.stats:
            agg = aggregations.get(f"{field}{_STATS_SUFFIX}")
            if not agg or not agg.get("count"):
                continue
            stats[field] = {k: agg[k] for k in ("min", "max", "avg", "sum", "count") if agg.get(k) is not None}
        return stats

    @staticmethod
    def _parse_histograms(aggregations: dict[str, Any], options: SearchOptions) -> dict[str, list[HistogramBucket]]:
        histograms: dict[str, list[HistogramBucket]] = {}
        for field in options.histogram:
            buckets = (aggregations.get(f"{field}{_HISTOGRAM_SUFFIX}") or {}).get("buckets") or []
            if buckets:
                histograms[field] = [HistogramBucket(key=b["key"], count=b.get("doc_count", 0)) for b in buckets]
        return histograms

    @staticmethod
    def _parse_geo_clusters(aggregations: dict[str, Any]) -> list[GeoCluster]:
        clusters: list[GeoCluster] = []
        for bucket in (aggregations.get(_GEO_GRID_AGG) or {}).get("buckets") or []:
            location = (bucket.get("centroid") or {}).get("location")
            if not location:
                continue
            clusters.append(
                GeoCluster(key=str(bucket["key"]), lat=location["lat"], lng=location["lon"], count=bucket["doc_count"])
            )
        return clusters

    @staticmethod
    def _parse_suggestions(response: dict[str, Any], query: str) -> list[str]:
        suggestions: list[str] = []
        for entry in (response.get("suggest") or {}).get(_SUGGESTER, []):
            for option in entry.get("options", []):
                text = option.get("text")
                if text and text != query and text not in suggestions:
                    suggestions.append(text)
        return suggestions

    @staticmethod
    def _exact_field(types: dict[str, FieldType], field: str) -> str:
        """Text fields are analysed; exact filters, sorts and terms use ``.keyword``."""
        return f"{field}.keyword" if types.get(field) == FieldType.TEXT else field

    @staticmethod
    def _geo_field(index: Index, requested: str | None) -> str:
        if requested:
            return requested
        geo_fields = index.fields_of_type(FieldType.GEO_POINT)
        if not geo_fields:
            raise ValidationError(f"Index '{index.handle}' has no geo_point field for geo queries")
        return geo_fields[0]

    # ── Schema ───────────────────────────────────────────────────────────

    def map_field_type(self, field_type: FieldType) -> str:
        if field_type == FieldType.EMBEDDING:
            return self.vector_type
        return _FIELD_TYPES.get(field_type, "text")

    def build_schema(self, field_mappings: list[FieldMapping]) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        for mapping in field_mappings:
            if not mapping.enabled:
                continue
            native_type = self.map_field_type(mapping.index_field_type)
            definition: dict[str, Any] = {"type": native_type}
            if native_type == "text":
                definition["fields"] = {"keyword": {"type": "keyword", "ignore_above": 256}}
            elif native_type == "date":
                definition["format"] = DATE_MAPPING_FORMAT
            elif mapping.index_field_type == FieldType.EMBEDDING:
                definition.update(self.vector_field_options(mapping))
            properties[mapping.index_field_name] = definition
        return {"properties": properties}

    def vector_field_options(self, mapping: FieldMapping) -> dict[str, Any]:
        """Vector mapping parameters; the dimension is mandatory."""
        dimension = mapping.dimension or int(self.setting("embedding_dimension", 0) or 0)
        if dimension <= 0:
            raise SchemaError(
                f"Embedding field '{mapping.index_field_name}' needs a vector dimension: set "
                f"resolver_config.dimension or the engine's embedding_dimension"
            )
        return {self.vector_dimension_key: dimension}

    async def get_index_schema(self, index: Index) -> dict[str, Any]:
        name = self.get_index_name(index)
        response = await self._request("GET", _path(name, "_mapping")) or {}
        if name in response:
            return response[name]
        # An alias answers with its backing index name as the key.
        return next(iter(response.values()), {})

    async def get_schema_fields(self, index: Index) -> list[dict[str, str]]:
        try:
            schema = await self.get_index_schema(index)
        except PermissionRestrictedError:
            logger.info("Mapping of %s is not readable; inferring fields from sample documents", index.handle)
            return self.infer_schema_fields(await self._sample_documents(index))
        properties = (schema.get("mappings") or {}).get("properties") or schema.get("properties") or {}
        return [
            {"name": name, "type": _REVERSE_TYPES.get(definition.get("type", "object"), FieldType.TEXT).value}
            for name, definition in properties.items()
        ]

    async def _sample_documents(self, index: Index, size: int = 5) -> list[dict[str, Any]]:
        response = await self._request(
            "POST",
            _path(self.get_index_name(index), "_search"),
            json_body={"size": size, "query": {"match_all": {}}},
        ) or {}
        hits = (response.get("hits") or {}).get("hits", [])
        return [h["_source"] for h in hits if isinstance(h.get("_source"), dict)]

    # ── Atomic swap ──────────────────────────────────────────────────────

    def supports_atomic_swap(self) -> bool:
        return True

    async def build_swap_handle(self, index: Index) -> str:
        """Alternate between two backing indexes so the alias always has a target."""
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

        if current is not None:
            # Repoint the alias in a single atomic request.
            await self._request(
                "POST",
                "/_aliases",
                json_body={
                    "actions": [
                        {"remove": {"index": current, "alias": alias}},
                        {"add": {"index": new_target, "alias": alias}},
                    ]
                },
            )
            await self._request("DELETE", _path(current), not_found_ok=True)
            logger.info("Swapped alias %s from %s to %s", alias, current, new_target)
            return

        # First swap: migrate a direct index to alias-based.  The gap between
        # delete and alias creation is unavoidable this one time.
        if await self._head(_path(alias)):
            await self._request("DELETE", _path(alias))
        await self._request("PUT", _path(new_target, "_alias", alias))
        logger.info("Created alias %s -> %s", alias, new_target)

    async def _get_alias_target(self, alias: str) -> str | None:
        try:
            response = await self._request("GET", _path("_alias", alias), not_found_ok=True)
        except PermissionRestrictedError:
            return None
        if not isinstance(response, dict):
            return None
        for backing, data in response.items():
            if alias in ((data or {}).get("aliases") or {}):
                return backing
        return None

    # ── Health ───────────────────────────────────────────────────────────

    async def test_connection(self) -> bool:
        try:
            await self._request("GET", "/")
        except PermissionRestrictedError:
            # A 403 proves the server answered and accepted the credentials.
            logger.info("%s connection test is permission-restricted; treating as reachable", self.display_name)
            return True
        except EngineError as e:
            logger.warning("%s connection test failed: %s", self.display_name, e)
            return False
        return True
