"""Search endpoints — Full search, autocomplete, multi-search and facet values.

All endpoints are anonymous GETs.  Structured arguments (``sort``,
``filters``, ``histogram``, ``searches``) are JSON strings; list arguments
(``facets``, ``fields``, ``stats``) are comma-separated.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from searchindex.api.deps import error_response, get_search_service
from searchindex.engines.base.exceptions import EngineError, IndexNotFoundError, ValidationError
from searchindex.models.options import DEFAULT_PER_PAGE, MAX_PER_PAGE
from searchindex.query.facade import AUTOCOMPLETE_PER_PAGE, DEFAULT_FACET_VALUES, SearchService

logger = logging.getLogger(__name__)

router = APIRouter()

_TRUTHY = {"1", "true", "yes"}

_AUTOCOMPLETE_KEYS = ("totalHits", "page", "perPage", "totalPages", "processingTimeMs", "hits")
_MULTI_SEARCH_KEYS = (*_AUTOCOMPLETE_KEYS, "facets", "suggestions")


# ── Parameter helpers ────────────────────────────────────────────────────


def _int_param(name: str, value: Any, default: Any) -> Any:
    """Parse an integer argument; a missing or empty value gives ``default``.

    Raises:
        ValidationError: If the value is not an integer.
    """
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {value!r}") from None


def _page(value: Any) -> int:
    return max(1, _int_param("page", value, 1))


def _per_page(value: Any, default: int = DEFAULT_PER_PAGE) -> int:
    return min(max(1, _int_param("perPage", value, default)), MAX_PER_PAGE)


def _is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY if value is not None else False


def _csv(value: str | None) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _result_body(result: Any, keys: tuple[str, ...] | None = None) -> dict[str, Any]:
    body = result.to_api()
    return body if keys is None else {k: body[k] for k in keys}


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get(
    "/search",
    summary="Search an index",
    description=(
        "Full search with pagination, sorting, facets, filters, highlighting, "
        "suggestions, stats, histograms and optional vector search."
    ),
    responses={
        400: {"description": "Missing index or malformed argument"},
        404: {"description": "Unknown index handle"},
        500: {"description": "Backend search failure"},
    },
)
async def search(
    index: str | None = Query(default=None, description="Index handle"),
    query: str = Query(default="", description="Search text"),
    page: str | None = Query(default=None),
    per_page: str | None = Query(default=None, alias="perPage"),
    sort: str | None = Query(default=None, description='JSON object, e.g. {"price": "asc"}'),
    facets: str | None = Query(default=None, description="Comma-separated facet fields"),
    max_values_per_facet: str | None = Query(default=None, alias="maxValuesPerFacet"),
    filters: str | None = Query(default=None, description='JSON object, e.g. {"category": ["news", "sport"]}'),
    fields: str | None = Query(default=None, description="Comma-separated fields to search within"),
    highlight: str | None = Query(default=None),
    suggest: str | None = Query(default=None),
    stats: str | None = Query(default=None, description="Comma-separated numeric fields"),
    histogram: str | None = Query(default=None, description='JSON object, e.g. {"price": 100}'),
    vector_search: str | None = Query(default=None, alias="vectorSearch"),
    embedding_model: str | None = Query(default=None, alias="embeddingModel"),
    embedding_field: str | None = Query(default=None, alias="embeddingField"),
    service: SearchService = Depends(get_search_service),
) -> JSONResponse:
    """Execute a unified search."""
    if not index:
        return error_response("Missing required parameter: index", 400)

    try:
        options: dict[str, Any] = {"page": _page(page), "perPage": _per_page(per_page)}
        max_values = _int_param("maxValuesPerFacet", max_values_per_facet, None)
    except ValidationError as e:
        return error_response(str(e), 400)
    if max_values is not None:
        options["maxValuesPerFacet"] = max_values
    if sort:
        options["sort"] = sort
    if facets:
        options["facets"] = _csv(facets)
    if filters:
        options["filters"] = filters
    if fields:
        options["fields"] = _csv(fields)
    if _is_truthy(highlight):
        options["highlight"] = True
    if _is_truthy(suggest):
        options["suggest"] = True
    if stats:
        options["stats"] = _csv(stats)
    if histogram:
        options["histogram"] = histogram
    if _is_truthy(vector_search):
        options["vectorSearch"] = True
        if embedding_model:
            options["embeddingModel"] = embedding_model
        if embedding_field:
            options["embeddingField"] = embedding_field

    try:
        result = await service.search(index, query, options)
    except IndexNotFoundError as e:
        return error_response(str(e), 404)
    except ValidationError as e:
        return error_response(str(e), 400)
    except EngineError as e:
        logger.warning("Search on %s failed: %s", index, e)
        return error_response(f"Search failed: {e}", 500)
    return JSONResponse(_result_body(result))


@router.get(
    "/autocomplete",
    summary="Autocomplete",
    description="Lightweight search returning few hits with only the role fields.",
)
async def autocomplete(
    index: str | None = Query(default=None, description="Index handle"),
    query: str | None = Query(default=None, description="Search text"),
    per_page: str | None = Query(default=None, alias="perPage"),
    service: SearchService = Depends(get_search_service),
) -> JSONResponse:
    """Type-ahead search."""
    if not index:
        return error_response("Missing required parameter: index", 400)
    if not query:
        return error_response("Missing required parameter: query", 400)

    try:
        options = {"perPage": _per_page(per_page, AUTOCOMPLETE_PER_PAGE), "page": 1}
    except ValidationError as e:
        return error_response(str(e), 400)
    try:
        result = await service.autocomplete(index, query, options)
    except IndexNotFoundError as e:
        return error_response(str(e), 404)
    except ValidationError as e:
        return error_response(str(e), 400)
    except EngineError as e:
        logger.warning("Autocomplete on %s failed: %s", index, e)
        return error_response(f"Autocomplete failed: {e}", 500)
    return JSONResponse(_result_body(result, _AUTOCOMPLETE_KEYS))


@router.get(
    "/multi-search",
    summary="Multi-search",
    description=(
        "Batch search across indexes. `searches` is a JSON array of "
        "`{index, query, page, perPage, facets, filters, sort, highlight}` objects; "
        "results come back in the same order."
    ),
)
async def multi_search(
    searches: str | None = Query(default=None, description="JSON array of search definitions"),
    service: SearchService = Depends(get_search_service),
) -> JSONResponse:
    """Run several searches in one request."""
    if not searches:
        return error_response("Missing required parameter: searches", 400)
    try:
        decoded = json.loads(searches)
    except json.JSONDecodeError:
        return error_response("Invalid JSON in searches parameter", 400)
    if not isinstance(decoded, list) or not decoded:
        return error_response("searches must be a non-empty JSON array", 400)

    batch: list[dict[str, Any]] = []
    for i, definition in enumerate(decoded):
        if not isinstance(definition, dict):
            return error_response(f"searches[{i}] must be a JSON object", 400)
        handle = definition.get("index")
        if not handle:
            return error_response(f"Missing index handle in searches[{i}]", 400)

        try:
            options: dict[str, Any] = {
                "page": _page(definition.get("page")),
                "perPage": _per_page(definition.get("perPage")),
            }
        except ValidationError as e:
            return error_response(f"searches[{i}]: {e}", 400)
        facets = definition.get("facets")
        if facets:
            options["facets"] = _csv(facets) if isinstance(facets, str) else list(facets)
        if isinstance(definition.get("filters"), dict) and definition["filters"]:
            options["filters"] = definition["filters"]
        if isinstance(definition.get("sort"), dict) and definition["sort"]:
            options["sort"] = definition["sort"]
        if _is_truthy(definition.get("highlight")):
            options["highlight"] = True
        batch.append({"handle": str(handle), "query": str(definition.get("query") or ""), "options": options})

    try:
        results = await service.multi_search(batch)
    except IndexNotFoundError as e:
        return error_response(str(e), 404)
    except ValidationError as e:
        return error_response(str(e), 400)
    except EngineError as e:
        logger.warning("Multi-search failed: %s", e)
        return error_response(f"Search failed: {e}", 500)

    body = []
    for result in results:
        body.append(_result_body(result, _MULTI_SEARCH_KEYS))
    return JSONResponse(body)


@router.get(
    "/facet-values",
    summary="Search facet values",
    description="Search within the values of one facet field, optionally narrowed by filters.",
)
async def facet_values(
    index: str | None = Query(default=None, description="Index handle"),
    facet_field: str | None = Query(default=None, alias="facetField"),
    query: str = Query(default=""),
    max_values: str | None = Query(default=None, alias="maxValues"),
    filters: str | None = Query(default=None, description="JSON object of filters"),
    service: SearchService = Depends(get_search_service),
) -> JSONResponse:
    """Return ``[{value, count}]`` for one facet."""
    if not index:
        return error_response("Missing required parameter: index", 400)
    if not facet_field:
        return error_response("Missing required parameter: facetField", 400)

    try:
        options: dict[str, Any] = {"maxValues": max(1, _int_param("maxValues", max_values, DEFAULT_FACET_VALUES))}
    except ValidationError as e:
        return error_response(str(e), 400)
    if filters:
        options["filters"] = filters
    try:
        values = await service.search_facet_values(index, facet_field, query, options)
    except IndexNotFoundError as e:
        return error_response(str(e), 404)
    except ValidationError as e:
        return error_response(str(e), 400)
    except EngineError as e:
        logger.warning("Facet search on %s failed: %s", index, e)
        return error_response(f"Facet search failed: {e}", 500)
    return JSONResponse([v.model_dump() for v in values])
