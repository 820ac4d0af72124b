"""Unified search options.

Callers hand the core a plain option map (``perPage``, ``filters``,
``facets``, ...).  :meth:`SearchOptions.parse` splits it into the unified
fields every backend understands and a ``native`` remainder.  Any
backend-native key left in ``native`` (``from``/``size``, ``hitsPerPage``,
``aggs``, ``filter_by`` ...) takes precedence over its unified equivalent
when the backend builds its request.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from searchindex.engines.base.exceptions import ValidationError

DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 250

Scalar = str | int | float | bool

# Keys consumed by the unified parser; everything else is backend-native.
_UNIFIED_KEYS = frozenset(
    {
        "page",
        "perPage",
        "sort",
        "facets",
        "maxValuesPerFacet",
        "filters",
        "fields",
        "highlight",
        "suggest",
        "stats",
        "histogram",
        "geoFilter",
        "geoSort",
        "geoGrid",
        "embedding",
        "embeddingField",
        "vectorSearch",
        "embeddingModel",
        "attributesToRetrieve",
    }
)


class RangeFilter(BaseModel):
    """Inclusive numeric/date range; either bound may be open."""

    min: float | str | None = None
    max: float | str | None = None


FilterValue = Scalar | list[Scalar] | RangeFilter


class HistogramConfig(BaseModel):
    """Bucket configuration for one histogram field."""

    interval: float = Field(gt=0)
    min: float | None = None
    max: float | None = None


class GeoPoint(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class GeoFilter(GeoPoint):
    """Radius filter around a point; ``radius`` is in metres."""

    radius: float = Field(gt=0)
    field: str | None = None


class GeoGrid(BaseModel):
    """Cluster hits into map tiles of the given precision (zoom level)."""

    field: str
    precision: int = Field(default=6, ge=0, le=29)


class SearchOptions(BaseModel):
    """Parsed, backend-independent search options."""

    page: int = 1
    per_page: int = DEFAULT_PER_PAGE
    sort: dict[str, str] = Field(default_factory=dict)
    facets: list[str] = Field(default_factory=list)
    max_values_per_facet: int | None = None
    filters: dict[str, FilterValue] = Field(default_factory=dict)
    fields: list[str] | None = None
    highlight: bool | list[str] = False
    suggest: bool = False
    stats: list[str] = Field(default_factory=list)
    histogram: dict[str, HistogramConfig] = Field(default_factory=dict)
    geo_filter: GeoFilter | None = None
    geo_sort: GeoPoint | None = None
    geo_grid: GeoGrid | None = None
    embedding: list[float] | None = None
    embedding_field: str | None = None
    vector_search: bool = False
    embedding_model: str | None = None
    attributes_to_retrieve: list[str] | None = None
    native: dict[str, Any] = Field(default_factory=dict)

    # ── Parsing ──────────────────────────────────────────────────────────

    @classmethod
    def parse(cls, raw: Mapping[str, Any] | SearchOptions | None = None) -> SearchOptions:
        """Build options from a caller-supplied map.

        Args:
            raw: Unified keys (camelCase) mixed with backend-native keys.

        Returns:
            Parsed options.

        Raises:
            ValidationError: If a value is malformed (bad JSON, wrong type).
        """
        if isinstance(raw, SearchOptions):
            return raw
        raw = dict(raw or {})
        native = {k: v for k, v in raw.items() if k not in _UNIFIED_KEYS}

        sort = _decode_json(raw.get("sort"), "sort")
        unified_sort: dict[str, str] = {}
        if sort:
            if is_unified_sort(sort):
                unified_sort = dict(sort)
            else:
                # Backend-native sort syntax passes through untouched.
                native.setdefault("sort", sort)

        highlight = raw.get("highlight", False)
        if isinstance(highlight, Mapping):
            native.setdefault("highlight", dict(highlight))
            highlight = False
        elif isinstance(highlight, list | tuple):
            highlight = [str(f) for f in highlight]
        else:
            highlight = bool(highlight)

        embedding = raw.get("embedding")
        if embedding is not None:
            if not isinstance(embedding, list | tuple) or not all(_is_number(x) for x in embedding):
                raise ValidationError("embedding must be a list of numbers")
            embedding = [float(x) for x in embedding]

        embedding_field = raw.get("embeddingField") or None
        embedding_model = raw.get("embeddingModel") or None

        return cls(
            page=max(1, _to_int(raw.get("page"), 1, "page")),
            per_page=_clamp_per_page(_to_int(raw.get("perPage"), DEFAULT_PER_PAGE, "perPage")),
            sort=unified_sort,
            facets=_to_str_list(raw.get("facets"), "facets"),
            max_values_per_facet=(
                _to_int(raw["maxValuesPerFacet"], 0, "maxValuesPerFacet")
                if raw.get("maxValuesPerFacet") is not None
                else None
            ),
            filters=parse_filters(raw.get("filters")),
            fields=_to_str_list(raw.get("fields"), "fields") or None,
            highlight=highlight,
            suggest=bool(raw.get("suggest", False)),
            stats=_to_str_list(raw.get("stats"), "stats"),
            histogram=parse_histogram(raw.get("histogram")),
            geo_filter=_parse_model(GeoFilter, raw.get("geoFilter"), "geoFilter"),
            geo_sort=_parse_model(GeoPoint, raw.get("geoSort"), "geoSort"),
            geo_grid=_parse_model(GeoGrid, raw.get("geoGrid"), "geoGrid"),
            embedding=embedding,
            embedding_field=str(embedding_field) if embedding_field else None,
            vector_search=bool(raw.get("vectorSearch", False)),
            embedding_model=str(embedding_model) if embedding_model else None,
            attributes_to_retrieve=(
                _to_str_list(raw["attributesToRetrieve"], "attributesToRetrieve")
                if raw.get("attributesToRetrieve") is not None
                else None
            ),
            native=native,
        )

    # ── Derived values ───────────────────────────────────────────────────

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page

    @property
    def highlight_fields(self) -> list[str] | None:
        """Fields to highlight, ``None`` for all fields, ``[]`` for none."""
        if isinstance(self.highlight, list):
            return self.highlight
        return None if self.highlight else []

    @property
    def wants_highlight(self) -> bool:
        return bool(self.highlight)

    def with_updates(self, **changes: Any) -> SearchOptions:
        return self.model_copy(update=changes)

    def loggable(self) -> dict[str, Any]:
        """Dump for log output with the embedding vector elided."""
        data = self.model_dump(exclude_defaults=True)
        if self.embedding is not None:
            data["embedding"] = f"({len(self.embedding)} dims)"
        return data


# ── Helpers ──────────────────────────────────────────────────────────────


def is_unified_sort(sort: Any) -> bool:
    """True for ``{field: "asc"|"desc", ...}``; anything else is native syntax."""
    if not isinstance(sort, Mapping) or not sort:
        return False
    return all(isinstance(k, str) and v in ("asc", "desc") for k, v in sort.items())


def parse_filters(raw: Any) -> dict[str, FilterValue]:
    """Normalise a unified filter map.

    Lists become OR clauses, ``{min, max}`` maps become ranges, scalars
    become equality clauses.  Empty lists and ranges with no usable bound
    are dropped.
    """
    raw = _decode_json(raw, "filters")
    if not raw:
        return {}
    if not isinstance(raw, Mapping):
        raise ValidationError("filters must be a JSON object of field → value")

    filters: dict[str, FilterValue] = {}
    for field, value in raw.items():
        if isinstance(value, RangeFilter):
            if value.min is not None or value.max is not None:
                filters[field] = value
        elif isinstance(value, Mapping):
            if not value or set(value) - {"min", "max"}:
                raise ValidationError(f"Invalid filter for '{field}': only 'min' and 'max' keys are allowed")
            lo = _range_bound(value.get("min"), field)
            hi = _range_bound(value.get("max"), field)
            if lo is None and hi is None:
                continue
            filters[field] = RangeFilter(min=lo, max=hi)
        elif isinstance(value, list | tuple):
            values = [v for v in value if v is not None and v != ""]
            if not all(isinstance(v, Scalar) for v in values):
                raise ValidationError(f"Invalid filter for '{field}': list values must be scalars")
            if values:
                filters[field] = list(values)
        elif isinstance(value, Scalar):
            filters[field] = value
        elif value is None:
            continue
        else:
            raise ValidationError(f"Invalid filter value for '{field}'")
    return filters


def parse_histogram(raw: Any) -> dict[str, HistogramConfig]:
    """Parse histogram configs; ``{field: 100}`` is shorthand for an interval.

    Entries without a positive interval are dropped.
    """
    raw = _decode_json(raw, "histogram")
    if not raw:
        return {}
    if not isinstance(raw, Mapping):
        raise ValidationError("histogram must be a JSON object of field → interval")

    result: dict[str, HistogramConfig] = {}
    for field, config in raw.items():
        if _is_number(config):
            config = {"interval": float(config)}
        if not isinstance(config, Mapping):
            continue
        interval = config.get("interval")
        if not _is_number(interval) or float(interval) <= 0:
            continue
        result[str(field)] = HistogramConfig(
            interval=float(interval),
            min=float(config["min"]) if _is_number(config.get("min")) else None,
            max=float(config["max"]) if _is_number(config.get("max")) else None,
        )
    return result


def _decode_json(value: Any, name: str) -> Any:
    if isinstance(value, str):
        if value.strip() == "":
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON in {name} argument: {e.msg}") from e
    return value


def _range_bound(value: Any, field: str) -> float | str | None:
    if value is None or value == "":
        return None
    if _is_number(value):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            # Date strings are valid bounds; backends normalise them.
            return value
    raise ValidationError(f"Invalid range bound for '{field}': {value!r}")


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool) and math.isfinite(value)


def _to_int(value: Any, default: int, name: str) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be an integer, got {value!r}") from e


def _clamp_per_page(per_page: int) -> int:
    if per_page < 1:
        return DEFAULT_PER_PAGE
    return min(per_page, MAX_PER_PAGE)


def _to_str_list(value: Any, name: str) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, list | tuple):
        return [str(v) for v in value if str(v).strip()]
    raise ValidationError(f"{name} must be a list of field names")


def _parse_model(model: type[BaseModel], value: Any, name: str) -> Any:
    value = _decode_json(value, name)
    if value is None:
        return None
    if isinstance(value, model):
        return value
    if not isinstance(value, Mapping):
        raise ValidationError(f"{name} must be an object")
    try:
        return model.model_validate(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {name}: {e}") from e
