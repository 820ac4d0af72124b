"""Search result model — The normalised response envelope shared by all engines."""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field


class FacetValue(BaseModel):
    """One facet bucket."""

    model_config = ConfigDict(frozen=True)

    value: str
    count: int


class HistogramBucket(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: float
    count: int


class GeoCluster(BaseModel):
    """Aggregated map tile: centroid plus hit count."""

    model_config = ConfigDict(frozen=True)

    key: str
    lat: float
    lng: float
    count: int


def compute_total_pages(total_hits: int, per_page: int) -> int:
    """``ceil(total_hits / per_page)``; 1 for an empty result or ``per_page <= 0``."""
    if per_page <= 0 or total_hits <= 0:
        return 1
    return math.ceil(total_hits / per_page)


class SearchResult(BaseModel):
    """Immutable, backend-independent search response.

    Every hit carries ``objectID`` (str), ``_score`` (number or ``None``)
    and ``_highlights`` (``{field: [fragment, ...]}``).  ``raw`` holds the
    untouched backend response.
    """

    model_config = ConfigDict(frozen=True)

    hits: list[dict[str, Any]] = Field(default_factory=list, description="Normalised hits")
    total_hits: int = Field(default=0, ge=0, description="Total matching documents")
    page: int = Field(default=1, ge=1, description="1-based page number")
    per_page: int = Field(default=20, ge=0, description="Page size")
    processing_time_ms: int | None = Field(default=None, description="Backend processing time")
    facets: dict[str, list[FacetValue]] = Field(default_factory=dict, description="Facet buckets per field")
    stats: dict[str, dict[str, float]] = Field(default_factory=dict, description="Numeric stats per field")
    histograms: dict[str, list[HistogramBucket]] = Field(default_factory=dict, description="Histogram buckets")
    suggestions: list[str] = Field(default_factory=list, description="Spelling suggestions")
    geo_clusters: list[GeoCluster] = Field(default_factory=list, description="Geo grid clusters")
    raw: dict[str, Any] = Field(default_factory=dict, description="Untouched backend response")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        return compute_total_pages(self.total_hits, self.per_page)

    @classmethod
    def empty(cls, page: int = 1, per_page: int = 20) -> SearchResult:
        return cls(page=page, per_page=per_page)

    def __len__(self) -> int:
        return len(self.hits)

    def facet_values(self, field: str) -> list[FacetValue]:
        return list(self.facets.get(field, []))

    def to_api(self, *, hits: list[dict[str, Any]] | None = None) -> dict[str, Any]:
        """Serialise with camelCase keys; empty optional sections become ``None``."""
        return {
            "totalHits": self.total_hits,
            "page": self.page,
            "perPage": self.per_page,
            "totalPages": self.total_pages,
            "processingTimeMs": self.processing_time_ms,
            "hits": hits if hits is not None else self.hits,
            "facets": {k: [v.model_dump() for v in vs] for k, vs in self.facets.items()} or None,
            "stats": self.stats or None,
            "histograms": {k: [b.model_dump() for b in bs] for k, bs in self.histograms.items()} or None,
            "geoClusters": [c.model_dump() for c in self.geo_clusters] or None,
            "suggestions": self.suggestions,
        }
