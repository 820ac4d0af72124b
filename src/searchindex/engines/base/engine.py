"""Base search engine — Abstract contract for all search backends.

Every backend implements :class:`SearchEngine` and is responsible for:
  1. Index lifecycle (create, update settings, delete, existence checks)
  2. Document writes, using the backend's native bulk endpoints
  3. Translating :class:`SearchOptions` into its native query format
  4. Normalising native responses into a :class:`SearchResult`
  5. Schema construction and introspection
  6. Atomic swap, where the backend supports it

Adapters never retry: failures surface as typed errors from
:mod:`searchindex.engines.base.exceptions` and retrying is the caller's
decision.
"""

from __future__ import annotations

import logging
import math
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, ClassVar
from urllib.parse import urlparse

from searchindex.engines.base.exceptions import CapabilityError
from searchindex.models.index import EngineType, FieldMapping, FieldType, Index
from searchindex.models.options import SearchOptions
from searchindex.models.result import FacetValue, SearchResult

logger = logging.getLogger(__name__)

Document = dict[str, Any]

DATE_EPOCH_SECONDS = "epoch_seconds"
DATE_ISO8601 = "iso8601"

# 10^10 seconds is the year 2286; larger magnitudes are milliseconds.
_EPOCH_MILLIS_THRESHOLD = 10_000_000_000

_ENV_REF = re.compile(r"^\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?$")
_DATE_NAME_SUFFIX = re.compile(r"(_at|_date|_time|timestamp)$")
_DATE_NAME_PREFIX = re.compile(r"^(created|updated|deleted|modified|date)_")
_BOOL_NAME = re.compile(r"^(is_|has_)|_(enabled|active|visible|archived)$")
_DATE_STRING = re.compile(r"^\d{4}-\d{2}-\d{2}(?:[T\s].*)?$")


@dataclass
class SearchQuery:
    """One entry of a multi-search batch."""

    index: Index
    query: str = ""
    options: SearchOptions = field(default_factory=SearchOptions)


def resolve_env(value: Any) -> Any:
    """Resolve a ``$VAR`` / ``${VAR}`` reference; other values pass through.

    An unset variable leaves the reference unchanged.
    """
    if not isinstance(value, str):
        return value
    match = _ENV_REF.match(value.strip())
    if not match:
        return value
    return os.environ.get(match.group(1), value)


class SearchEngine(ABC):
    """Abstract base class for search engine adapters.

    Args:
        config: Backend settings (``host``, ``api_key``, ``index_prefix`` ...).
            Values may be environment references; they are resolved each
            time they are read, never at construction.
    """

    engine_type: ClassVar[EngineType]
    display_name: ClassVar[str] = ""
    date_format: ClassVar[str] = DATE_EPOCH_SECONDS
    # Numeric lists at least this long are inferred as embeddings.
    embedding_min_length: ClassVar[int] = 8

    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        self._config: dict[str, Any] = dict(config or {})

    @property
    def name(self) -> str:
        return self.engine_type.value

    # ── Configuration ────────────────────────────────────────────────────

    def setting(self, key: str, default: Any = "") -> Any:
        """Read a config value, resolving environment references."""
        value = self._config.get(key)
        if value is None or value == "":
            value = default
        return resolve_env(value)

    def get_index_name(self, index: Index) -> str:
        """Native index name: resolved ``index_prefix`` + handle."""
        prefix = self.setting("index_prefix", "") or ""
        return f"{prefix}{index.handle}"

    async def close(self) -> None:
        """Release client resources."""

    # ── Index lifecycle ──────────────────────────────────────────────────

    @abstractmethod
    async def create_index(self, index: Index) -> None:
        """Create the index with a schema built from its field mappings."""

    @abstractmethod
    async def update_index_settings(self, index: Index) -> None:
        """Push the current field mappings to an existing index."""

    @abstractmethod
    async def delete_index(self, index: Index) -> None:
        """Delete the index and all of its documents."""

    @abstractmethod
    async def index_exists(self, index: Index) -> bool:
        """Check whether the index exists.

        Must not raise for permission-restricted credentials; adapters fall
        back to a lesser-privileged probe instead.
        """

    # ── Documents ────────────────────────────────────────────────────────

    @abstractmethod
    async def index_document(self, index: Index, object_id: str, document: Document) -> None:
        """Add or replace one document (upsert by ``objectID``)."""

    async def index_documents(self, index: Index, documents: list[Document]) -> None:
        """Add or replace many documents.

        The default loops over :meth:`index_document`; every shipped
        adapter overrides it with the backend's bulk endpoint.
        """
        for document in documents:
            object_id = document_id(document)
            if object_id is None:
                continue
            await self.index_document(index, object_id, document)

    @abstractmethod
    async def delete_document(self, index: Index, object_id: str) -> None:
        """Delete one document; deleting a missing document is not an error."""

    async def delete_documents(self, index: Index, object_ids: list[str]) -> None:
        for object_id in object_ids:
            await self.delete_document(index, str(object_id))

    @abstractmethod
    async def flush_index(self, index: Index) -> None:
        """Remove every document but keep the index and its schema."""

    async def get_document(self, index: Index, object_id: str) -> Document | None:
        """Fetch one document by ID, or ``None`` when it does not exist.

        The default searches for the ID and keeps an exact ``objectID``
        match; adapters override it with a direct lookup.
        """
        result = await self.search(index, object_id, SearchOptions(per_page=10))
        for hit in result.hits:
            if hit.get("objectID") == object_id:
                return hit
        return None

    @abstractmethod
    async def get_document_count(self, index: Index) -> int:
        """Number of documents in the index (eventually consistent)."""

    @abstractmethod
    async def get_all_document_ids(self, index: Index) -> list[str]:
        """Every ``objectID`` stored in the index."""

    # ── Search ───────────────────────────────────────────────────────────

    @abstractmethod
    async def search(self, index: Index, query: str, options: SearchOptions | None = None) -> SearchResult:
        """Execute a search and return a normalised result."""

    async def multi_search(self, queries: list[SearchQuery]) -> list[SearchResult]:
        """Run several searches; results keep the order of ``queries``.

        The default issues one :meth:`search` per query.  Adapters with a
        native batch endpoint override it but must apply the same option
        translation as :meth:`search`.
        """
        return [await self.search(q.index, q.query, q.options) for q in queries]

    async def search_facet_values(
        self,
        index: Index,
        fields: list[str],
        query: str = "",
        max_per_field: int = 10,
        filters: Mapping[str, Any] | None = None,
    ) -> dict[str, list[FacetValue]]:
        """Return facet values per field, narrowed by a text prefix.

        The default runs a faceted browse query and keeps values where the
        value, or one of its words, starts with ``query`` (case-insensitive).
        """
        options = SearchOptions.parse({"filters": dict(filters or {})}).with_updates(
            facets=list(fields),
            per_page=1,
            max_values_per_facet=max(max_per_field, 100),
        )
        result = await self.search(index, "", options)
        return {f: filter_facet_values(result.facet_values(f), query, max_per_field) for f in fields}

    # ── Schema ───────────────────────────────────────────────────────────

    async def get_index_schema(self, index: Index) -> dict[str, Any]:
        """Return the backend's native schema/settings for the index."""
        return {}

    async def get_schema_fields(self, index: Index) -> list[dict[str, str]]:
        """Return ``[{name, type}]`` with unified field types."""
        return []

    @abstractmethod
    def build_schema(self, field_mappings: list[FieldMapping]) -> dict[str, Any]:
        """Build the native schema/settings payload for the given mappings."""

    @abstractmethod
    def map_field_type(self, field_type: FieldType) -> Any:
        """Map a unified field type onto the backend's native type."""

    # ── Atomic swap ──────────────────────────────────────────────────────

    def supports_atomic_swap(self) -> bool:
        return False

    async def build_swap_handle(self, index: Index) -> str:
        """Handle of the temporary index a full refresh is built into."""
        return f"{index.handle}_swap"

    async def swap_index(self, index: Index, swap_index: Index) -> None:
        """Make ``swap_index``'s content live under ``index``'s name."""
        raise CapabilityError(f"{self.display_name or self.name} does not support atomic index swapping.")

    # ── Health ───────────────────────────────────────────────────────────

    @abstractmethod
    async def test_connection(self) -> bool:
        """Probe the backend.  Never raises.

        Permission-restricted (read-only) credentials count as success.
        """

    # ── Shared helpers ───────────────────────────────────────────────────

    def resolve_embedding_field(self, index: Index, options: SearchOptions) -> str | None:
        if options.embedding is None:
            return None
        return options.embedding_field or index.embedding_field_name()

    def normalise_date_fields(self, index: Index, document: Document, target_format: str | None = None) -> Document:
        """Rewrite date-typed fields to the backend's date representation.

        Values that cannot be parsed are left untouched.
        """
        date_fields = index.fields_of_type(FieldType.DATE)
        if not date_fields:
            return document
        fmt = target_format or self.date_format
        out = dict(document)
        for name in date_fields:
            if name not in out:
                continue
            normalised = normalise_date_value(out[name], fmt)
            if normalised is not None:
                out[name] = normalised
        return out

    def prepare_document(self, index: Index, object_id: str, document: Document) -> Document:
        """Copy ``document`` with a string ``objectID`` and normalised dates."""
        doc = self.normalise_date_fields(index, document)
        doc["objectID"] = str(object_id)
        return doc

    def infer_field_type(self, name: str, value: Any) -> FieldType:
        return infer_field_type(name, value, embedding_min_length=self.embedding_min_length)

    def infer_schema_fields(self, documents: Iterable[Mapping[str, Any]]) -> list[dict[str, str]]:
        """Infer ``[{name, type}]`` from sample documents.

        Fields are merged across samples so a ``None`` in one document can be
        typed from a value in another.
        """
        values: dict[str, Any] = {}
        for doc in documents:
            for name, value in doc.items():
                if not isinstance(name, str):
                    continue
                if values.get(name) is None:
                    values[name] = value
        return [{"name": name, "type": self.infer_field_type(name, value).value} for name, value in values.items()]

    @staticmethod
    def sort_by_weight(mappings: Iterable[FieldMapping]) -> list[str]:
        """Field names ordered by descending weight (stable for ties)."""
        return [m.index_field_name for m in sorted(mappings, key=lambda m: -m.weight)]

    def build_result(
        self,
        *,
        hits: list[Document],
        total_hits: int,
        options: SearchOptions,
        page: int | None = None,
        per_page: int | None = None,
        **kwargs: Any,
    ) -> SearchResult:
        return SearchResult(
            hits=hits,
            total_hits=max(0, int(total_hits or 0)),
            page=max(1, page if page is not None else options.page),
            per_page=max(0, per_page if per_page is not None else options.per_page),
            **kwargs,
        )


# ── Module-level helpers ─────────────────────────────────────────────────


def document_id(document: Mapping[str, Any]) -> str | None:
    """Return the document's ``objectID`` as a string, or ``None``."""
    value = document.get("objectID")
    if value is None or value == "":
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def normalise_date_value(value: Any, target_format: str) -> int | str | None:
    """Convert a date-ish value to epoch seconds or an ISO-8601 string."""
    seconds = date_value_to_epoch_seconds(value)
    if seconds is None:
        return None
    if target_format == DATE_ISO8601:
        return datetime.fromtimestamp(seconds, UTC).isoformat()
    return seconds


def date_value_to_epoch_seconds(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return int(value.timestamp())
    if isinstance(value, date):
        return int(datetime(value.year, value.month, value.day, tzinfo=UTC).timestamp())
    if isinstance(value, int):
        return _normalise_epoch(value)
    if isinstance(value, float):
        return _normalise_epoch(round(value)) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return _normalise_epoch(round(float(text)))
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(parsed.timestamp())


def _normalise_epoch(epoch: int) -> int:
    if abs(epoch) >= _EPOCH_MILLIS_THRESHOLD:
        return round(epoch / 1000)
    return epoch


def normalise_highlights(data: Any) -> dict[str, list[str]]:
    """Normalise ``{field: [fragments] | fragment}`` to ``{field: [fragments]}``.

    Markers (``<em>``, ``<mark>``, ``[...]``) are kept verbatim.
    """
    if not isinstance(data, Mapping):
        return {}
    normalised: dict[str, list[str]] = {}
    for name, value in data.items():
        if isinstance(value, list | tuple):
            fragments = [v for v in value if isinstance(v, str)]
            if fragments:
                normalised[str(name)] = fragments
        elif isinstance(value, str) and value:
            normalised[str(name)] = [value]
    return normalised


def normalise_hit(
    hit: Mapping[str, Any],
    *,
    id_key: str = "objectID",
    score: Any = None,
    highlights: Any = None,
) -> Document:
    """Guarantee ``objectID`` (str), ``_score`` (float | None), ``_highlights``."""
    doc = dict(hit)
    raw_id = doc.get("objectID")
    if raw_id is None or raw_id == "":
        raw_id = doc.get(id_key)
    doc["objectID"] = "" if raw_id is None else document_id({"objectID": raw_id}) or ""
    if score is None:
        score = doc.get("_score")
    doc["_score"] = float(score) if isinstance(score, int | float) and not isinstance(score, bool) else None
    if highlights is None:
        highlights = doc.get("_highlights")
    doc["_highlights"] = normalise_highlights(highlights)
    return doc


def normalise_facet_counts(value_counts: Mapping[Any, Any] | Iterable[tuple[Any, Any]]) -> list[FacetValue]:
    """Convert ``{value: count}`` to ``[FacetValue]`` sorted by count descending."""
    items = value_counts.items() if isinstance(value_counts, Mapping) else value_counts
    values = [FacetValue(value=_facet_str(v), count=int(c)) for v, c in items]
    return sorted(values, key=lambda fv: -fv.count)


def _facet_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def filter_facet_values(values: list[FacetValue], query: str, limit: int) -> list[FacetValue]:
    """Keep values whose text, or one of its words, starts with ``query``."""
    needle = query.strip().lower()
    if needle:
        values = [
            fv
            for fv in values
            if fv.value.lower().startswith(needle) or any(w.startswith(needle) for w in fv.value.lower().split())
        ]
    return values[: max(0, limit)]


def infer_field_type(name: str, value: Any, *, embedding_min_length: int = 8) -> FieldType:
    """Guess a unified field type from a field name and a sample value.

    Date and boolean field names only decide the type when the value fits
    them (or is missing): ``created_at: "whenever"`` stays a string.
    """
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    lower = name.lower()
    if (_DATE_NAME_SUFFIX.search(lower) or _DATE_NAME_PREFIX.search(lower)) and (
        value is None or _is_date_like(value)
    ):
        return FieldType.DATE
    if _BOOL_NAME.search(lower) and value in (None, 0, 1, "0", "1"):
        return FieldType.BOOLEAN
    if isinstance(value, int):
        return FieldType.INTEGER
    if isinstance(value, float):
        return FieldType.FLOAT
    if isinstance(value, list | tuple):
        if value:
            first = value[0]
            if isinstance(first, str):
                return FieldType.FACET
            if isinstance(first, int | float) and len(value) >= embedding_min_length:
                return FieldType.EMBEDDING
        return FieldType.OBJECT
    if isinstance(value, Mapping):
        lat, lng = value.get("lat"), value.get("lng", value.get("lon"))
        if _is_numeric(lat) and _is_numeric(lng):
            return FieldType.GEO_POINT
        return FieldType.OBJECT
    if isinstance(value, str):
        if _DATE_STRING.match(value):
            return FieldType.DATE
        parsed = urlparse(value)
        if parsed.scheme in ("http", "https") and parsed.netloc:
            return FieldType.KEYWORD
        return FieldType.TEXT if len(value) > 64 else FieldType.KEYWORD
    return FieldType.TEXT


def _is_date_like(value: Any) -> bool:
    if isinstance(value, date):
        return True
    if isinstance(value, str) and _DATE_STRING.match(value):
        return True
    return _is_numeric(value)


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int | float):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def as_bool(value: Any) -> bool:
    """Interpret config flags that may arrive as strings ("false", "0", "off")."""
    if isinstance(value, str):
        return value.strip().lower() not in ("0", "false", "no", "off", "")
    return bool(value)


def raise_for_embedding_fields(engine: SearchEngine, field_mappings: Iterable[FieldMapping]) -> None:
    """Reject embedding mappings on backends without vector support."""
    names = [m.index_field_name for m in field_mappings if m.enabled and m.index_field_type == FieldType.EMBEDDING]
    if names:
        raise CapabilityError(
            f"{engine.display_name or engine.name} does not support embedding fields: {', '.join(names)}"
        )
