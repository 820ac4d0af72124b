"""Index configuration models — Field mappings and index definitions.

Index definitions are supplied externally (YAML or environment) as plain
data.  The core reads them but never persists or mutates them; a swap
target is derived with :meth:`Index.with_handle`, which returns a copy.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class EngineType(str, Enum):
    """Closed set of supported search backends."""

    ALGOLIA = "algolia"
    MEILISEARCH = "meilisearch"
    TYPESENSE = "typesense"
    ELASTICSEARCH = "elasticsearch"
    OPENSEARCH = "opensearch"


class IndexMode(str, Enum):
    """Whether the core may write to an index."""

    SYNCED = "synced"
    READONLY = "readonly"


class FieldType(str, Enum):
    """Unified field types, mapped to each backend's native schema types."""

    TEXT = "text"
    KEYWORD = "keyword"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATE = "date"
    GEO_POINT = "geo_point"
    FACET = "facet"
    OBJECT = "object"
    EMBEDDING = "embedding"


class FieldRole(str, Enum):
    """Semantic tag a field mapping may claim (at most once per index)."""

    TITLE = "title"
    IMAGE = "image"
    THUMBNAIL = "thumbnail"
    SUMMARY = "summary"
    URL = "url"
    DATE = "date"


class FieldMapping(BaseModel):
    """Maps one source field onto one field of the search index."""

    source_field: str = Field(default="", description="Field name on the source record")
    index_field_name: str = Field(min_length=1, max_length=255, description="Field name inside the index")
    index_field_type: FieldType = Field(default=FieldType.TEXT, description="Unified field type")
    weight: int = Field(default=5, ge=1, le=10, description="Search relevance weight (10 = most important)")
    role: FieldRole | None = Field(default=None, description="Optional semantic role")
    enabled: bool = Field(default=True, description="Disabled mappings are ignored everywhere")
    resolver_config: dict[str, Any] = Field(
        default_factory=dict,
        description="Resolver options, e.g. ``dimension`` for embedding fields",
    )

    @property
    def dimension(self) -> int | None:
        """Configured vector dimension of an embedding field, if any."""
        value = self.resolver_config.get("dimension")
        if value is None or value == "":
            return None
        return int(value)


class Index(BaseModel):
    """A configured search index.

    Attributes:
        handle: Unique handle, used as the native index/collection name
            (optionally prefixed by the engine's ``index_prefix``).
        engine_type: Which backend hosts the index.
        engine_config: Backend connection settings.  Values may be
            ``$ENV_VAR`` references, resolved when the engine is built.
        field_mappings: Ordered field mappings.
        mode: ``synced`` indexes are written by the sync layer,
            ``readonly`` indexes are only queried.
        source_criteria: Opaque criteria handed to the live document
            source (sections, entry types, site, ...).
    """

    handle: str = Field(min_length=1, description="Unique index handle")
    name: str = Field(default="", description="Human-readable name")
    engine_type: EngineType = Field(description="Backend kind")
    engine_config: dict[str, Any] = Field(default_factory=dict, description="Backend connection settings")
    field_mappings: list[FieldMapping] = Field(default_factory=list, description="Ordered field mappings")
    mode: IndexMode = Field(default=IndexMode.SYNCED, description="synced or readonly")
    enabled: bool = Field(default=True, description="Disabled indexes are never ready")
    source_criteria: dict[str, Any] = Field(
        default_factory=dict,
        description="Filter criteria passed to the live document source",
    )

    @field_validator("handle")
    @classmethod
    def _validate_handle(cls, v: str) -> str:
        if any(ch.isspace() for ch in v):
            raise ValueError(f"Index handle must not contain whitespace: {v!r}")
        return v

    @model_validator(mode="after")
    def _validate_unique_roles(self) -> Index:
        seen: dict[FieldRole, str] = {}
        for mapping in self.field_mappings:
            if mapping.role is None or not mapping.enabled:
                continue
            if mapping.role in seen:
                raise ValueError(
                    f"Role '{mapping.role.value}' is claimed by both "
                    f"'{seen[mapping.role]}' and '{mapping.index_field_name}'"
                )
            seen[mapping.role] = mapping.index_field_name
        return self

    # ── Mapping helpers ──────────────────────────────────────────────────

    @property
    def is_readonly(self) -> bool:
        return self.mode == IndexMode.READONLY

    def enabled_mappings(self) -> list[FieldMapping]:
        return [m for m in self.field_mappings if m.enabled]

    def role_fields(self) -> dict[str, str]:
        """Return ``{role: index_field_name}`` for enabled role mappings."""
        return {m.role.value: m.index_field_name for m in self.enabled_mappings() if m.role is not None}

    def field_types(self) -> dict[str, FieldType]:
        """Return ``{index_field_name: FieldType}`` for enabled mappings."""
        return {m.index_field_name: m.index_field_type for m in self.enabled_mappings()}

    def fields_of_type(self, *types: FieldType) -> list[str]:
        return [m.index_field_name for m in self.enabled_mappings() if m.index_field_type in types]

    def embedding_field_name(self) -> str | None:
        """Return the index's embedding field when exactly one is mapped."""
        fields = self.fields_of_type(FieldType.EMBEDDING)
        return fields[0] if len(fields) == 1 else None

    def with_handle(self, handle: str) -> Index:
        """Return a copy of this index addressed under another handle."""
        return self.model_copy(update={"handle": handle})
