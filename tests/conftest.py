"""Shared test fixtures and configuration."""

from __future__ import annotations

import pytest
from fakes import DictResolver, FakeEngine, ListDocumentSource, fake_registry_classes, make_records

from searchindex.config.settings import Settings
from searchindex.engines.base.registry import EngineRegistry
from searchindex.models.index import EngineType, FieldMapping, FieldRole, FieldType, Index, IndexMode
from searchindex.query.context import RequestContext
from searchindex.query.facade import SearchService


@pytest.fixture
def articles_index() -> Index:
    """A synced index with roles, a facet and numeric/date fields."""
    return Index(
        handle="articles",
        name="Articles",
        engine_type=EngineType.MEILISEARCH,
        engine_config={"host": "http://localhost:7700"},
        field_mappings=[
            FieldMapping(source_field="title", index_field_name="title", weight=10, role=FieldRole.TITLE),
            FieldMapping(source_field="summary", index_field_name="summary", weight=4, role=FieldRole.SUMMARY),
            FieldMapping(
                source_field="category",
                index_field_name="category",
                index_field_type=FieldType.FACET,
            ),
            FieldMapping(source_field="price", index_field_name="price", index_field_type=FieldType.FLOAT),
            FieldMapping(
                source_field="postDate",
                index_field_name="published_at",
                index_field_type=FieldType.DATE,
                role=FieldRole.DATE,
            ),
        ],
        source_criteria={"section": "news"},
    )

@pytest.fixture
def products_index() -> Index:
    """A second synced index on a different backend connection."""
    return Index(
        handle="products",
        engine_type=EngineType.TYPESENSE,
        engine_config={"host": "http://localhost:8108"},
        field_mappings=[
            FieldMapping(index_field_name="name", role=FieldRole.TITLE),
            FieldMapping(index_field_name="brand", index_field_type=FieldType.FACET),
        ],
    )

@pytest.fixture
def readonly_index() -> Index:
    """An externally managed index the sync layer must never write to."""
    return Index(
        handle="external",
        engine_type=EngineType.MEILISEARCH,
        engine_config={"host": "http://localhost:7700"},
        mode=IndexMode.READONLY,
        field_mappings=[FieldMapping(index_field_name="headline", role=FieldRole.TITLE)],
    )

@pytest.fixture
def settings(articles_index: Index, products_index: Index, readonly_index: Index) -> Settings:
    """Create a test Settings instance with three indexes."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        debug=True,
        indexes=[articles_index, products_index, readonly_index],
    )

@pytest.fixture
def registry() -> EngineRegistry:
    """Registry that builds :class:`FakeEngine` for every kind."""
    return EngineRegistry(classes=fake_registry_classes())

@pytest.fixture
def fake_engine(registry: EngineRegistry, articles_index: Index) -> FakeEngine:
    """The fake engine serving ``articles`` (and ``external``, same config)."""
    engine = registry.get(articles_index)
    assert isinstance(engine, FakeEngine)
    return engine

@pytest.fixture
def context(settings: Settings, registry: EngineRegistry) -> RequestContext:
    return RequestContext(settings.index_map(), registry)

@pytest.fixture
def service(context: RequestContext) -> SearchService:
    return SearchService(context)

@pytest.fixture
def source() -> ListDocumentSource:
    return ListDocumentSource(make_records(45))

@pytest.fixture
def resolver() -> DictResolver:
    return DictResolver()
