"""Tests for the search facade and request context."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fakes import FakeEngine, make_records

from searchindex.config.settings import Settings
from searchindex.engines.base.exceptions import ConnectionError, IndexNotFoundError, ValidationError
from searchindex.engines.base.registry import EngineRegistry
from searchindex.models.index import Index
from searchindex.models.options import SearchOptions
from searchindex.query.context import RequestContext
from searchindex.query.facade import SearchService


async def _seed(engine: FakeEngine, index: Index, count: int = 9) -> None:
    for record in make_records(count):
        doc = {k: v for k, v in record.items() if k not in ("id", "section")}
        await engine.index_document(index, record["id"], doc)


# ── Request context ──────────────────────────────────────────────────────────


class TestRequestContext:
    def test_accepts_list_or_mapping(self, articles_index: Index) -> None:
        assert RequestContext([articles_index]).indexes == {"articles": articles_index}
        assert RequestContext({"articles": articles_index}).indexes == {"articles": articles_index}

    def test_unknown_handle(self, context: RequestContext) -> None:
        with pytest.raises(IndexNotFoundError, match="Index not found: nope"):
            context.get_index("nope")
        assert context.find_index("nope") is None

    def test_role_fields_are_memoised(self, context: RequestContext, articles_index: Index) -> None:
        first = context.role_fields(articles_index)
        assert first == {"title": "title", "summary": "summary", "date": "published_at"}
        assert context.role_fields(articles_index) is first

    def test_shared_connection_shares_engine(
        self, context: RequestContext, articles_index: Index, readonly_index: Index
    ) -> None:
        assert context.engine_for(articles_index) is context.engine_for(readonly_index)

    async def test_close_shuts_engines_down(
        self, settings: Settings, registry: EngineRegistry, articles_index: Index
    ) -> None:
        async with RequestContext(settings.index_map(), registry) as context:
            engine = context.engine_for(articles_index)
        assert isinstance(engine, FakeEngine)
        assert engine.closed is True
        assert registry.active_engines == 0


# ── Search ───────────────────────────────────────────────────────────────────


class TestSearch:
    async def test_or_within_field_and_across_fields(
        self, service: SearchService, fake_engine: FakeEngine, articles_index: Index
    ) -> None:
        await _seed(fake_engine, articles_index)

        result = await service.search("articles", "", {"filters": {"category": ["news", "sport"]}})
        assert result.total_hits == 6
        assert {h["category"] for h in result.hits} == {"news", "sport"}

        narrowed = await service.search(
            "articles", "", {"filters": '{"category": ["news", "sport"], "price": {"min": 4, "max": 7}}'}
        )
        assert sorted(h["objectID"] for h in narrowed.hits) == ["4", "6", "7"]

    async def test_hits_carry_roles(
        self, service: SearchService, fake_engine: FakeEngine, articles_index: Index
    ) -> None:
        await _seed(fake_engine, articles_index, 1)

        result = await service.search("articles", "article")
        hit = result.hits[0]
        assert hit["_roles"] == {"title": "Article 1", "summary": "Summary of article 1", "date": None}
        assert hit["objectID"] == "1"
        assert hit["_highlights"] == {}

    async def test_accepts_parsed_options(
        self, service: SearchService, fake_engine: FakeEngine, articles_index: Index
    ) -> None:
        await _seed(fake_engine, articles_index, 5)
        result = await service.search("articles", "", SearchOptions(per_page=2, page=3))
        assert [h["objectID"] for h in result.hits] == ["5"]
        assert result.total_pages == 3

    async def test_sort_and_facets(
        self, service: SearchService, fake_engine: FakeEngine, articles_index: Index
    ) -> None:
        await _seed(fake_engine, articles_index, 6)
        result = await service.search("articles", "", {"sort": {"price": "desc"}, "facets": "category", "perPage": 2})
        assert [h["objectID"] for h in result.hits] == ["6", "5"]
        assert {fv.value: fv.count for fv in result.facets["category"]} == {"news": 2, "sport": 2, "culture": 2}

    async def test_unknown_index(self, service: SearchService) -> None:
        with pytest.raises(IndexNotFoundError):
            await service.search("missing", "x")

    async def test_malformed_options(self, service: SearchService) -> None:
        with pytest.raises(ValidationError, match="Invalid JSON in filters"):
            await service.search("articles", "", {"filters": "{not json"})

    async def test_engine_failure_propagates(self, articles_index: Index) -> None:
        registry = EngineRegistry(classes={articles_index.engine_type: FakeEngine})
        failing = articles_index.model_copy(update={"engine_config": {"unreachable": True}})
        service = SearchService(RequestContext([failing], registry))
        with pytest.raises(ConnectionError):
            await service.search("articles", "x")

    async def test_vector_search_resolves_embedding(
        self, context: RequestContext, fake_engine: FakeEngine, articles_index: Index
    ) -> None:
        embeddings = AsyncMock()
        embeddings.resolve_embedding_options.side_effect = lambda index, query, opts: opts.with_updates(
            embedding=[0.1, 0.2]
        )
        service = SearchService(context, embeddings=embeddings)

        await service.search("articles", "solar", {"vectorSearch": True})

        embeddings.resolve_embedding_options.assert_awaited_once()


# ── Autocomplete / multi-search / facets ─────────────────────────────────────


class TestAutocomplete:
    async def test_defaults_to_role_fields_and_five_hits(
        self, service: SearchService, fake_engine: FakeEngine, articles_index: Index
    ) -> None:
        await _seed(fake_engine, articles_index, 8)

        result = await service.autocomplete("articles", "article")

        assert result.per_page == 5
        assert len(result.hits) == 5
        assert set(result.hits[0]) == {"objectID", "title", "summary", "_score", "_highlights", "_roles"}

    async def test_options_override_defaults(
        self, service: SearchService, fake_engine: FakeEngine, articles_index: Index
    ) -> None:
        await _seed(fake_engine, articles_index, 8)
        result = await service.autocomplete("articles", "article", {"perPage": 2, "attributesToRetrieve": ["price"]})
        assert len(result.hits) == 2
        assert "price" in result.hits[0]


class TestMultiSearch:
    async def test_results_keep_request_order(
        self,
        service: SearchService,
        registry: EngineRegistry,
        articles_index: Index,
        products_index: Index,
    ) -> None:
        articles = registry.get(articles_index)
        products = registry.get(products_index)
        assert articles is not products
        await articles.index_document(articles_index, "a1", {"title": "Solar"})
        await products.index_document(products_index, "p1", {"name": "Panel"})
        await products.index_document(products_index, "p2", {"name": "Panel XL"})

        results = await service.multi_search(
            [
                {"handle": "products", "query": "panel"},
                {"index": "articles", "query": "solar"},
                {"handle": "products", "query": "xl", "options": {"perPage": 1}},
            ]
        )

        assert [r.total_hits for r in results] == [2, 1, 1]
        assert results[1].hits[0]["_roles"] == {"title": "Solar", "summary": None, "date": None}
        assert results[2].per_page == 1

    async def test_unknown_handle_fails_whole_batch(self, service: SearchService) -> None:
        with pytest.raises(IndexNotFoundError):
            await service.multi_search([{"handle": "articles"}, {"handle": "missing"}])


class TestFacetValues:
    async def test_prefix_and_limit(
        self, service: SearchService, fake_engine: FakeEngine, articles_index: Index
    ) -> None:
        await _seed(fake_engine, articles_index, 9)

        values = await service.search_facet_values("articles", "category", "sp")
        assert [(v.value, v.count) for v in values] == [("sport", 3)]

        limited = await service.search_facet_values("articles", "category", "", {"maxValues": 2})
        assert len(limited) == 2

    async def test_filters_narrow_counts(
        self, service: SearchService, fake_engine: FakeEngine, articles_index: Index
    ) -> None:
        await _seed(fake_engine, articles_index, 9)
        values = await service.search_facet_values(
            "articles", "category", "", {"filters": {"price": {"max": 3}}}
        )
        assert {v.value: v.count for v in values} == {"news": 1, "sport": 1, "culture": 1}

    async def test_requires_field(self, service: SearchService) -> None:
        with pytest.raises(ValidationError, match="facet field is required"):
            await service.search_facet_values("articles", "")

    async def test_bad_max_values(self, service: SearchService) -> None:
        with pytest.raises(ValidationError, match="maxValues must be an integer"):
            await service.search_facet_values("articles", "category", "", {"maxValues": "lots"})


# ── Documents and status ─────────────────────────────────────────────────────


class TestDocumentsAndStatus:
    async def test_get_document(
        self, service: SearchService, fake_engine: FakeEngine, articles_index: Index
    ) -> None:
        await _seed(fake_engine, articles_index, 2)
        assert (await service.get_document("articles", "2"))["title"] == "Article 2"
        assert await service.get_document("articles", "404") is None

    async def test_is_ready_never_raises(
        self, service: SearchService, fake_engine: FakeEngine, articles_index: Index
    ) -> None:
        assert await service.is_ready("articles") is False
        await fake_engine.create_index(articles_index)
        assert await service.is_ready("articles") is True
        assert await service.is_ready("missing") is False

    async def test_disabled_index_is_not_ready(self, registry: EngineRegistry, articles_index: Index) -> None:
        disabled = articles_index.model_copy(update={"enabled": False})
        service = SearchService(RequestContext([disabled], registry))
        await registry.get(disabled).create_index(disabled)
        assert await service.is_ready("articles") is False

    async def test_unreachable_backend_is_not_ready(self, registry: EngineRegistry, articles_index: Index) -> None:
        failing = articles_index.model_copy(update={"engine_config": {"unreachable": True}})
        service = SearchService(RequestContext([failing], registry))
        assert await service.is_ready("articles") is False
        assert await service.doc_count("articles") is None

    async def test_doc_count(self, service: SearchService, fake_engine: FakeEngine, articles_index: Index) -> None:
        assert await service.doc_count("articles") is None
        assert await service.doc_count("missing") is None
        await _seed(fake_engine, articles_index, 3)
        assert await service.doc_count("articles") == 3

    def test_meta(self, service: SearchService) -> None:
        meta = service.meta("articles")
        assert meta["roles"] == {"title": "title", "summary": "summary", "date": "published_at"}
        assert meta["facetFields"] == ["category"]
        assert meta["sortOptions"] == [
            {"label": "Relevance", "value": ""},
            {"label": "price", "value": "price"},
        ]

    def test_meta_unknown_index(self, service: SearchService) -> None:
        with pytest.raises(IndexNotFoundError):
            service.meta("missing")
