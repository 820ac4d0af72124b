"""Integration tests for the Meilisearch engine against a real instance."""

from __future__ import annotations

from typing import Any

import pytest

from searchindex.models.index import EngineType
from searchindex.query.facade import SearchService

pytestmark = [pytest.mark.integration]


@pytest.fixture
async def service(meilisearch_ready: dict[str, Any], sync_papers: Any) -> SearchService:
    return await sync_papers(EngineType.MEILISEARCH, meilisearch_ready)


class TestMeilisearchSync:
    async def test_swapped_index_is_live(self, service: SearchService, mock_records: list[dict[str, Any]]) -> None:
        assert await service.is_ready("papers")
        assert await service.doc_count("papers") == len(mock_records)

    async def test_fetch_document(self, service: SearchService) -> None:
        doc = await service.get_document("papers", "doc-004")
        assert doc is not None
        assert doc["title"] == "Reinforcement Learning for Robotic Manipulation"
        assert await service.get_document("papers", "nonexistent-999") is None


class TestMeilisearchSearch:
    async def test_relevance(self, service: SearchService) -> None:
        result = await service.search("papers", "solar deep learning")
        assert result.total_hits > 0
        assert "Solar" in result.hits[0]["_roles"]["title"]

    async def test_typo_tolerance(self, service: SearchService) -> None:
        assert (await service.search("papers", "transformr languge")).total_hits > 0

    async def test_no_results_for_gibberish(self, service: SearchService) -> None:
        assert (await service.search("papers", "xyzzyspoon999qqq")).total_hits == 0

    async def test_filters_facets_and_sort(self, service: SearchService) -> None:
        result = await service.search(
            "papers",
            "",
            {"filters": {"category": "health"}, "facets": ["category"], "sort": {"citations": "desc"}},
        )
        assert [h["objectID"] for h in result.hits] == ["doc-005", "doc-003"]
        assert [(f.value, f.count) for f in result.facets["category"]] == [("health", 2)]

    async def test_range_filter(self, service: SearchService) -> None:
        result = await service.search("papers", "", {"filters": {"citations": {"min": 50, "max": 100}}})
        assert {h["objectID"] for h in result.hits} == {"doc-003", "doc-005"}

    async def test_facet_values(self, service: SearchService) -> None:
        values = await service.search_facet_values("papers", "category", "he")
        assert [(v.value, v.count) for v in values] == [("health", 2)]
