"""Integration test fixtures — Docker-based search backends.

Expects backends to be running, e.g.:
    docker run -p 7700:7700 -e MEILI_MASTER_KEY=test-master-key getmeili/meilisearch
    docker run -p 9200:9200 -e discovery.type=single-node -e xpack.security.enabled=false elasticsearch:8.13.0
    docker run -p 9201:9200 -e discovery.type=single-node -e DISABLE_SECURITY_PLUGIN=true opensearchproject/opensearch:2

Tests skip when a backend does not answer.  Each test syncs its own
documents through the orchestrator into ``it_``-prefixed indexes.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import httpx
import pytest
from fakes import DictResolver, ListDocumentSource

from searchindex.engines.base.registry import EngineRegistry
from searchindex.models.index import EngineType, FieldMapping, FieldRole, FieldType, Index
from searchindex.query.context import RequestContext
from searchindex.query.facade import SearchService
from searchindex.sync.orchestrator import SyncOrchestrator
from searchindex.sync.tasks import InProcessTaskQueue

MOCK_RECORDS: list[dict[str, Any]] = [
    {
        "id": "doc-001",
        "title": "Advances in Solar Nowcasting Using Deep Learning",
        "summary": "A convolutional network predicts solar irradiance from satellite imagery.",
        "category": "energy",
        "citations": 41,
        "section": "papers",
    },
    {
        "id": "doc-002",
        "title": "Transformer Models for Natural Language Understanding",
        "summary": "A survey of BERT, GPT and T5 on GLUE and SQuAD benchmarks.",
        "category": "nlp",
        "citations": 230,
        "section": "papers",
    },
    {
        "id": "doc-003",
        "title": "Federated Learning for Privacy-Preserving Medical Imaging",
        "summary": "Federated averaging across 12 hospital sites without sharing patient data.",
        "category": "health",
        "citations": 77,
        "section": "papers",
    },
    {
        "id": "doc-004",
        "title": "Reinforcement Learning for Robotic Manipulation",
        "summary": "A sim-to-real policy transfers to a real robotic hand.",
        "category": "robotics",
        "citations": 12,
        "section": "papers",
    },
    {
        "id": "doc-005",
        "title": "Graph Neural Networks for Drug Discovery",
        "summary": "Message passing over 3D molecular geometry on MoleculeNet.",
        "category": "health",
        "citations": 98,
        "section": "papers",
    },
]


def _wait_for_service(url: str, timeout: float = 60.0, headers: dict[str, str] | None = None) -> bool:
    """Block until *url* returns HTTP 200, or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            r = httpx.get(url, timeout=10, headers=headers)
            if r.status_code == 200:
                return True
        except httpx.HTTPError:
            pass
        time.sleep(2)
    return False


def make_index(engine_type: EngineType, engine_config: dict[str, Any], handle: str = "papers") -> Index:
    """A synced index over :data:`MOCK_RECORDS`."""
    return Index(
        handle=handle,
        engine_type=engine_type,
        engine_config={**engine_config, "index_prefix": "it_"},
        field_mappings=[
            FieldMapping(source_field="title", index_field_name="title", weight=10, role=FieldRole.TITLE),
            FieldMapping(source_field="summary", index_field_name="summary", weight=3, role=FieldRole.SUMMARY),
            FieldMapping(source_field="category", index_field_name="category", index_field_type=FieldType.FACET),
            FieldMapping(source_field="citations", index_field_name="citations", index_field_type=FieldType.INTEGER),
        ],
        source_criteria={"section": "papers"},
    )


# ── Meilisearch ─────────────────────────────────────────────────


@pytest.fixture(scope="session")
def meilisearch_ready() -> dict[str, Any]:
    """Ensure Meilisearch is running."""
    host = "http://localhost:7700"
    if not _wait_for_service(f"{host}/health", timeout=10.0):
        pytest.skip("Meilisearch not available at localhost:7700")
    return {"host": host, "api_key": "test-master-key"}


# ── Elasticsearch / OpenSearch ──────────────────────────────────


@pytest.fixture(scope="session")
def elasticsearch_ready() -> dict[str, Any]:
    """Ensure Elasticsearch is running."""
    host = "http://localhost:9200"
    if not _wait_for_service(host, timeout=10.0):
        pytest.skip("Elasticsearch not available at localhost:9200")
    return {"host": host}


@pytest.fixture(scope="session")
def opensearch_ready() -> dict[str, Any]:
    """Ensure OpenSearch is running."""
    host = "http://localhost:9201"
    if not _wait_for_service(host, timeout=10.0):
        pytest.skip("OpenSearch not available at localhost:9201")
    return {"host": host}


# ── Sync ────────────────────────────────────────────────────────

SyncPapers = Callable[[EngineType, dict[str, Any]], Awaitable[SearchService]]


@pytest.fixture
def mock_records() -> list[dict[str, Any]]:
    return [dict(record) for record in MOCK_RECORDS]


@pytest.fixture
async def sync_papers() -> AsyncIterator[SyncPapers]:
    """Refresh ``it_papers`` on a backend through the orchestrator.

    Returns a search service over the freshly swapped-in index; engines are
    closed at teardown.
    """
    registries: list[EngineRegistry] = []

    async def sync(engine_type: EngineType, engine_config: dict[str, Any]) -> SearchService:
        index = make_index(engine_type, engine_config)
        registry = EngineRegistry()
        registries.append(registry)
        queue = InProcessTaskQueue(max_concurrency=2)
        orchestrator = SyncOrchestrator(
            indexes={index.handle: index},
            registry=registry,
            source=ListDocumentSource(MOCK_RECORDS),
            resolver=DictResolver(),
            queue=queue,
            batch_size=2,
        )
        await orchestrator.refresh_index(index.handle)
        await queue.join()
        await queue.close()
        assert queue.failed == []
        return SearchService(RequestContext([index], registry))

    yield sync
    for registry in registries:
        await registry.shutdown_all()
