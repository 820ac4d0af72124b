"""Test doubles: an in-memory search engine, a live document source, a resolver and a REST backend."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping
from typing import Any, ClassVar

import httpx

from searchindex.engines.base.engine import Document, SearchEngine, document_id, normalise_facet_counts, normalise_hit
from searchindex.engines.base.exceptions import BulkFailure, BulkIndexError, ConnectionError
from searchindex.models.index import EngineType, FieldMapping, FieldType, Index
from searchindex.models.options import RangeFilter, SearchOptions
from searchindex.models.result import SearchResult
from searchindex.sync.collaborators import LiveDocumentFilter


def matches_filters(document: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    """Reference semantics: OR within a list, AND across fields, inclusive ranges."""
    for field, condition in filters.items():
        value = document.get(field)
        values = value if isinstance(value, list) else [value]
        if isinstance(condition, RangeFilter):
            numbers = [v for v in values if isinstance(v, int | float) and not isinstance(v, bool)]
            lo = float(condition.min) if condition.min is not None else None
            hi = float(condition.max) if condition.max is not None else None
            if not any((lo is None or v >= lo) and (hi is None or v <= hi) for v in numbers):
                return False
        elif isinstance(condition, list):
            wanted = {str(c) for c in condition}
            if not any(str(v) in wanted for v in values):
                return False
        elif not any(str(v) == str(condition) for v in values):
            return False
    return True


class FakeEngine(SearchEngine):
    """Dict-backed engine implementing the whole contract.

    Config keys:
        swap: Whether atomic swap is supported (default True).
        fail_ids: ``objectID`` values rejected on their first bulk write.
        unreachable: Make every call raise :class:`ConnectionError`.
    """

    engine_type: ClassVar[EngineType] = EngineType.MEILISEARCH
    display_name: ClassVar[str] = "Fake"

    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        super().__init__(config)
        self.store: dict[str, dict[str, Document]] = {}
        self.swaps: list[tuple[str, str]] = []
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.settings_updates: list[str] = []
        self.bulk_calls: list[tuple[str, int]] = []
        self._pending_failures = {str(i) for i in self._config.get("fail_ids", [])}
        self.closed = False

    def _check(self) -> None:
        if self._config.get("unreachable"):
            raise ConnectionError("fake backend unreachable")

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def create_index(self, index: Index) -> None:
        self._check()
        name = self.get_index_name(index)
        self.store.setdefault(name, {})
        self.created.append(name)

    async def update_index_settings(self, index: Index) -> None:
        self.settings_updates.append(self.get_index_name(index))

    async def delete_index(self, index: Index) -> None:
        name = self.get_index_name(index)
        self.store.pop(name, None)
        self.deleted.append(name)

    async def index_exists(self, index: Index) -> bool:
        self._check()
        return self.get_index_name(index) in self.store

    # ── Documents ────────────────────────────────────────────────────────

    def _docs(self, index: Index) -> dict[str, Document]:
        return self.store.setdefault(self.get_index_name(index), {})

    async def index_document(self, index: Index, object_id: str, document: Document) -> None:
        self._check()
        self._docs(index)[str(object_id)] = {**document, "objectID": str(object_id)}

    async def index_documents(self, index: Index, documents: list[Document]) -> None:
        self._check()
        # Yield so concurrent batches interleave.
        await asyncio.sleep(0)
        self.bulk_calls.append((self.get_index_name(index), len(documents)))
        failures: list[BulkFailure] = []
        for document in documents:
            object_id = document_id(document)
            assert object_id is not None
            if object_id in self._pending_failures:
                self._pending_failures.discard(object_id)
                failures.append(BulkFailure(object_id=object_id, reason="rejected once"))
                continue
            self._docs(index)[object_id] = {**document, "objectID": object_id}
        if failures:
            raise BulkIndexError(self.get_index_name(index), failures)

    async def delete_document(self, index: Index, object_id: str) -> None:
        self._check()
        self._docs(index).pop(str(object_id), None)

    async def delete_documents(self, index: Index, object_ids: list[str]) -> None:
        for object_id in object_ids:
            await self.delete_document(index, object_id)

    async def flush_index(self, index: Index) -> None:
        self._docs(index).clear()

    async def get_document(self, index: Index, object_id: str) -> Document | None:
        self._check()
        doc = self._docs(index).get(str(object_id))
        return dict(doc) if doc is not None else None

    async def get_document_count(self, index: Index) -> int:
        self._check()
        return len(self._docs(index))

    async def get_all_document_ids(self, index: Index) -> list[str]:
        return list(self._docs(index))

    # ── Search ───────────────────────────────────────────────────────────

    async def search(self, index: Index, query: str, options: SearchOptions | None = None) -> SearchResult:
        self._check()
        options = options or SearchOptions()
        needle = query.strip().lower()
        docs = [
            d
            for d in self._docs(index).values()
            if matches_filters(d, options.filters)
            and (not needle or any(isinstance(v, str) and needle in v.lower() for v in d.values()))
        ]
        for field, direction in reversed(list(options.sort.items())):
            docs.sort(key=lambda d, f=field: (d.get(f) is None, d.get(f)), reverse=direction == "desc")

        facets = {}
        for field in options.facets:
            counts: dict[str, int] = {}
            for d in docs:
                value = d.get(field)
                for v in value if isinstance(value, list) else [value]:
                    if v is not None:
                        counts[str(v)] = counts.get(str(v), 0) + 1
            facets[field] = normalise_facet_counts(counts)

        page = docs[options.offset : options.offset + options.per_page]
        if options.attributes_to_retrieve:
            keep = set(options.attributes_to_retrieve) | {"objectID"}
            page = [{k: v for k, v in d.items() if k in keep} for d in page]
        hits = [normalise_hit(d, score=1.0) for d in page]
        return self.build_result(hits=hits, total_hits=len(docs), options=options, facets=facets, raw={"fake": True})

    # ── Schema / swap / health ───────────────────────────────────────────

    def build_schema(self, field_mappings: list[FieldMapping]) -> dict[str, Any]:
        return {m.index_field_name: m.index_field_type.value for m in field_mappings if m.enabled}

    def map_field_type(self, field_type: FieldType) -> str:
        return field_type.value

    def supports_atomic_swap(self) -> bool:
        return bool(self._config.get("swap", True))

    async def swap_index(self, index: Index, swap_index: Index) -> None:
        live, temp = self.get_index_name(index), self.get_index_name(swap_index)
        self.store[live] = self.store.pop(temp, {})
        self.swaps.append((live, temp))

    async def test_connection(self) -> bool:
        return not self._config.get("unreachable")

    async def close(self) -> None:
        self.closed = True


def fake_registry_classes() -> dict[EngineType, type[SearchEngine]]:
    return {engine_type: FakeEngine for engine_type in EngineType}


def make_records(count: int, *, section: str = "news") -> list[dict[str, Any]]:
    """Live records ``{"id": "1", "title": "Article 1", ...}``."""
    categories = ["news", "sport", "culture"]
    return [
        {
            "id": str(i),
            "title": f"Article {i}",
            "summary": f"Summary of article {i}",
            "category": categories[i % len(categories)],
            "price": float(i),
            "section": section,
        }
        for i in range(1, count + 1)
    ]


class ListDocumentSource:
    """Live source over a plain list of records (dicts with ``id``)."""

    def __init__(self, records: list[dict[str, Any]]) -> None:
        self.records = records
        self.fetches: list[tuple[int, int]] = []

    def _matching(self, live_filter: LiveDocumentFilter) -> list[dict[str, Any]]:
        section = live_filter.criteria.get("section")
        return [r for r in self.records if section is None or r.get("section") == section]

    async def count(self, live_filter: LiveDocumentFilter) -> int:
        return len(self._matching(live_filter))

    async def ids_of(self, live_filter: LiveDocumentFilter) -> list[str]:
        return [str(r["id"]) for r in self._matching(live_filter)]

    async def fetch(self, offset: int, limit: int, live_filter: LiveDocumentFilter) -> list[Any]:
        self.fetches.append((offset, limit))
        await asyncio.sleep(0)
        return self._matching(live_filter)[offset : offset + limit]


class DictResolver:
    """Maps ``{"id": ..., **fields}`` to ``{"objectID": ..., **fields}``; skips ``skip=True``."""

    async def resolve(self, record: Any, index: Index) -> Document | None:
        if record.get("skip"):
            return None
        doc = {k: v for k, v in record.items() if k not in ("id", "skip")}
        doc["objectID"] = str(record["id"])
        return doc


Route = tuple[int, Any] | Callable[[httpx.Request], httpx.Response]


class FakeBackend:
    """Answers ``(method, path)`` from a route table and records every request.

    Unrouted requests get a 404.  A route is either ``(status, json_body)``
    or a callable receiving the request.
    """

    def __init__(self, routes: dict[tuple[str, str], Route] | None = None) -> None:
        self.routes: dict[tuple[str, str], Route] = dict(routes or {})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "not found"})
        if callable(route):
            return route(request)
        status, body = route
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def client(self, base_url: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(self))

    def calls(self) -> list[tuple[str, str]]:
        return [(r.method, r.url.path) for r in self.requests]

    def body(self, method: str, path: str) -> Any:
        """JSON body of the last request to ``(method, path)``."""
        for request in reversed(self.requests):
            if (request.method, request.url.path) == (method, path):
                return json.loads(request.content) if request.content else None
        raise AssertionError(f"No {method} {path} request was sent")
