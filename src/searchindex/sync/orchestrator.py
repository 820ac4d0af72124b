"""Sync Orchestrator — Keeps search indexes in step with the live documents.

Full refresh on a backend with atomic swap:
  1. Plan: count live documents, create a fresh temporary index, set the
     swap counter to the number of batches, schedule one batch per page.
  2. Batches: each one indexes its page into the temporary index and
     decrements the counter.  Batches may run concurrently.
  3. Swap: the batch that brings the counter to zero schedules the
     swap, which makes the temporary index live and removes the old one.
  4. Orphan cleanup: deletes IDs the engine holds but the source no
     longer lists.

Backends without atomic swap fall back to delete, recreate and reimport.
Single-document writes go straight to the engine and propagate every
error so the caller's retry mechanism sees it.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from searchindex.engines.base.engine import Document, SearchEngine, document_id
from searchindex.engines.base.exceptions import (
    BulkFailure,
    BulkIndexError,
    ConfigurationError,
    IndexNotFoundError,
    SwapScheduleError,
    TransientError,
    ValidationError,
)
from searchindex.engines.base.registry import EngineRegistry
from searchindex.models.index import Index
from searchindex.sync.collaborators import DocumentResolver, LiveDocumentFilter, LiveDocumentSource
from searchindex.sync.counter import MemorySwapCounterStore, SwapCounter, SwapCounterStore
from searchindex.sync.retry import RetryPolicy
from searchindex.sync.tasks import (
    AtomicSwapTask,
    BulkIndexTask,
    CleanupOrphansTask,
    DeindexDocumentTask,
    IndexDocumentTask,
    SyncTask,
    TaskQueue,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


@dataclass
class RefreshPlan:
    """What a full refresh or import scheduled."""

    index_handle: str
    target_handle: str
    total_documents: int
    batch_count: int
    swap: bool


@dataclass
class BatchReport:
    """Outcome of one bulk batch."""

    target_handle: str
    indexed: int = 0
    skipped: int = 0
    failures: list[BulkFailure] = field(default_factory=list)
    swap_triggered: bool = False


class SyncOrchestrator:
    """Schedules and executes index synchronisation.

    Args:
        indexes: Configured indexes by handle.
        registry: Engine registry for this worker.
        source: Live document source.
        resolver: Turns source records into index documents.
        queue: Task queue; the orchestrator binds :meth:`run_task` to it.
        counters: Swap counter store (in-memory by default).
        retry_policy: Used for re-sending the failed subset of a batch.
        batch_size: Documents per bulk batch.
        orphan_batch_size: IDs per orphan deletion request.
    """

    def __init__(
        self,
        indexes: Mapping[str, Index],
        registry: EngineRegistry,
        source: LiveDocumentSource,
        resolver: DocumentResolver,
        queue: TaskQueue,
        counters: SwapCounterStore | None = None,
        retry_policy: RetryPolicy | None = None,
        batch_size: int = 500,
        orphan_batch_size: int = 500,
    ) -> None:
        self.indexes = dict(indexes)
        self.registry = registry
        self.source = source
        self.resolver = resolver
        self.queue = queue
        self.counters = counters or MemorySwapCounterStore()
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = max(1, batch_size)
        self.orphan_batch_size = max(1, orphan_batch_size)
        self.queue.bind(self.run_task)

    # ── Lookup ───────────────────────────────────────────────────────────

    def get_index(self, handle: str) -> Index:
        index = self.indexes.get(handle)
        if index is None:
            raise IndexNotFoundError(handle)
        return index

    def get_writable_index(self, handle: str) -> Index:
        """Return the index, refusing read-only ones."""
        index = self.get_index(handle)
        if index.is_readonly:
            raise ConfigurationError(f"Index '{handle}' is read-only; the sync layer does not write to it")
        return index

    def engine_for(self, index: Index) -> SearchEngine:
        return self.registry.get(index)

    # ── Task dispatch ────────────────────────────────────────────────────

    async def run_task(self, task: SyncTask) -> Any:
        """Execute one dequeued task."""
        if isinstance(task, BulkIndexTask):
            return await self.run_bulk_batch(task)
        if isinstance(task, AtomicSwapTask):
            return await self.perform_atomic_swap(task.index_handle, task.swap_handle)
        if isinstance(task, CleanupOrphansTask):
            return await self.cleanup_orphans(task.index_handle)
        if isinstance(task, IndexDocumentTask):
            return await self.index_document(task.index_handle, task.document)
        if isinstance(task, DeindexDocumentTask):
            return await self.delete_document(task.index_handle, task.object_id)
        raise ValidationError(f"Unknown sync task kind: {task.kind}")

    # ── Full import / refresh ────────────────────────────────────────────

    async def import_index(self, handle: str) -> RefreshPlan:
        """Index every live document into the existing index in place.

        Creates the index when it is missing and pushes the current field
        mappings otherwise.  Existing documents are overwritten by
        ``objectID``; stale ones are removed by the trailing orphan cleanup.
        """
        index = self.get_writable_index(handle)
        engine = self.engine_for(index)

        if await engine.index_exists(index):
            await engine.update_index_settings(index)
        else:
            await engine.create_index(index)

        plan = await self._schedule_batches(index, swap_handle=None)
        await self.queue.enqueue(CleanupOrphansTask(index_handle=index.handle))
        return plan

    async def refresh_index(self, handle: str) -> RefreshPlan:
        """Rebuild an index from scratch.

        Builds into a temporary index and swaps it in when the backend
        supports it.  Otherwise the live index is deleted, recreated and
        reimported, which leaves a window where searches see partial data.
        """
        index = self.get_writable_index(handle)
        engine = self.engine_for(index)

        if not engine.supports_atomic_swap():
            logger.warning(
                "%s does not support atomic swap; rebuilding %s in place (searches may see partial data)",
                engine.display_name or engine.name,
                index.handle,
            )
            if await engine.index_exists(index):
                await engine.delete_index(index)
            await engine.create_index(index)
            plan = await self._schedule_batches(index, swap_handle=None)
            await self.queue.enqueue(CleanupOrphansTask(index_handle=index.handle))
            return plan

        swap_handle = await engine.build_swap_handle(index)
        swap_index = index.with_handle(swap_handle)
        if await engine.index_exists(swap_index):
            logger.info("Deleting stale temporary index %s", swap_handle)
            await engine.delete_index(swap_index)
        await engine.create_index(swap_index)

        return await self._schedule_batches(index, swap_handle=swap_handle)

    async def _schedule_batches(self, index: Index, swap_handle: str | None) -> RefreshPlan:
        live_filter = LiveDocumentFilter.for_index(index)
        total = await self.source.count(live_filter)
        batch_count = math.ceil(total / self.batch_size) if total > 0 else 0
        target = swap_handle or index.handle
        plan = RefreshPlan(
            index_handle=index.handle,
            target_handle=target,
            total_documents=total,
            batch_count=batch_count,
            swap=swap_handle is not None,
        )

        if swap_handle is not None:
            if batch_count == 0:
                logger.info("No live documents for %s; swapping in the empty index", index.handle)
                await self.queue.enqueue(AtomicSwapTask(index_handle=index.handle, swap_handle=swap_handle))
                return plan
            await self.counters.create(swap_handle, index.handle, batch_count)

        for i in range(batch_count):
            await self.queue.enqueue(
                BulkIndexTask(
                    index_handle=index.handle,
                    offset=i * self.batch_size,
                    limit=self.batch_size,
                    swap_handle=swap_handle,
                )
            )
        logger.info("Scheduled %d batch(es) of %d for %s (%d documents)", batch_count, self.batch_size, target, total)
        return plan

    async def run_bulk_batch(self, task: BulkIndexTask) -> BatchReport:
        """Index one page of live documents.

        Documents rejected by the backend are re-sent through the retry
        policy; whatever still fails is reported, not raised, so the swap
        counter is decremented either way.  Any other error propagates and
        leaves the counter untouched.
        """
        index = self.get_writable_index(task.index_handle)
        engine = self.engine_for(index)
        target = index.with_handle(task.swap_handle) if task.swap_handle else index
        report = BatchReport(target_handle=target.handle)

        records = await self.source.fetch(task.offset, task.limit, LiveDocumentFilter.for_index(index))
        documents = [document for _, document in await self._resolve_all(records, index)]
        report.skipped = len(records) - len(documents)

        if documents:
            report.failures = await self._index_with_retry(engine, target, documents)
            report.indexed = len(documents) - len(report.failures)
        if report.failures:
            logger.warning(
                "%d document(s) in %s could not be indexed into %s",
                len(report.failures),
                task.description,
                target.handle,
            )

        if task.swap_handle:
            report.swap_triggered = await self.decrement_swap_counter(task.swap_handle)
        logger.info("Indexed %d document(s) into %s", report.indexed, target.handle)
        return report

    async def _resolve_all(self, records: Iterable[Any], index: Index) -> list[tuple[str, Document]]:
        """Resolve records to ``(objectID, document)`` pairs, dropping skipped ones."""
        resolved: list[tuple[str, Document]] = []
        for record in records:
            document = await self.resolver.resolve(record, index)
            if document is None:
                continue
            object_id = document_id(document)
            if object_id is None:
                raise ValidationError(f"Resolved document for index '{index.handle}' has no objectID")
            resolved.append((object_id, document))
        return resolved

    async def _index_with_retry(
        self, engine: SearchEngine, target: Index, documents: list[Document]
    ) -> list[BulkFailure]:
        pending = documents

        async def attempt() -> None:
            nonlocal pending
            try:
                await engine.index_documents(target, pending)
            except BulkIndexError as e:
                failed = set(e.failed_ids)
                pending = [d for d in pending if document_id(d) in failed]
                raise

        try:
            await self.retry_policy.run(attempt, description=f"bulk index into {target.handle}")
        except BulkIndexError as e:
            return list(e.failures)
        return []

    async def decrement_swap_counter(self, swap_handle: str) -> bool:
        """Count one finished batch; schedule the swap after the last one.

        Returns:
            True if this call scheduled the swap.

        Raises:
            SwapCoordinationError: If the counter mutex cannot be acquired.
            SwapScheduleError: If the swap task could not be queued; the
                counter is back at 1 and retrying the batch reschedules it.
        """

        async def enqueue_swap(counter: SwapCounter) -> None:
            task = AtomicSwapTask(index_handle=counter.index_handle, swap_handle=swap_handle)
            try:
                await self.queue.enqueue(task)
            except TransientError:
                raise
            except Exception as e:
                raise SwapScheduleError(f"Could not schedule the swap for {swap_handle}: {e}") from e
            logger.info("All batches for %s done; swap scheduled", swap_handle)

        return await self.counters.decrement(swap_handle, enqueue_swap)

    async def perform_atomic_swap(self, handle: str, swap_handle: str) -> None:
        """Make the temporary index live, then schedule orphan cleanup.

        The adapters remove the stale index as part of the swap.
        """
        index = self.get_writable_index(handle)
        engine = self.engine_for(index)
        await engine.swap_index(index, index.with_handle(swap_handle))
        logger.info("Swapped %s into %s", swap_handle, index.handle)
        await self.queue.enqueue(CleanupOrphansTask(index_handle=index.handle))

    async def cleanup_orphans(self, handle: str, progress: ProgressCallback | None = None) -> int:
        """Delete documents whose ID the live source no longer lists.

        Args:
            handle: Index handle.
            progress: Called with a fraction in ``[0, 1]`` and a label
                after each deletion batch.

        Returns:
            Number of documents deleted.
        """
        index = self.get_writable_index(handle)
        engine = self.engine_for(index)

        engine_ids = await engine.get_all_document_ids(index)
        live_ids = {str(i) for i in await self.source.ids_of(LiveDocumentFilter.for_index(index))}
        orphans = [object_id for object_id in engine_ids if object_id not in live_ids]

        if not orphans:
            if progress:
                progress(1.0, f"No orphans in {index.handle}")
            return 0

        batches = math.ceil(len(orphans) / self.orphan_batch_size)
        for n in range(batches):
            chunk = orphans[n * self.orphan_batch_size : (n + 1) * self.orphan_batch_size]
            await engine.delete_documents(index, chunk)
            done = min(len(orphans), (n + 1) * self.orphan_batch_size)
            if progress:
                progress((n + 1) / batches, f"Deleted {done} of {len(orphans)} orphans")

        logger.info("Deleted %d orphaned document(s) from %s", len(orphans), index.handle)
        return len(orphans)

    # ── Incremental sync ─────────────────────────────────────────────────

    async def index_document(self, handle: str, document: Document) -> str:
        """Upsert one resolved document.  Errors propagate.

        Returns:
            The document's ``objectID``.
        """
        index = self.get_writable_index(handle)
        object_id = document_id(document)
        if object_id is None:
            raise ValidationError(f"Document for index '{handle}' has no objectID")
        await self.engine_for(index).index_document(index, object_id, document)
        logger.debug("Indexed %s into %s", object_id, index.handle)
        return object_id

    async def index_record(self, handle: str, record: Any) -> str | None:
        """Resolve one source record and upsert it.  Errors propagate.

        Returns:
            The ``objectID``, or ``None`` if the resolver skipped the record.
        """
        index = self.get_writable_index(handle)
        document = await self.resolver.resolve(record, index)
        if document is None:
            return None
        return await self.index_document(handle, document)

    async def delete_document(self, handle: str, object_id: str) -> None:
        """Remove one document.  Errors propagate."""
        index = self.get_writable_index(handle)
        await self.engine_for(index).delete_document(index, str(object_id))
        logger.debug("Deleted %s from %s", object_id, index.handle)

    async def index_records(self, handle: str, records: Iterable[Any]) -> list[str]:
        """Resolve records and schedule one index task per distinct ``objectID``.

        A record that appears several times (e.g. saved twice in one
        request) is queued once, with its last resolved version.

        Returns:
            The queued ``objectID`` values, in first-seen order.
        """
        index = self.get_writable_index(handle)
        queued: dict[str, Document] = {}
        for object_id, document in await self._resolve_all(records, index):
            queued[object_id] = document

        for object_id, document in queued.items():
            await self.queue.enqueue(IndexDocumentTask(index_handle=handle, object_id=object_id, document=document))
        return list(queued)

    async def delete_records(self, handle: str, object_ids: Iterable[str]) -> list[str]:
        """Schedule one removal task per distinct ``objectID``."""
        self.get_writable_index(handle)
        unique = list(dict.fromkeys(str(i) for i in object_ids))
        for object_id in unique:
            await self.queue.enqueue(DeindexDocumentTask(index_handle=handle, object_id=object_id))
        return unique
