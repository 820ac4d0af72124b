"""Sync tasks — Units of background work and the queue that runs them.

Each task is a small pydantic model so it can be handed to any external
job system as JSON.  :class:`InProcessTaskQueue` is the built-in runner:
an asyncio worker pool with bounded concurrency that retries transient
failures through a :class:`~searchindex.sync.retry.RetryPolicy`.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, Field

from searchindex.engines.base.exceptions import ConfigurationError
from searchindex.sync.retry import RetryPolicy

logger = logging.getLogger(__name__)


# ── Task payloads ────────────────────────────────────────────────────────


class SyncTask(BaseModel):
    """Base payload: every task targets one configured index."""

    kind: str
    index_handle: str

    @property
    def description(self) -> str:
        return f"{self.kind} on {self.index_handle}"


class BulkIndexTask(SyncTask):
    """Index one page of live documents.

    With ``swap_handle`` set the page goes into the temporary index of a
    refresh and the swap counter is decremented afterwards.
    """

    kind: Literal["bulk_index"] = "bulk_index"
    offset: int = Field(ge=0)
    limit: int = Field(ge=1)
    swap_handle: str | None = None

    @property
    def description(self) -> str:
        target = self.swap_handle or self.index_handle
        return f"bulk_index {target} [{self.offset}:{self.offset + self.limit}]"


class AtomicSwapTask(SyncTask):
    """Make the temporary index live under the index's name."""

    kind: Literal["atomic_swap"] = "atomic_swap"
    swap_handle: str


class CleanupOrphansTask(SyncTask):
    """Delete documents that are no longer live."""

    kind: Literal["cleanup_orphans"] = "cleanup_orphans"


class IndexDocumentTask(SyncTask):
    """Upsert one already-resolved document."""

    kind: Literal["index_document"] = "index_document"
    object_id: str
    document: dict[str, Any]


class DeindexDocumentTask(SyncTask):
    """Remove one document."""

    kind: Literal["deindex_document"] = "deindex_document"
    object_id: str


TaskHandler = Callable[[SyncTask], Awaitable[Any]]


# ── Queues ───────────────────────────────────────────────────────────────


class TaskQueue(ABC):
    """Where the orchestrator schedules work.

    The orchestrator binds its dispatcher with :meth:`bind`; a queue backed
    by an external job system would serialise the task instead and call
    the dispatcher from its worker.
    """

    def bind(self, handler: TaskHandler) -> None:
        """Set the callable that executes dequeued tasks."""

    @abstractmethod
    async def enqueue(self, task: SyncTask) -> None:
        """Schedule a task.  Raises if it could not be scheduled."""


@dataclass
class FailedTask:
    task: SyncTask
    error: BaseException


class InProcessTaskQueue(TaskQueue):
    """Asyncio worker pool.

    Workers start on the first :meth:`enqueue`.  A task whose error
    survives the retry policy is logged and recorded in :attr:`failed`; the
    worker moves on.

    Args:
        max_concurrency: Number of workers.
        retry_policy: Policy applied to each task.
        handler: Task executor; usually bound by the orchestrator.
    """

    def __init__(
        self,
        max_concurrency: int = 4,
        retry_policy: RetryPolicy | None = None,
        handler: TaskHandler | None = None,
    ) -> None:
        self.max_concurrency = max(1, max_concurrency)
        self.retry_policy = retry_policy or RetryPolicy()
        self._handler = handler
        self._queue: asyncio.Queue[SyncTask] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self.completed: list[SyncTask] = []
        self.failed: list[FailedTask] = []

    def bind(self, handler: TaskHandler) -> None:
        if self._handler is None:
            self._handler = handler

    async def enqueue(self, task: SyncTask) -> None:
        if self._handler is None:
            raise ConfigurationError("InProcessTaskQueue has no task handler bound")
        queue = self._ensure_workers(self._handler)
        await queue.put(task)
        logger.debug("Enqueued %s", task.description)

    def _ensure_workers(self, handler: TaskHandler) -> asyncio.Queue[SyncTask]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        queue = self._queue
        if not self._workers:
            self._workers = [
                asyncio.create_task(self._worker(queue, handler), name=f"searchindex-sync-{i}")
                for i in range(self.max_concurrency)
            ]
        return queue

    async def _worker(self, queue: asyncio.Queue[SyncTask], handler: TaskHandler) -> None:
        while True:
            task = await queue.get()
            try:
                await self.retry_policy.run(lambda: handler(task), description=task.description)
                self.completed.append(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Task %s failed permanently: %s", task.description, e, exc_info=True)
                self.failed.append(FailedTask(task=task, error=e))
            finally:
                queue.task_done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def join(self) -> None:
        """Wait until every enqueued task, including follow-ups, has run."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Stop the workers; queued tasks that have not started are dropped."""
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
