"""
Bounded worker pool with follow-up expansion.

Manifesto:
    Resolution holds a long-lived database handle, so workers are OS
    processes, each with its own engine and HTTP client built by the pool
    initializer. Work items are plain picklable dataclasses; the worker
    function is a top-level function.

Architecture:
    ::

        WorkerPool(settings, backend, max_workers)
          └── drain(items, expand)
                queue ─► submit while in-flight < max_workers
                  ▲            │
                  │            ▼
                  │      run_work_item(ctx, item)     (per-process ctx)
                  │            │
                  └── CHANGED: expand(item) ─────────┘
                      FAILED:  cancel pending, raise WorkerFailedError

    Backends:
        - ``process``: ``ProcessPoolExecutor`` with ``_init_worker``
        - ``inline``: the caller's process, one shared ``WorkerContext``
          (tests, debugging)

Tags:
    worker-pool, process-pool, fan-out, sitemap-spine
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, wait
from dataclasses import dataclass

from sitemapspine.core.errors import WorkerFailedError
from sitemapspine.core.logging import configure_logging, get_logger
from sitemapspine.core.settings import SitemapSettings, WorkerBackend
from sitemapspine.execution.models import WorkItem, WorkResult, WorkStatus
from sitemapspine.execution.worker import WorkerContext, run_work_item

logger = get_logger(__name__)

# Set in each worker process by _init_worker
_WORKER_CONTEXT: WorkerContext | None = None


def _init_worker(settings: SitemapSettings) -> None:
    global _WORKER_CONTEXT
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    _WORKER_CONTEXT = WorkerContext.from_settings(settings)


def _run_in_process(item: WorkItem) -> WorkResult:
    if _WORKER_CONTEXT is None:
        raise RuntimeError("Worker process was not initialized")
    return run_work_item(_WORKER_CONTEXT, item)


@dataclass
class PoolSummary:
    """Counts for one :meth:`WorkerPool.drain` call."""

    items: int = 0
    changed: int = 0
    unchanged: int = 0
    follow_ups: int = 0
    pages_changed: int = 0

    def add(self, result: WorkResult) -> None:
        self.items += 1
        self.pages_changed += result.pages_changed
        if result.status is WorkStatus.CHANGED:
            self.changed += 1
        else:
            self.unchanged += 1


class WorkerPool:
    """
    Runs work items with bounded concurrency and re-enqueues follow-ups.

    Example:
        with WorkerPool(settings) as pool:
            summary = pool.drain(items, expand=follow_ups_for)
    """

    def __init__(
        self,
        settings: SitemapSettings,
        backend: WorkerBackend | None = None,
        max_workers: int | None = None,
        *,
        context: WorkerContext | None = None,
    ):
        self.settings = settings
        self.backend = backend or settings.worker_backend
        self.max_workers = max_workers or settings.max_workers
        self._context = context
        self._owns_context = context is None
        self._executor: ProcessPoolExecutor | None = None

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        if self._context is not None and self._owns_context:
            self._context.close()
            self._context = None

    def drain(
        self,
        items: Iterable[WorkItem],
        expand: Callable[[WorkItem], list[WorkItem]],
    ) -> PoolSummary:
        """Run *items* and every follow-up until the queue is empty.

        Raises:
            WorkerFailedError: On the first FAILED result; queued and pending
                work is cancelled.
        """
        queue: deque[WorkItem] = deque(items)
        summary = PoolSummary()
        if self.backend is WorkerBackend.INLINE:
            self._drain_inline(queue, expand, summary)
        else:
            self._drain_process(queue, expand, summary)
        logger.info(
            "pool.drained",
            items=summary.items,
            changed=summary.changed,
            follow_ups=summary.follow_ups,
            pages_changed=summary.pages_changed,
        )
        return summary

    # -- internal ------------------------------------------------------------

    def _handle(
        self,
        result: WorkResult,
        queue: deque[WorkItem],
        expand: Callable[[WorkItem], list[WorkItem]],
        summary: PoolSummary,
    ) -> None:
        if result.status is WorkStatus.FAILED:
            raise WorkerFailedError(
                f"Worker failed: {result.error}"
            ).with_context(
                replication_sequence=result.item.change.replication_sequence,
                entity_type=result.item.entity.name,
                table=result.item.change.qualified_table,
                path=str(result.item.path),
            )
        summary.add(result)
        if result.status is WorkStatus.CHANGED:
            follow_ups = expand(result.item)
            summary.follow_ups += len(follow_ups)
            queue.extend(follow_ups)

    def _drain_inline(
        self,
        queue: deque[WorkItem],
        expand: Callable[[WorkItem], list[WorkItem]],
        summary: PoolSummary,
    ) -> None:
        if self._context is None:
            self._context = WorkerContext.from_settings(self.settings)
        while queue:
            self._handle(run_work_item(self._context, queue.popleft()), queue, expand, summary)

    def _drain_process(
        self,
        queue: deque[WorkItem],
        expand: Callable[[WorkItem], list[WorkItem]],
        summary: PoolSummary,
    ) -> None:
        if self._executor is None:
            self._executor = ProcessPoolExecutor(
                max_workers=self.max_workers,
                initializer=_init_worker,
                initargs=(self.settings,),
            )
        in_flight: set[Future[WorkResult]] = set()
        try:
            while queue or in_flight:
                while queue and len(in_flight) < self.max_workers:
                    in_flight.add(self._executor.submit(_run_in_process, queue.popleft()))
                done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        result = future.result()
                    except Exception as e:
                        raise WorkerFailedError("Worker process died", cause=e) from e
                    self._handle(result, queue, expand, summary)
        except BaseException:
            for future in in_flight:
                future.cancel()
            queue.clear()
            raise
