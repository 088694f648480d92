"""Resolution, fetch-and-diff workers and the pool that runs them.

MODULE MAP
──────────
  models.py    ─ Candidate, PageVariant, LastModRecord, WorkItem, WorkResult
  retry.py     ─ ConstantBackoff / RetryContext
  ledger.py    ─ CheckedEntityLedger (tmp_checked_entities)
  resolver.py  ─ EntityResolver: (change, path) → claimed candidates
  fetcher.py   ─ PageFetcher: JSON-LD GET with retry
  lastmod.py   ─ LastModStore: hash comparison per page
  worker.py    ─ FetchAndDiff, WorkerContext, run_work_item
  pool.py      ─ WorkerPool (process / inline backends)
"""

from sitemapspine.execution.models import (
    Candidate,
    LastModRecord,
    PageVariant,
    WorkItem,
    WorkResult,
    WorkStatus,
)
from sitemapspine.execution.retry import ConstantBackoff, RetryContext, RetryStrategy

__all__ = [
    "Candidate",
    "ConstantBackoff",
    "LastModRecord",
    "PageVariant",
    "RetryContext",
    "RetryStrategy",
    "WorkItem",
    "WorkResult",
    "WorkStatus",
]
