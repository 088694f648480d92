"""
Fetch-and-diff worker: resolve one work item, fetch its pages, record changes.

Manifesto:
    A worker owns everything it touches: one engine, one HTTP client, one
    resolver, one lastmod store. Nothing is shared with the coordinator or
    with sibling workers except the database itself, where the ledger lock
    and the per-page transaction keep concurrent workers consistent.

Architecture:
    ::

        WorkItem(change, path, entity)
              │
              ▼
        EntityResolver.resolve ──► {Candidate, ...}  (claimed in the ledger)
              │
              ▼
        FetchAndDiff.process_batch
          for suffix in entity.jsonld_suffixes():
            for candidate in candidates (by id):
              process(candidate)          base page, then page=2, 3, ...
                                          while the previous page changed
              first of many unchanged? ─► skip the rest (FIRST_UNCHANGED)
              │
              ▼
        WorkResult(CHANGED | UNCHANGED | FAILED)

    ``run_work_item`` never raises: any exception becomes a FAILED result
    carrying the error text, and the pool decides what to do with it.

Tags:
    worker, fetch, diff, jsonld, sitemap-spine
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

import httpx
from sqlalchemy.engine import Engine

from sitemapspine.core.errors import TransientFetchError
from sitemapspine.core.hashing import hash_payload
from sitemapspine.core.logging import LogContext, get_logger
from sitemapspine.core.session import create_sitemap_engine
from sitemapspine.core.settings import EarlyExitPolicy, SitemapSettings
from sitemapspine.execution.fetcher import PageFetcher
from sitemapspine.execution.lastmod import LastModStore
from sitemapspine.execution.ledger import CheckedEntityLedger
from sitemapspine.execution.models import (
    Candidate,
    PageVariant,
    WorkItem,
    WorkResult,
    WorkStatus,
)
from sitemapspine.execution.resolver import EntityResolver
from sitemapspine.execution.retry import ConstantBackoff
from sitemapspine.replication.models import RowChange
from sitemapspine.schema.entities import EntityType, SuffixInfo

logger = get_logger(__name__)


def paginated_url(url: str, page: int) -> str:
    """``url`` with ``page=N`` appended (``&`` when it already has a query)."""
    return f"{url}{'&' if '?' in url else '?'}page={page}"


class FetchAndDiff:
    """Fetch candidate pages and compare them against stored hashes."""

    def __init__(
        self,
        fetcher: PageFetcher,
        store: LastModStore,
        canonical_server: str,
        early_exit_policy: EarlyExitPolicy = EarlyExitPolicy.FIRST_UNCHANGED,
    ):
        self.fetcher = fetcher
        self.store = store
        self.canonical_server = canonical_server.rstrip("/")
        self.early_exit_policy = early_exit_policy

    def check_page(self, page: PageVariant, candidate: Candidate, change: RowChange) -> bool:
        """Fetch one page and record its hash. True iff it counts as a change.

        Redirects, failed fetches and unparseable JSON-LD are logged and
        count as "no change" for this page only.
        """
        outcome = self.fetcher.fetch(page.url)
        if not outcome.ok:
            return False
        try:
            digest = hash_payload(outcome.payload or b"")
        except ValueError as e:
            logger.error("fetch.invalid_jsonld", url=outcome.url, error=str(e))
            return False
        return self.store.record(page, candidate, change, digest)

    def process(
        self,
        candidate: Candidate,
        change: RowChange,
        entity: EntityType,
        suffix: SuffixInfo,
    ) -> int:
        """Check the base page, then numbered pages while each one changed.

        Returns:
            Number of pages that changed.
        """
        url = entity.page_url(self.canonical_server, candidate.gid, suffix)
        base = PageVariant(entity.name, url, paginated=False, suffix_key=suffix.key)
        if not self.check_page(base, candidate, change):
            return 0

        changed = 1
        if suffix.paginated:
            page = 2
            while True:
                variant = PageVariant(
                    entity.name, paginated_url(url, page), paginated=True, suffix_key=suffix.key
                )
                if not self.check_page(variant, candidate, change):
                    break
                changed += 1
                page += 1
        return changed

    def process_batch(
        self, entity: EntityType, candidates: Iterable[Candidate], change: RowChange
    ) -> int:
        """Process every candidate for every JSON-LD suffix of *entity*.

        Under ``FIRST_UNCHANGED`` the rest of a suffix batch is skipped when
        its first candidate, out of several, shows no change.

        Returns:
            Total number of pages that changed.
        """
        ordered = sorted(candidates, key=lambda c: c.id)
        total = 0
        for suffix in entity.jsonld_suffixes():
            for index, candidate in enumerate(ordered):
                changed = self.process(candidate, change, entity, suffix)
                total += changed
                remaining = len(ordered) - index - 1
                if (
                    self.early_exit_policy is EarlyExitPolicy.FIRST_UNCHANGED
                    and index == 0
                    and remaining > 0
                    and not changed
                ):
                    logger.info(
                        "worker.batch_skipped",
                        entity_type=entity.name,
                        suffix=suffix.key,
                        skipped=remaining,
                    )
                    break
        return total


@dataclass
class WorkerContext:
    """Per-worker resources. Build one per process with :meth:`from_settings`."""

    engine: Engine
    http: httpx.Client
    ledger: CheckedEntityLedger
    resolver: EntityResolver
    fetch_and_diff: FetchAndDiff

    @classmethod
    def from_settings(
        cls,
        settings: SitemapSettings,
        *,
        engine: Engine | None = None,
        http: httpx.Client | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> WorkerContext:
        engine = engine or create_sitemap_engine(
            settings.database_url, state_schema=settings.state_schema
        )
        http = http or httpx.Client(timeout=settings.http_timeout)
        ledger = CheckedEntityLedger(engine)
        fetcher = PageFetcher(
            http,
            settings.web_server,
            settings.canonical_server,
            retry=ConstantBackoff(
                max_retries=settings.fetch_retries,
                delay=settings.fetch_retry_delay,
                retryable_errors=(TransientFetchError,),
            ),
            sleep=sleep,
        )
        return cls(
            engine=engine,
            http=http,
            ledger=ledger,
            resolver=EntityResolver(engine, ledger),
            fetch_and_diff=FetchAndDiff(
                fetcher,
                LastModStore(engine),
                settings.canonical_server,
                settings.early_exit_policy,
            ),
        )

    def close(self) -> None:
        self.http.close()
        self.engine.dispose()


def run_work_item(ctx: WorkerContext, item: WorkItem) -> WorkResult:
    """Resolve, fetch and diff one work item. Never raises."""
    with LogContext(replication_sequence=item.change.replication_sequence):
        try:
            candidates = ctx.resolver.resolve(item.change, item.path, item.entity)
            if not candidates:
                return WorkResult(WorkStatus.UNCHANGED, item)

            pages = ctx.fetch_and_diff.process_batch(item.entity, candidates, item.change)
            status = WorkStatus.CHANGED if pages else WorkStatus.UNCHANGED
            logger.debug(
                "worker.done",
                entity_type=item.entity.name,
                candidates=len(candidates),
                pages_changed=pages,
            )
            return WorkResult(status, item, candidates=len(candidates), pages_changed=pages)
        except Exception as e:
            logger.exception("worker.failed", **item.describe())
            return WorkResult(WorkStatus.FAILED, item, error=f"{type(e).__name__}: {e}")
