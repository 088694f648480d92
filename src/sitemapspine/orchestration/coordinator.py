"""
Run coordinator: the state machine that drives one scheduled run.

Manifesto:
    The control cursor is the run's only notion of progress. A sequence is
    "done" when its changes are extracted, every reachable page is diffed,
    its incremental shards are written and, in one final transaction, the
    ledger is truncated and the cursor advanced. Anything short of that
    leaves the cursor where it was, so the next scheduled run retries the
    same sequence.

Architecture:
    ::

        IDLE
         │ read control row, require base sitemap index
         ▼
        FETCHING_SEQUENCE ◄────────────────────────────────┐
         │ current = latest published sequence             │
         │ last >= current ──────────────► IDLE (done)     │
         │ first iteration, ledger non-empty:              │
         │    backlog > tolerance → StalledRunError        │
         │    otherwise          → IDLE (declined, exit 0) │
         ▼                                                 │
        EXTRACTING_CHANGES     download + decode last+1    │
         ▼                                                 │
        RESOLVING_CANDIDATES   walker paths → WorkItems    │
         ▼                                                 │
        AWAITING_WORKERS       pool.drain (+ follow-ups)   │
         ▼                     incremental shards          │
        COMMITTING             truncate ledger + advance ──┘

        any exception ──► FAILED (logged, re-raised; cursor untouched)

    After the loop, if any sequence was processed, the sitemap index is
    rebuilt from the output directory; search engines are pinged when its
    content changed.

Tags:
    coordinator, state-machine, cursor, sitemap-spine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import httpx
from sqlalchemy.engine import Engine

from sitemapspine.core.errors import (
    ConfigurationError,
    ErrorCategory,
    SitemapError,
    StalledRunError,
    TransientFetchError,
)
from sitemapspine.core.logging import LogContext, get_logger
from sitemapspine.core.session import create_sitemap_engine
from sitemapspine.core.settings import SitemapSettings
from sitemapspine.execution.ledger import CheckedEntityLedger
from sitemapspine.execution.models import WorkItem
from sitemapspine.execution.pool import PoolSummary, WorkerPool
from sitemapspine.execution.retry import ConstantBackoff
from sitemapspine.index.ping import ping_search_engines
from sitemapspine.index.writer import IncrementalIndexWriter, ShardBuild
from sitemapspine.orchestration.control import ControlCursor, ControlStore
from sitemapspine.replication.client import ReplicationClient
from sitemapspine.replication.consumer import ReplicationConsumer
from sitemapspine.replication.models import RowChange
from sitemapspine.schema.catalog import SchemaCatalog, load_catalog
from sitemapspine.schema.walker import SchemaGraphWalker

logger = get_logger(__name__)


class RunState(str, Enum):
    """States of one coordinator run."""

    IDLE = "idle"
    FETCHING_SEQUENCE = "fetching_sequence"
    EXTRACTING_CHANGES = "extracting_changes"
    RESOLVING_CANDIDATES = "resolving_candidates"
    AWAITING_WORKERS = "awaiting_workers"
    COMMITTING = "committing"
    FAILED = "failed"


VALID_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.FETCHING_SEQUENCE, RunState.FAILED}),
    RunState.FETCHING_SEQUENCE: frozenset({
        RunState.EXTRACTING_CHANGES,
        RunState.IDLE,  # up to date, or declined
        RunState.FAILED,
    }),
    RunState.EXTRACTING_CHANGES: frozenset({RunState.RESOLVING_CANDIDATES, RunState.FAILED}),
    RunState.RESOLVING_CANDIDATES: frozenset({RunState.AWAITING_WORKERS, RunState.FAILED}),
    RunState.AWAITING_WORKERS: frozenset({RunState.COMMITTING, RunState.FAILED}),
    RunState.COMMITTING: frozenset({RunState.FETCHING_SEQUENCE, RunState.FAILED}),
    RunState.FAILED: frozenset(),  # terminal
}


@dataclass
class RunResult:
    """What one :meth:`RunCoordinator.run` did."""

    states: list[RunState] = field(default_factory=lambda: [RunState.IDLE])
    processed: list[int] = field(default_factory=list)
    pages_changed: int = 0
    declined: bool = False
    shards_changed: bool = False
    index_written: bool = False
    pings_sent: int = 0

    @property
    def exit_code(self) -> int:
        return 1 if self.states[-1] is RunState.FAILED else 0

    @property
    def state(self) -> RunState:
        return self.states[-1]


@dataclass
class SequenceOutcome:
    sequence: int
    changes: int
    pool: PoolSummary
    shards: ShardBuild


class RunCoordinator:
    """
    Processes every pending replication sequence, in order, then refreshes
    the sitemap index.

    Collaborators are injected so tests can swap the HTTP transport and the
    worker backend; :meth:`from_settings` wires the production set.

    Example:
        coordinator = RunCoordinator.from_settings(get_settings())
        result = coordinator.run()
        sys.exit(result.exit_code)
    """

    def __init__(
        self,
        settings: SitemapSettings,
        *,
        engine: Engine,
        consumer: ReplicationConsumer,
        walker: SchemaGraphWalker,
        pool: WorkerPool,
        writer: IncrementalIndexWriter,
        http: httpx.Client,
    ):
        self.settings = settings
        self.engine = engine
        self.consumer = consumer
        self.walker = walker
        self.pool = pool
        self.writer = writer
        self.http = http
        self.control = ControlStore(engine)
        self.ledger = CheckedEntityLedger(engine)
        self._result = RunResult()

    @classmethod
    def from_settings(
        cls,
        settings: SitemapSettings,
        *,
        engine: Engine | None = None,
        http: httpx.Client | None = None,
        pool: WorkerPool | None = None,
        catalog: SchemaCatalog | None = None,
    ) -> RunCoordinator:
        engine = engine or create_sitemap_engine(
            settings.database_url, state_schema=settings.state_schema
        )
        http = http or httpx.Client(timeout=settings.http_timeout)
        catalog = catalog or load_catalog(settings.schema_catalog_path)
        client = ReplicationClient(
            http, settings.replication_access_uri, settings.replication_access_token
        )
        return cls(
            settings,
            engine=engine,
            consumer=ReplicationConsumer(
                client,
                catalog,
                settings.download_dir,
                retry=ConstantBackoff(
                    max_retries=settings.fetch_retries,
                    delay=settings.fetch_retry_delay,
                    retryable_errors=(TransientFetchError,),
                ),
            ),
            walker=SchemaGraphWalker(catalog),
            pool=pool or WorkerPool(settings),
            writer=IncrementalIndexWriter(engine, settings),
            http=http,
        )

    # -- state machine -------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._result.state

    @property
    def result(self) -> RunResult:
        """The current or most recent run, including one that raised."""
        return self._result

    def _transition(self, target: RunState, **fields: object) -> None:
        current = self.state
        if target not in VALID_TRANSITIONS[current]:
            raise SitemapError(
                f"Invalid run state transition: {current.value} → {target.value}",
                category=ErrorCategory.ORCHESTRATION,
            )
        self._result.states.append(target)
        logger.info("coordinator.state", state=target.value, previous=current.value, **fields)

    # -- run -----------------------------------------------------------------

    def run(self) -> RunResult:
        """Process every pending sequence.

        Raises:
            ConfigurationError: Empty control table or missing sitemap index.
            StalledRunError: A previous run left the ledger behind and the
                backlog exceeds ``stalled_backlog_tolerance``.
            SitemapError: Any other fatal error; the cursor is not advanced
                for the sequence that failed.
        """
        self._result = RunResult()
        try:
            self._run()
        except Exception as e:
            self._fail(e)
            raise
        return self._result

    def _fail(self, error: Exception) -> None:
        if self.state is not RunState.FAILED:
            self._result.states.append(RunState.FAILED)
        if isinstance(error, SitemapError):
            logger.error("coordinator.failed", **error.to_dict())
        else:
            logger.exception("coordinator.failed", error=str(error))

    def _run(self) -> None:
        self._transition(RunState.FETCHING_SEQUENCE)
        cursor = self._preflight()
        last = cursor.last_processed_sequence
        first_iteration = True

        while True:
            current = self.consumer.current_sequence()
            if last is not None and last >= current:
                logger.info("coordinator.up_to_date", sequence=last)
                break
            if last is None:
                last = current - 1

            if first_iteration and not self.ledger.is_empty():
                backlog = current - last
                if backlog > self.settings.stalled_backlog_tolerance:
                    raise StalledRunError(
                        f"Table {self.ledger.table.name} is not empty, and the run is "
                        f"{backlog} replication packets behind. Check that a previous "
                        "run didn't die unexpectedly; no run will proceed until "
                        f"{self.ledger.table.name} is cleared."
                    ).with_context(replication_sequence=last + 1, backlog=backlog)
                logger.info(
                    "coordinator.declined",
                    reason="checked-entities ledger not empty; another run may be active",
                    backlog=backlog,
                )
                self._result.declined = True
                self._transition(RunState.IDLE)
                return
            first_iteration = False

            sequence = last + 1
            outcome = self.process_sequence(sequence, cursor)
            self._result.processed.append(sequence)
            self._result.pages_changed += outcome.pool.pages_changed
            self._result.shards_changed |= outcome.shards.dirty
            last = sequence
            self._transition(RunState.FETCHING_SEQUENCE)

        if self._result.processed:
            # also lists shards committed by an earlier run that died here
            self._result.index_written = self.writer.write_index()
        if self._result.index_written:
            self._result.pings_sent = ping_search_engines(
                self.http,
                self.settings.ping_urls,
                self.writer.index_url,
                timeout=self.settings.ping_timeout,
            )
        self._transition(RunState.IDLE, processed=len(self._result.processed))

    def _preflight(self) -> ControlCursor:
        cursor = self.control.read()
        if cursor is None:
            raise ConfigurationError(
                "Table control is empty (has a full sitemap build run yet?)"
            )
        if not self.settings.index_path.is_file():
            raise ConfigurationError(
                f"No sitemap index file was found at {self.settings.index_path}"
            )
        return cursor

    def process_sequence(self, sequence: int, cursor: ControlCursor) -> SequenceOutcome:
        """Fully process one sequence and advance the cursor to it."""
        with LogContext(replication_sequence=sequence):
            self._transition(RunState.EXTRACTING_CHANGES, sequence=sequence)
            changes = list(self.consumer.changes(sequence))

            self._transition(RunState.RESOLVING_CANDIDATES, changes=len(changes))
            items = self.work_items(changes)

            self._transition(RunState.AWAITING_WORKERS, items=len(items))
            summary = self.pool.drain(items, self.expand)
            shards = self.writer.write_all(cursor.shard_baseline)

            self._transition(RunState.COMMITTING)
            with self.engine.begin() as conn:
                self.ledger.truncate(conn)
                self.control.advance(conn, sequence)
            logger.info(
                "coordinator.sequence_committed",
                pages_changed=summary.pages_changed,
                shards_written=len(shards.written),
            )
        return SequenceOutcome(sequence, len(changes), summary, shards)

    def work_items(self, changes: list[RowChange]) -> list[WorkItem]:
        """One work item per (change, path), with every path validated."""
        items = []
        for change in changes:
            for entity, path in self.walker.paths_for(change.schema, change.table):
                SchemaGraphWalker.validate(entity, path, change.schema, change.table)
                items.append(WorkItem(change, path, entity))
        return items

    def expand(self, item: WorkItem) -> list[WorkItem]:
        """Follow-up work after *item* found changed pages."""
        return [
            WorkItem(item.change, path, entity)
            for entity, path in self.walker.extend(item.entity, item.path)
        ]
