"""Value types passed between the resolver, the workers and the pool.

Everything here is a frozen dataclass so work items and results pickle
cleanly across the process boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sitemapspine.replication.models import RowChange
from sitemapspine.schema.entities import EntityType
from sitemapspine.schema.walker import DependencyPath


@dataclass(frozen=True, slots=True)
class Candidate:
    """An entity reachable from a row change."""

    entity_type: str
    id: int
    gid: str


@dataclass(frozen=True, slots=True)
class PageVariant:
    """One fetchable page of a candidate: the base page or one numbered page."""

    entity_type: str
    url: str
    paginated: bool
    suffix_key: str


@dataclass(frozen=True, slots=True)
class LastModRecord:
    """Stored state of one page as of its last detected change."""

    id: int
    url: str
    paginated: bool
    suffix_key: str
    content_hash: str
    last_modified: datetime
    replication_sequence: int


class WorkStatus(str, Enum):
    """Outcome of one work item."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class WorkItem:
    """One (row change, dependency path, entity type) unit of work."""

    change: RowChange
    path: DependencyPath
    entity: EntityType

    def describe(self) -> dict[str, object]:
        return {
            **self.change.describe(),
            "entity_type": self.entity.name,
            "path": str(self.path),
        }


@dataclass(frozen=True, slots=True)
class WorkResult:
    """What a worker reports back for a :class:`WorkItem`."""

    status: WorkStatus
    item: WorkItem
    candidates: int = 0
    pages_changed: int = 0
    error: str | None = None

    @property
    def changed(self) -> bool:
        return self.status is WorkStatus.CHANGED
