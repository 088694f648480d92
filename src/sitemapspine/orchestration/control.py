"""The control cursor: which replication sequence was last fully processed."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine

from sitemapspine.core.errors import ConfigurationError
from sitemapspine.core.orm import ControlTable

_CONTROL = ControlTable.__table__


@dataclass(frozen=True, slots=True)
class ControlCursor:
    """
    Attributes:
        last_processed_sequence: Last sequence fully processed by the
            incremental run; ``None`` before the first one.
        last_indexed_sequence: Last sequence included in the full sitemap
            build; incremental shards cover everything after it.
    """

    last_processed_sequence: int | None
    last_indexed_sequence: int | None

    @property
    def shard_baseline(self) -> int:
        return self.last_indexed_sequence or 0


class ControlStore:
    """Reads and advances the singleton ``control`` row."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def read(self) -> ControlCursor | None:
        """Return the cursor, or ``None`` when the control table is empty."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(
                    _CONTROL.c.last_processed_replication_sequence,
                    _CONTROL.c.overall_sitemaps_replication_sequence,
                ).limit(1)
            ).first()
        if row is None:
            return None
        return ControlCursor(row[0], row[1])

    def advance(self, conn: Connection, sequence: int) -> None:
        """Record *sequence* as processed, inside the caller's transaction."""
        conn.execute(update(_CONTROL).values(last_processed_replication_sequence=sequence))

    def initialize(
        self,
        last_indexed_sequence: int | None = None,
        last_processed_sequence: int | None = None,
    ) -> ControlCursor:
        """Create the control row if it does not exist yet; returns the cursor."""
        with self.engine.begin() as conn:
            exists = conn.execute(select(_CONTROL.c.id).limit(1)).first()
            if exists is None:
                conn.execute(
                    insert(_CONTROL).values(
                        id=1,
                        last_processed_replication_sequence=last_processed_sequence,
                        overall_sitemaps_replication_sequence=last_indexed_sequence,
                    )
                )
        cursor = self.read()
        if cursor is None:
            raise ConfigurationError("Table control is still empty after initialization")
        return cursor
