"""Checked-entities ledger: the per-sequence set of entities already resolved.

The ledger lives in ``tmp_checked_entities`` and is truncated when a
sequence commits. A row means "this entity was claimed by some worker for the
current sequence"; a second path reaching the same entity finds it here and
skips it, so every entity is fetched at most once per sequence.

A non-empty ledger at the start of a run means the previous run is still
going or died before committing.
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import ColumnElement, and_, delete, exists, func, insert, select
from sqlalchemy.engine import Connection, Engine

from sitemapspine.core.orm import CheckedEntityTable

_LEDGER = CheckedEntityTable.__table__


class CheckedEntityLedger:
    """Transactional key set over ``tmp_checked_entities``.

    Methods taking a connection run inside the caller's transaction; the
    rest open their own.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.table = _LEDGER

    def lock(self, conn: Connection) -> None:
        """Lock the ledger against concurrent claims for this transaction.

        PostgreSQL takes ``SHARE ROW EXCLUSIVE``; SQLite transactions already
        hold the database write lock from ``BEGIN IMMEDIATE``.
        """
        if conn.dialect.name == "postgresql":
            preparer = conn.dialect.identifier_preparer
            translate = conn.get_execution_options().get("schema_translate_map") or {}
            schema = translate.get(None)
            name = preparer.quote(self.table.name)
            if schema:
                name = f"{preparer.quote_schema(schema)}.{name}"
            conn.exec_driver_sql(f"LOCK TABLE {name} IN SHARE ROW EXCLUSIVE MODE")

    def unclaimed_clause(self, entity_type: str, id_column: ColumnElement) -> ColumnElement:
        """``NOT EXISTS`` filter excluding entities already in the ledger."""
        return ~exists().where(
            and_(self.table.c.entity_type == entity_type, self.table.c.id == id_column)
        )

    def claim(self, conn: Connection, entity_type: str, ids: Iterable[int]) -> int:
        """Insert *ids* for *entity_type*; returns how many were inserted."""
        rows = [{"entity_type": entity_type, "id": i} for i in sorted(set(ids))]
        if rows:
            conn.execute(insert(self.table), rows)
        return len(rows)

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(self.table)).scalar_one()

    def is_empty(self) -> bool:
        with self.engine.connect() as conn:
            return conn.execute(select(self.table.c.id).limit(1)).first() is None

    def truncate(self, conn: Connection) -> None:
        conn.execute(delete(self.table))
