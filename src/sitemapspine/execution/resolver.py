"""
Entity resolver: from a row change and a dependency path to the entities it
reaches.

One ``SELECT DISTINCT`` per (change, path) joins outward from the entity
table (aliased ``entity_table``) along the path until it reaches the changed
table, filters on the changed key, and excludes entities already in the
checked-entities ledger. The found ids are claimed in the same serializable
transaction, under the ledger lock, so two workers resolving different paths
to the same entity cannot both see it as new.

Example:
    Change on ``musicbrainz.artist_alias.id = 7``, path
    ``artist_alias.artist = artist.id``::

        SELECT DISTINCT entity_table.id, entity_table.gid
          FROM musicbrainz.artist AS entity_table
          JOIN musicbrainz.artist_alias AS j1 ON j1.artist = entity_table.id
         WHERE j1.id = :id_1
           AND NOT EXISTS (SELECT * FROM tmp_checked_entities
                            WHERE entity_type = :entity_type_1
                              AND tmp_checked_entities.id = entity_table.id)

Tags:
    resolver, ledger, sql, sitemap-spine
"""

from __future__ import annotations

from sqlalchemy import Select, column, select, table
from sqlalchemy.engine import Engine

from sitemapspine.core.logging import get_logger
from sitemapspine.core.session import serializable_transaction
from sitemapspine.execution.ledger import CheckedEntityLedger
from sitemapspine.execution.models import Candidate
from sitemapspine.replication.models import RowChange
from sitemapspine.schema.entities import EntityType
from sitemapspine.schema.walker import DependencyPath, SchemaGraphWalker

logger = get_logger(__name__)


class EntityResolver:
    """Resolve and claim candidates for one (change, path, entity) triple.

    Args:
        engine: Engine over the source tables and the ledger.
        ledger: Checked-entities ledger sharing *engine*.
        qualify_schema: Emit ``schema.table`` for source tables. Defaults to
            True except on SQLite, where source tables live unqualified.
    """

    def __init__(
        self,
        engine: Engine,
        ledger: CheckedEntityLedger,
        qualify_schema: bool | None = None,
    ):
        self.engine = engine
        self.ledger = ledger
        if qualify_schema is None:
            qualify_schema = engine.dialect.name != "sqlite"
        self.qualify_schema = qualify_schema

    def build_query(self, change: RowChange, path: DependencyPath, entity: EntityType) -> Select:
        """The ``SELECT DISTINCT id, gid`` for *change* along *path*."""
        # Columns each alias must expose: position 0 is the entity table,
        # position i + 1 the lhs table of step i.
        needed: list[set[str]] = [{entity.id_column, entity.gid_column}]
        for step in path.steps:
            needed[-1].add(step.rhs.column)
            needed.append({step.lhs.column})
        needed[-1].add(change.column)

        names = [(entity.schema, entity.table)] + [
            (step.lhs.schema, step.lhs.table) for step in path.steps
        ]
        aliases = [
            table(
                name,
                *(column(c) for c in sorted(cols)),
                schema=schema if self.qualify_schema else None,
            ).alias("entity_table" if i == 0 else f"j{i}")
            for i, ((schema, name), cols) in enumerate(zip(names, needed, strict=True))
        ]

        entity_table = aliases[0]
        joined = entity_table
        for i, step in enumerate(path.steps):
            near, far = aliases[i + 1], aliases[i]
            joined = joined.join(near, near.c[step.lhs.column] == far.c[step.rhs.column])

        source = aliases[-1]
        entity_id = entity_table.c[entity.id_column]
        return (
            select(entity_id.label("id"), entity_table.c[entity.gid_column].label("gid"))
            .distinct()
            .select_from(joined)
            .where(source.c[change.column] == change.value)
            .where(self.ledger.unclaimed_clause(entity.name, entity_id))
        )

    def resolve(
        self, change: RowChange, path: DependencyPath, entity: EntityType
    ) -> set[Candidate]:
        """Find unclaimed entities reachable from *change* and claim them.

        Raises:
            FatalReplicationError: If *path* does not join *entity* to the
                changed table.
        """
        SchemaGraphWalker.validate(entity, path, change.schema, change.table)
        stmt = self.build_query(change, path, entity)

        with serializable_transaction(self.engine) as conn:
            self.ledger.lock(conn)
            rows = conn.execute(stmt).all()
            candidates = {Candidate(entity.name, int(row.id), str(row.gid)) for row in rows}
            self.ledger.claim(conn, entity.name, (c.id for c in candidates))

        if not candidates:
            logger.info(
                "resolver.no_new_entities",
                sequence_id=change.sequence_id,
                table=change.table,
                entity_type=entity.name,
            )
        else:
            logger.debug(
                "resolver.claimed",
                entity_type=entity.name,
                count=len(candidates),
                path=str(path),
            )
        return candidates
