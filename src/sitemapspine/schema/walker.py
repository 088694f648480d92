"""
Schema graph walker: which foreign-key paths lead from a changed table to an
indexable entity table.

Manifesto:
    A replicated row only matters if some indexable page renders it. The
    walker answers "which entity tables can this row reach, and through which
    joins?" from static schema metadata alone, so the answer is computed once
    per table per run and reused for every row of that table.

Architecture:
    ::

        change on musicbrainz.artist_alias
              │
              ▼
        paths_from("musicbrainz", "artist_alias")
              │   (follow FKs both ways; stop at entity tables;
              │    never revisit a table; skip ignored tables/links)
              ▼
        DependencyPath(
            steps=(JoinStep(lhs=artist_alias.artist, rhs=artist.id),)
        )
              │
              ▼
        steps[0].rhs  → entity table      (artist)
        steps[-1].lhs → changed table     (artist_alias)

    Paths are ordered entity-first: the resolver selects from the entity
    table and joins outward until it reaches the changed row.

    When a worker reports that an entity's pages changed, :meth:`extend`
    continues the walk past that entity table, producing follow-up paths that
    reach further entities (e.g. recording → track → medium → release).

Guardrails:
    ❌ DON'T: Silently skip a path whose ends do not match the change
    ✅ DO: Call :meth:`validate`, which raises ``FatalReplicationError``

Tags:
    schema, graph, foreign-keys, dependency-path, sitemap-spine
"""

from __future__ import annotations

from dataclasses import dataclass

from sitemapspine.core.errors import FatalReplicationError
from sitemapspine.core.logging import get_logger
from sitemapspine.schema.catalog import ColumnRef, SchemaCatalog, should_follow_table
from sitemapspine.schema.entities import EntityType, indexable_entity

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class JoinStep:
    """One join: ``lhs`` is the side nearer the change, ``rhs`` nearer the entity."""

    lhs: ColumnRef
    rhs: ColumnRef

    def __str__(self) -> str:
        return f"{self.lhs} = {self.rhs}"


@dataclass(frozen=True, slots=True)
class DependencyPath:
    """Ordered join steps from an entity table (first) to a changed table (last)."""

    steps: tuple[JoinStep, ...] = ()

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def is_direct(self) -> bool:
        """True when the changed table is the entity table itself."""
        return not self.steps

    def tables(self) -> set[tuple[str, str]]:
        seen = set()
        for step in self.steps:
            seen.add((step.lhs.schema, step.lhs.table))
            seen.add((step.rhs.schema, step.rhs.table))
        return seen

    def head(self) -> tuple[str, str] | None:
        """``(schema, table)`` at the entity end, or ``None`` for direct paths."""
        if not self.steps:
            return None
        rhs = self.steps[0].rhs
        return rhs.schema, rhs.table

    def __str__(self) -> str:
        return " <- ".join(str(s) for s in self.steps) or "<direct>"


class SchemaGraphWalker:
    """Enumerates dependency paths over a :class:`SchemaCatalog`.

    Args:
        catalog: Static schema metadata.
        max_depth: Longest path (in joins) worth following.
    """

    def __init__(self, catalog: SchemaCatalog, max_depth: int = 6) -> None:
        self._catalog = catalog
        self._max_depth = max_depth
        self._cache: dict[tuple[str, str], list[tuple[EntityType, DependencyPath]]] = {}

    def paths_from(self, schema: str, table: str) -> list[tuple[EntityType, DependencyPath]]:
        """All ``(entity, path)`` pairs reachable from ``schema.table``.

        The start table itself is never reported; entity tables reached along
        the way terminate their branch.
        """
        key = (schema, table)
        if key not in self._cache:
            found: list[tuple[EntityType, DependencyPath]] = []
            self._walk(schema, table, (), {key}, found)
            self._cache[key] = found
            logger.debug(
                "walker.paths_computed", table=f"{schema}.{table}", paths=len(found)
            )
        return list(self._cache[key])

    def paths_for(self, schema: str, table: str) -> list[tuple[EntityType, DependencyPath]]:
        """Paths to evaluate for a change on ``schema.table``.

        An entity table yields only its direct (empty) path; the walk past it
        happens through :meth:`extend` once its pages are known to have changed.
        """
        if not should_follow_table(f"{schema}.{table}"):
            return []
        entity = indexable_entity(schema, table)
        if entity is not None:
            return [(entity, DependencyPath())]
        return self.paths_from(schema, table)

    def extend(
        self, entity: EntityType, path: DependencyPath
    ) -> list[tuple[EntityType, DependencyPath]]:
        """Follow-up paths continuing past *entity*, which heads *path*."""
        used = path.tables()
        used.discard((entity.schema, entity.table))
        follow_ups = []
        for target, tail in self.paths_from(entity.schema, entity.table):
            if tail.tables() & used:
                continue
            follow_ups.append((target, DependencyPath(tail.steps + path.steps)))
        return follow_ups

    @staticmethod
    def validate(entity: EntityType, path: DependencyPath, schema: str, table: str) -> None:
        """Check that *path* joins *entity* to the changed ``schema.table``.

        Raises:
            FatalReplicationError: If the ends of the path do not line up, or
                consecutive steps do not share a table.
        """
        if path.is_direct:
            if (schema, table) != (entity.schema, entity.table):
                raise FatalReplicationError(
                    f"Bad join: direct path from {schema}.{table} to {entity.qualified_table}"
                ).with_context(entity_type=entity.name, table=f"{schema}.{table}")
            return

        last = path.steps[-1]
        ok = (
            path.head() == (entity.schema, entity.table)
            and (last.lhs.schema, last.lhs.table) == (schema, table)
            and all(
                (a.lhs.schema, a.lhs.table) == (b.rhs.schema, b.rhs.table)
                for a, b in zip(path.steps, path.steps[1:])
            )
        )
        if not ok:
            raise FatalReplicationError(f"Bad join: {path}").with_context(
                entity_type=entity.name, table=f"{schema}.{table}"
            )

    # -- internal ------------------------------------------------------------

    def _neighbours(self, schema: str, table: str) -> list[JoinStep]:
        steps = []
        for fk in self._catalog.references_from(schema, table):
            if self._catalog.should_follow_link(fk):
                steps.append(JoinStep(lhs=fk.source, rhs=fk.target))
        for fk in self._catalog.references_to(schema, table):
            if self._catalog.should_follow_link(fk):
                steps.append(JoinStep(lhs=fk.target, rhs=fk.source))
        return steps

    def _walk(
        self,
        schema: str,
        table: str,
        steps: tuple[JoinStep, ...],
        visited: set[tuple[str, str]],
        found: list[tuple[EntityType, DependencyPath]],
    ) -> None:
        if len(steps) >= self._max_depth:
            return
        for step in self._neighbours(schema, table):
            nxt = (step.rhs.schema, step.rhs.table)
            if nxt in visited or not should_follow_table(step.rhs.qualified_table):
                continue
            path_steps = (step,) + steps
            entity = indexable_entity(*nxt)
            if entity is not None:
                found.append((entity, DependencyPath(path_steps)))
                continue
            self._walk(nxt[0], nxt[1], path_steps, visited | {nxt}, found)
