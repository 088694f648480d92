"""
Static schema metadata: primary keys, foreign keys and curated exclusions.

The catalog is loaded once per run and is the only schema knowledge the
pipeline has. It is deliberately not live introspection on every lookup: the
graph walker caches paths computed from it for the whole run.

Loaders:
    - :func:`default_catalog` -- bundled ``schema.yml`` covering the tables
      that feed JSON-LD markup
    - :meth:`SchemaCatalog.from_yaml` -- an operator-maintained YAML file
    - :meth:`SchemaCatalog.from_engine` -- SQLAlchemy inspector over a live
      database (foreign keys only; exclusions are passed in)

YAML layout::

    tables:
      musicbrainz.artist_alias:
        primary_key: [id]
        foreign_keys:
          artist: musicbrainz.artist.id
    ignored_links:          # FK columns that never change rendered output
      - musicbrainz.track.artist_credit
    ignored_primary_keys:   # key columns not worth following
      - musicbrainz.release_country.country

Tags:
    schema, foreign-keys, catalog, sitemap-spine
"""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from sitemapspine.core.errors import ConfigurationError
from sitemapspine.schema.entities import ENTITY_SCHEMA

# Tables whose rows never influence rendered JSON-LD
_IGNORED_TABLES = frozenset(
    {
        "cover_art_archive.cover_art_type",
        "musicbrainz.cdtoc",
        "musicbrainz.language",
        "musicbrainz.medium_cdtoc",
        "musicbrainz.medium_index",
    }
)
_IGNORED_TABLE_PATTERNS = (
    re.compile(r"[._](tag_|tag$)"),
    re.compile(r"_(meta|raw|gid_redirect)$"),
)


def should_follow_table(qualified_table: str) -> bool:
    """Return False for tables known never to affect rendered output."""
    if qualified_table in _IGNORED_TABLES:
        return False
    return not any(p.search(qualified_table) for p in _IGNORED_TABLE_PATTERNS)


@dataclass(frozen=True, slots=True)
class ColumnRef:
    """A fully qualified column."""

    schema: str
    table: str
    column: str

    @property
    def qualified_table(self) -> str:
        return f"{self.schema}.{self.table}"

    def __str__(self) -> str:
        return f"{self.schema}.{self.table}.{self.column}"

    @classmethod
    def parse(cls, dotted: str) -> ColumnRef:
        parts = dotted.split(".")
        if len(parts) != 3 or not all(parts):
            raise ConfigurationError(f"Expected schema.table.column, got {dotted!r}")
        return cls(*parts)


@dataclass(frozen=True, slots=True)
class ForeignKey:
    """``source`` (referencing column) → ``target`` (referenced column)."""

    source: ColumnRef
    target: ColumnRef


def _split_table(qualified: str) -> tuple[str, str]:
    schema, sep, table = qualified.partition(".")
    if not sep or not schema or not table or "." in table:
        raise ConfigurationError(f"Expected schema.table, got {qualified!r}")
    return schema, table


@dataclass
class SchemaCatalog:
    """Primary keys, foreign keys and exclusions for the source database."""

    primary_key_map: dict[tuple[str, str], tuple[str, ...]] = field(default_factory=dict)
    foreign_keys: tuple[ForeignKey, ...] = ()
    ignored_links: frozenset[str] = frozenset()
    ignored_primary_keys: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        self._outgoing: dict[tuple[str, str], list[ForeignKey]] = defaultdict(list)
        self._incoming: dict[tuple[str, str], list[ForeignKey]] = defaultdict(list)
        for fk in self.foreign_keys:
            self._outgoing[(fk.source.schema, fk.source.table)].append(fk)
            self._incoming[(fk.target.schema, fk.target.table)].append(fk)

    # -- loaders -------------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> SchemaCatalog:
        """Build a catalog from the YAML layout described in the module docs."""
        if not isinstance(data, Mapping) or not isinstance(data.get("tables"), Mapping):
            raise ConfigurationError("Schema catalog must contain a 'tables' mapping")

        primary_keys: dict[tuple[str, str], tuple[str, ...]] = {}
        foreign_keys: list[ForeignKey] = []
        for qualified, entry in data["tables"].items():
            schema, table = _split_table(qualified)
            entry = entry or {}
            primary_keys[(schema, table)] = tuple(entry.get("primary_key") or ())
            for column, target in (entry.get("foreign_keys") or {}).items():
                foreign_keys.append(
                    ForeignKey(ColumnRef(schema, table, column), ColumnRef.parse(target))
                )

        return cls(
            primary_key_map=primary_keys,
            foreign_keys=tuple(foreign_keys),
            ignored_links=frozenset(data.get("ignored_links") or ()),
            ignored_primary_keys=frozenset(data.get("ignored_primary_keys") or ()),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> SchemaCatalog:
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot load schema catalog {path}", cause=e) from e
        return cls.from_mapping(data)

    @classmethod
    def from_engine(
        cls,
        engine: Engine,
        *,
        schema: str = ENTITY_SCHEMA,
        physical_schema: str | None = None,
        ignored_links: Iterable[str] = (),
        ignored_primary_keys: Iterable[str] = (),
    ) -> SchemaCatalog:
        """Introspect primary and foreign keys through SQLAlchemy.

        Tables are recorded under the logical *schema* name even when they
        live in *physical_schema* (``None`` for SQLite's main database).
        """
        inspector = inspect(engine)
        primary_keys: dict[tuple[str, str], tuple[str, ...]] = {}
        foreign_keys: list[ForeignKey] = []
        for table in inspector.get_table_names(schema=physical_schema):
            pk = inspector.get_pk_constraint(table, schema=physical_schema)
            primary_keys[(schema, table)] = tuple(pk.get("constrained_columns") or ())
            for fk in inspector.get_foreign_keys(table, schema=physical_schema):
                target_schema = fk.get("referred_schema") or schema
                if target_schema == physical_schema:
                    target_schema = schema
                for src_col, dst_col in zip(
                    fk["constrained_columns"], fk["referred_columns"], strict=True
                ):
                    foreign_keys.append(
                        ForeignKey(
                            ColumnRef(schema, table, src_col),
                            ColumnRef(target_schema, fk["referred_table"], dst_col),
                        )
                    )
        return cls(
            primary_key_map=primary_keys,
            foreign_keys=tuple(foreign_keys),
            ignored_links=frozenset(ignored_links),
            ignored_primary_keys=frozenset(ignored_primary_keys),
        )

    # -- lookups -------------------------------------------------------------

    def primary_keys(self, schema: str, table: str) -> tuple[str, ...]:
        """Primary key columns of ``schema.table``, minus ignored ones."""
        return tuple(
            col
            for col in self.primary_key_map.get((schema, table), ())
            if f"{schema}.{table}.{col}" not in self.ignored_primary_keys
        )

    def has_table(self, schema: str, table: str) -> bool:
        return (schema, table) in self.primary_key_map

    def references_from(self, schema: str, table: str) -> list[ForeignKey]:
        """Foreign keys declared on ``schema.table``."""
        return list(self._outgoing.get((schema, table), ()))

    def references_to(self, schema: str, table: str) -> list[ForeignKey]:
        """Foreign keys on other tables that point at ``schema.table``."""
        return list(self._incoming.get((schema, table), ()))

    def should_follow_link(self, fk: ForeignKey) -> bool:
        return str(fk.source) not in self.ignored_links


def default_catalog() -> SchemaCatalog:
    """Load the catalog bundled with the package."""
    text = resources.files("sitemapspine.schema").joinpath("schema.yml").read_text("utf-8")
    return SchemaCatalog.from_mapping(yaml.safe_load(text))


def load_catalog(path: str | Path | None = None) -> SchemaCatalog:
    """Load *path* if given, else the bundled catalog."""
    return SchemaCatalog.from_yaml(path) if path else default_catalog()
