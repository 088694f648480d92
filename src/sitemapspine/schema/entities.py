"""
Static registry of indexable entity types.

Each supported entity type is one frozen :class:`EntityType` value carrying
its table, id columns, URL path and sitemap suffixes as data. The pipeline
looks entity types up here instead of branching on table-name strings.

Architecture:
    ::

        ENTITY_TYPES["artist"]
          ├── table          musicbrainz.artist
          ├── id / gid       id, gid
          ├── url_path       /artist/<gid>
          └── suffixes
                ├── all   ?all=1        paginated  jsonld
                ├── base  (none)        paginated  jsonld
                ├── recordings /recordings  paginated  (no jsonld, skipped)
                └── va    ?va=1         paginated  jsonld

    Only suffixes with ``jsonld_markup`` are checked incrementally; pages
    without embedded JSON-LD cannot be diffed by content hash.

Examples:
    >>> artist = entity_type("artist")
    >>> artist.page_url("https://musicbrainz.org", "f27ec8db", artist.suffix("all"))
    'https://musicbrainz.org/artist/f27ec8db?all=1'
    >>> indexable_entity("musicbrainz", "artist_alias") is None
    True

Tags:
    registry, entity-types, sitemap-spine
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

# Schema holding every indexable entity table
ENTITY_SCHEMA = "musicbrainz"


@dataclass(frozen=True, slots=True)
class SuffixInfo:
    """One family of sitemap URLs for an entity type.

    Attributes:
        key: Shard key stored on lastmod rows (``"base"``, ``"all"``, ...).
        url_suffix: Appended to the entity's base URL (``""``, ``"?all=1"``).
        filename_suffix: Marker in shard file names; ``None`` for the base shard.
        paginated: Whether the page has ``page=N`` continuations.
        jsonld_markup: Whether the page embeds JSON-LD.
    """

    key: str
    url_suffix: str = ""
    filename_suffix: str | None = None
    paginated: bool = False
    jsonld_markup: bool = True


BASE = SuffixInfo(key="base")


@dataclass(frozen=True, slots=True)
class EntityType:
    """An indexable entity type and everything needed to build its URLs."""

    name: str
    url_path: str
    suffixes: tuple[SuffixInfo, ...] = (BASE,)
    id_column: str = "id"
    gid_column: str = "gid"

    @property
    def schema(self) -> str:
        return ENTITY_SCHEMA

    @property
    def table(self) -> str:
        return self.name

    @property
    def qualified_table(self) -> str:
        return f"{ENTITY_SCHEMA}.{self.name}"

    @property
    def lastmod_table(self) -> str:
        return f"{self.name}_lastmod"

    def suffix(self, key: str) -> SuffixInfo:
        for info in self.suffixes:
            if info.key == key:
                return info
        raise KeyError(f"{self.name} has no sitemap suffix {key!r}")

    def jsonld_suffixes(self) -> list[SuffixInfo]:
        """Suffixes whose pages can be diffed, in shard-key order."""
        return sorted((s for s in self.suffixes if s.jsonld_markup), key=lambda s: s.key)

    def page_url(self, server: str, gid: str, suffix: SuffixInfo = BASE) -> str:
        return f"{server}/{self.url_path}/{gid}{suffix.url_suffix}"


_ENTITY_LIST = (
    EntityType(
        name="artist",
        url_path="artist",
        suffixes=(
            SuffixInfo(key="base", paginated=True),
            SuffixInfo(key="all", url_suffix="?all=1", filename_suffix="all", paginated=True),
            SuffixInfo(key="va", url_suffix="?va=1", filename_suffix="va", paginated=True),
            SuffixInfo(
                key="recordings",
                url_suffix="/recordings",
                filename_suffix="recordings",
                paginated=True,
                jsonld_markup=False,
            ),
        ),
    ),
    EntityType(name="label", url_path="label", suffixes=(SuffixInfo(key="base", paginated=True),)),
    EntityType(
        name="place",
        url_path="place",
        suffixes=(
            BASE,
            SuffixInfo(
                key="events",
                url_suffix="/events",
                filename_suffix="events",
                jsonld_markup=False,
            ),
        ),
    ),
    EntityType(name="recording", url_path="recording"),
    EntityType(name="release", url_path="release"),
    EntityType(
        name="release_group",
        url_path="release-group",
        suffixes=(SuffixInfo(key="base", paginated=True),),
    ),
    EntityType(name="work", url_path="work"),
)

ENTITY_TYPES: dict[str, EntityType] = {e.name: e for e in _ENTITY_LIST}


def entity_type(name: str) -> EntityType:
    """Look up a registered entity type by name.

    Raises:
        KeyError: If *name* is not an indexable entity type.
    """
    try:
        return ENTITY_TYPES[name]
    except KeyError:
        raise KeyError(f"Unknown entity type: {name!r}") from None


def indexable_entity(schema: str, table: str) -> EntityType | None:
    """Return the entity type stored in ``schema.table``, if it is indexable."""
    if schema != ENTITY_SCHEMA:
        return None
    return ENTITY_TYPES.get(table)


def iter_entity_types() -> Iterator[EntityType]:
    yield from _ENTITY_LIST
