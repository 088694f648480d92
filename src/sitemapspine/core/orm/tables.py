"""State table definitions: control cursor, checked-entities ledger, lastmod.

One ``<entity>_lastmod`` table exists per registered entity type. They share
their columns through :class:`LastModMixin` and are generated from the entity
registry, so adding an entity type to the registry is enough to get its table.

Tags:
    sitemap-spine, orm, sqlalchemy, tables
"""

from __future__ import annotations

import datetime

from sqlalchemy import BigInteger, Index
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from sitemapspine.core.orm.base import SitemapBase
from sitemapspine.schema.entities import EntityType, iter_entity_types


class ControlTable(SitemapBase):
    """Singleton row holding the replication cursor."""

    __tablename__ = "control"

    id: Mapped[int] = mapped_column(primary_key=True, default=1)
    last_processed_replication_sequence: Mapped[int | None]
    overall_sitemaps_replication_sequence: Mapped[int | None]


class CheckedEntityTable(SitemapBase):
    """Per-sequence ledger of entities already resolved; truncated on commit."""

    __tablename__ = "tmp_checked_entities"

    entity_type: Mapped[str] = mapped_column(primary_key=True)
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)


class LastModMixin:
    """Columns shared by every ``<entity>_lastmod`` table."""

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    url: Mapped[str] = mapped_column(primary_key=True)
    paginated: Mapped[bool] = mapped_column(default=False)
    sitemap_suffix_key: Mapped[str]
    jsonld_hash: Mapped[str]
    last_modified: Mapped[datetime.datetime]
    replication_sequence: Mapped[int]

    @declared_attr.directive
    def __table_args__(cls) -> tuple[Index, ...]:
        return (Index(f"{cls.__tablename__}_replication_sequence_idx", "replication_sequence"),)


def _make_lastmod_table(entity: EntityType) -> type[LastModMixin]:
    class_name = "".join(part.title() for part in entity.name.split("_")) + "LastModTable"
    return type(
        class_name,
        (LastModMixin, SitemapBase),
        {"__tablename__": entity.lastmod_table},
    )


LASTMOD_TABLES: dict[str, type[LastModMixin]] = {
    entity.name: _make_lastmod_table(entity) for entity in iter_entity_types()
}


def lastmod_table(entity_name: str) -> type[LastModMixin]:
    """Return the lastmod model for an entity type name."""
    return LASTMOD_TABLES[entity_name]
