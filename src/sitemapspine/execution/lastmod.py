"""Persistent "what did we last see" state per page.

One ``<entity>_lastmod`` row per (id, url) holds the content hash of the last
fetched JSON-LD, when it changed and in which replication sequence. The
comparison and the write for one page happen in one transaction.
"""

from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from sitemapspine.core.logging import get_logger
from sitemapspine.core.orm import lastmod_table
from sitemapspine.execution.models import Candidate, LastModRecord, PageVariant
from sitemapspine.replication.models import Operation, RowChange
from sitemapspine.schema.entities import entity_type

logger = get_logger(__name__)


def is_new_entity(change: RowChange, candidate: Candidate) -> bool:
    """True when *change* is the insert that created *candidate* itself.

    A row inserted into a link table that merely points at an existing
    entity does not qualify; only an insert on the entity table's own id
    column, with the candidate's id, does.
    """
    entity = entity_type(candidate.entity_type)
    return (
        change.operation is Operation.INSERT
        and change.ident == f"{entity.qualified_table}.{entity.id_column}"
        and change.value == candidate.id
    )


class LastModStore:
    """Read and write ``<entity>_lastmod`` rows."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, entity_name: str, id: int, url: str) -> LastModRecord | None:
        model = lastmod_table(entity_name)
        with self.engine.connect() as conn:
            row = conn.execute(
                select(model.__table__).where(model.id == id, model.url == url)
            ).first()
        if row is None:
            return None
        return LastModRecord(
            id=row.id,
            url=row.url,
            paginated=row.paginated,
            suffix_key=row.sitemap_suffix_key,
            content_hash=row.jsonld_hash,
            last_modified=row.last_modified,
            replication_sequence=row.replication_sequence,
        )

    def record(
        self,
        page: PageVariant,
        candidate: Candidate,
        change: RowChange,
        digest: str,
    ) -> bool:
        """Store *digest* for *page* and return whether it counts as a change.

        - stored hash differs: update it and report a change
        - stored hash is identical: nothing to do
        - nothing stored: insert, and report a change only for a brand-new
          entity (see :func:`is_new_entity`)
        """
        model = lastmod_table(page.entity_type)
        key = (model.id == candidate.id, model.url == page.url)

        with self.engine.begin() as conn:
            old_hash = conn.execute(
                select(model.jsonld_hash).where(*key).with_for_update()
            ).scalar_one_or_none()

            if old_hash is not None:
                if old_hash == digest:
                    logger.info("lastmod.unchanged", url=page.url)
                    return False
                conn.execute(
                    update(model)
                    .where(*key)
                    .values(
                        jsonld_hash=digest,
                        last_modified=change.last_modified,
                        replication_sequence=change.replication_sequence,
                    )
                )
                logger.info("lastmod.changed", url=page.url, entity_type=page.entity_type)
                return True

            conn.execute(
                model.__table__.insert().values(
                    id=candidate.id,
                    url=page.url,
                    paginated=page.paginated,
                    sitemap_suffix_key=page.suffix_key,
                    jsonld_hash=digest,
                    last_modified=change.last_modified,
                    replication_sequence=change.replication_sequence,
                )
            )

        is_new = is_new_entity(change, candidate)
        logger.info("lastmod.inserted", url=page.url, new_entity=is_new)
        return is_new
