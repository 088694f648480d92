"""
Incremental sitemap shards and the sitemap index.

Manifesto:
    A full rebuild (run elsewhere, e.g. nightly) owns the plain shard files.
    This writer only ever creates, rewrites and removes files whose name
    carries the ``incremental`` marker, so it can run between full rebuilds
    without disturbing them.

Architecture:
    ::

        <entity>_lastmod rows with replication_sequence > since
              │
              ▼ group by sitemap_suffix_key, split base / paginated,
              ▼ chunk by max_urls_per_shard
        sitemap-artist-1-incremental.xml.gz
        sitemap-artist-1-paginated-incremental.xml.gz
        sitemap-artist-1-all-incremental.xml.gz
        sitemap-artist-1-all-paginated-incremental.xml.gz
        ...
              │
              ▼
        sitemap-index.xml   (every sitemap-*.xml.gz in output_dir)

    All files are written to a temporary sibling and renamed into place, so
    readers never see a half-written shard or index.

Tags:
    sitemap, xml, gzip, index, sitemap-spine
"""

from __future__ import annotations

import gzip
import os
import tempfile
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from xml.etree import ElementTree

from sqlalchemy import select
from sqlalchemy.engine import Engine

from sitemapspine.core.errors import ErrorCategory, SitemapError
from sitemapspine.core.logging import get_logger
from sitemapspine.core.orm import lastmod_table
from sitemapspine.core.settings import SitemapSettings
from sitemapspine.schema.entities import EntityType, iter_entity_types

logger = get_logger(__name__)

SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"
INCREMENTAL_MARKER = "incremental"
SHARD_GLOB = "sitemap-*.xml.gz"


@dataclass(frozen=True, slots=True)
class SitemapUrl:
    loc: str
    lastmod: datetime | None = None


def w3c_datetime(value: datetime) -> str:
    """Format for ``<lastmod>``; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def shard_filename(
    entity: str, number: int, filename_suffix: str | None = None, paginated: bool = False
) -> str:
    """``sitemap-<entity>-<n>[-<suffix>][-paginated]-incremental.xml.gz``."""
    parts = ["sitemap", entity, str(number)]
    if filename_suffix:
        parts.append(filename_suffix)
    if paginated:
        parts.append("paginated")
    parts.append(INCREMENTAL_MARKER)
    return "-".join(parts) + ".xml.gz"


def is_protected(path: Path) -> bool:
    """Full-rebuild files: never deleted or overwritten here."""
    return INCREMENTAL_MARKER not in path.name


def _serialize(root: ElementTree.Element) -> bytes:
    ElementTree.register_namespace("", SITEMAP_NS)
    return ElementTree.tostring(root, encoding="utf-8", xml_declaration=True)


def urlset_xml(urls: Iterable[SitemapUrl]) -> bytes:
    root = ElementTree.Element(f"{{{SITEMAP_NS}}}urlset")
    for url in urls:
        node = ElementTree.SubElement(root, f"{{{SITEMAP_NS}}}url")
        ElementTree.SubElement(node, f"{{{SITEMAP_NS}}}loc").text = url.loc
        if url.lastmod is not None:
            ElementTree.SubElement(node, f"{{{SITEMAP_NS}}}lastmod").text = w3c_datetime(
                url.lastmod
            )
    return _serialize(root)


def sitemapindex_xml(entries: Iterable[SitemapUrl]) -> bytes:
    root = ElementTree.Element(f"{{{SITEMAP_NS}}}sitemapindex")
    for entry in entries:
        node = ElementTree.SubElement(root, f"{{{SITEMAP_NS}}}sitemap")
        ElementTree.SubElement(node, f"{{{SITEMAP_NS}}}loc").text = entry.loc
        if entry.lastmod is not None:
            ElementTree.SubElement(node, f"{{{SITEMAP_NS}}}lastmod").text = w3c_datetime(
                entry.lastmod
            )
    return _serialize(root)


def atomic_write(path: Path, data: bytes) -> None:
    """Write *data* to a temporary sibling of *path* and rename it into place."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


@dataclass
class ShardBuild:
    """Files touched by one incremental build."""

    written: list[Path] = field(default_factory=list)
    changed: list[Path] = field(default_factory=list)
    removed: list[Path] = field(default_factory=list)

    @property
    def dirty(self) -> bool:
        """True when the set or content of shard files changed."""
        return bool(self.changed or self.removed)

    def merge(self, other: ShardBuild) -> None:
        self.written.extend(other.written)
        self.changed.extend(other.changed)
        self.removed.extend(other.removed)


def _chunks(items: Sequence[SitemapUrl], size: int) -> Iterable[Sequence[SitemapUrl]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class IncrementalIndexWriter:
    """Writes incremental shards from lastmod rows and rewrites the index."""

    def __init__(self, engine: Engine, settings: SitemapSettings):
        self.engine = engine
        self.output_dir = settings.output_dir
        self.index_path = settings.index_path
        self.public_base_url = settings.public_base_url
        self.max_urls_per_shard = settings.max_urls_per_shard

    def pending_updates(self, entity: EntityType, since: int) -> list:
        """Lastmod rows of *entity* changed after sequence *since*."""
        model = lastmod_table(entity.name)
        with self.engine.connect() as conn:
            return list(
                conn.execute(
                    select(model.__table__)
                    .where(model.replication_sequence > since)
                    .order_by(model.id, model.url)
                )
            )

    def write_entity(self, entity: EntityType, since: int) -> ShardBuild:
        """Write the incremental shards of one entity type."""
        by_suffix: dict[str, dict[bool, list[SitemapUrl]]] = defaultdict(
            lambda: {False: [], True: []}
        )
        for row in self.pending_updates(entity, since):
            by_suffix[row.sitemap_suffix_key][bool(row.paginated)].append(
                SitemapUrl(loc=row.url, lastmod=row.last_modified)
            )

        build = ShardBuild()
        for suffix_key in sorted(by_suffix):
            try:
                suffix = entity.suffix(suffix_key)
            except KeyError:
                logger.warning(
                    "index.unknown_suffix", entity_type=entity.name, suffix=suffix_key
                )
                continue
            for paginated in (False, True):
                urls = by_suffix[suffix_key][paginated]
                for number, chunk in enumerate(_chunks(urls, self.max_urls_per_shard), start=1):
                    path = self.output_dir / shard_filename(
                        entity.name, number, suffix.filename_suffix, paginated
                    )
                    build.written.append(path)
                    if self.write_shard(path, chunk):
                        build.changed.append(path)
        return build

    def write_shard(self, path: Path, urls: Sequence[SitemapUrl]) -> bool:
        """Write one shard; returns False when the file already had this content."""
        if is_protected(path):
            raise SitemapError(
                f"Refusing to overwrite full sitemap file {path.name}",
                category=ErrorCategory.STORAGE,
            )
        data = gzip.compress(urlset_xml(urls), mtime=0)
        if path.is_file() and path.read_bytes() == data:
            logger.debug("index.shard_unchanged", file=path.name)
            return False
        atomic_write(path, data)
        logger.info("index.shard_written", file=path.name, urls=len(urls))
        return True

    def write_all(self, since: int) -> ShardBuild:
        """Rewrite every entity type's incremental shards and drop stale ones."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        build = ShardBuild()
        for entity in iter_entity_types():
            build.merge(self.write_entity(entity, since))

        keep = {p.name for p in build.written}
        for path in sorted(self.output_dir.glob(SHARD_GLOB)):
            if is_protected(path) or path.name in keep:
                continue
            path.unlink()
            build.removed.append(path)
            logger.info("index.shard_removed", file=path.name)
        return build

    def write_index(self) -> bool:
        """Atomically rewrite the index listing every shard in the output dir.

        Returns False when the file on disk already had this content.
        """
        entries = [
            SitemapUrl(
                loc=f"{self.public_base_url}{path.name}",
                lastmod=datetime.fromtimestamp(path.stat().st_mtime, tz=UTC),
            )
            for path in sorted(self.output_dir.glob(SHARD_GLOB))
            if path.name != self.index_path.name
        ]
        data = sitemapindex_xml(entries)
        if self.index_path.is_file() and self.index_path.read_bytes() == data:
            logger.info("index.unchanged", file=self.index_path.name, sitemaps=len(entries))
            return False
        atomic_write(self.index_path, data)
        logger.info("index.written", file=self.index_path.name, sitemaps=len(entries))
        return True

    @property
    def index_url(self) -> str:
        return f"{self.public_base_url}{self.index_path.name}"
