"""
Shared pytest fixtures for sitemap-spine tests.

This module provides:
- Settings pointing at a temporary SQLite database and output directory
- An engine with the state tables and a small set of source tables
- A test schema catalog mirroring those source tables
- A fake HTTP server (pages, replication endpoint, ping) on httpx.MockTransport
- A replication packet builder writing real ``tar.bz2`` archives

Usage:
    def test_something(engine, seed, fake_server):
        seed("artist", {"id": 1, "gid": "a1", "name": "Artist"})
        fake_server.route("http://web.test/artist/a1", {"@type": "MusicGroup"})
"""

import io
import tarfile
from collections.abc import Callable, Generator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
import pytest
from sqlalchemy import BigInteger, Column, Integer, MetaData, Table, Text, insert, select

from sitemapspine.core.orm import CheckedEntityTable
from sitemapspine.core.session import create_sitemap_engine, create_state_tables
from sitemapspine.core.settings import SitemapSettings, WorkerBackend
from sitemapspine.replication.models import Operation, RowChange
from sitemapspine.schema.catalog import SchemaCatalog
from sitemapspine.schema.walker import SchemaGraphWalker

CANONICAL = "https://musicbrainz.test"
WEB = "http://web.test"
REPLICATION = "https://replication.test"
TOKEN = "secret"


# =============================================================================
# Source Tables and Catalog
# =============================================================================

# SQLite keeps the source tables unqualified in the main database
SOURCE_METADATA = MetaData()

Table("artist", SOURCE_METADATA,
      Column("id", Integer, primary_key=True), Column("gid", Text), Column("name", Text))
Table("artist_alias", SOURCE_METADATA,
      Column("id", Integer, primary_key=True), Column("artist", Integer), Column("name", Text))
Table("recording", SOURCE_METADATA,
      Column("id", Integer, primary_key=True), Column("gid", Text), Column("name", Text))
Table("release_group", SOURCE_METADATA,
      Column("id", Integer, primary_key=True), Column("gid", Text), Column("name", Text))
Table("release", SOURCE_METADATA,
      Column("id", Integer, primary_key=True), Column("gid", Text),
      Column("release_group", Integer), Column("name", Text))
Table("medium", SOURCE_METADATA,
      Column("id", Integer, primary_key=True), Column("release", Integer),
      Column("position", Integer))
Table("track", SOURCE_METADATA,
      Column("id", BigInteger, primary_key=True), Column("medium", Integer),
      Column("recording", Integer), Column("name", Text))
Table("l_artist_recording", SOURCE_METADATA,
      Column("id", Integer, primary_key=True), Column("entity0", Integer),
      Column("entity1", Integer))

TEST_CATALOG: dict[str, Any] = {
    "tables": {
        "musicbrainz.artist": {"primary_key": ["id"]},
        "musicbrainz.artist_alias": {
            "primary_key": ["id"],
            "foreign_keys": {"artist": "musicbrainz.artist.id"},
        },
        "musicbrainz.artist_tag": {
            "primary_key": ["artist", "tag"],
            "foreign_keys": {"artist": "musicbrainz.artist.id"},
        },
        # Declared in the catalog but never created in the test database
        "musicbrainz.artist_ipi": {
            "primary_key": ["artist", "ipi"],
            "foreign_keys": {"artist": "musicbrainz.artist.id"},
        },
        "musicbrainz.recording": {"primary_key": ["id"]},
        "musicbrainz.release_group": {"primary_key": ["id"]},
        "musicbrainz.release": {
            "primary_key": ["id"],
            "foreign_keys": {"release_group": "musicbrainz.release_group.id"},
        },
        "musicbrainz.medium": {
            "primary_key": ["id"],
            "foreign_keys": {"release": "musicbrainz.release.id"},
        },
        "musicbrainz.track": {
            "primary_key": ["id"],
            "foreign_keys": {
                "medium": "musicbrainz.medium.id",
                "recording": "musicbrainz.recording.id",
            },
        },
        "musicbrainz.l_artist_recording": {
            "primary_key": ["id"],
            "foreign_keys": {
                "entity0": "musicbrainz.artist.id",
                "entity1": "musicbrainz.recording.id",
            },
        },
    },
    "ignored_primary_keys": ["musicbrainz.artist_ipi.ipi"],
}


@pytest.fixture
def catalog() -> SchemaCatalog:
    return SchemaCatalog.from_mapping(TEST_CATALOG)


@pytest.fixture
def walker(catalog: SchemaCatalog) -> SchemaGraphWalker:
    return SchemaGraphWalker(catalog)


# =============================================================================
# Settings and Database
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> SitemapSettings:
    """Settings for an inline run against a temporary SQLite file."""
    return SitemapSettings(
        database_url=f"sqlite:///{tmp_path / 'sitemaps.db'}",
        output_dir=tmp_path / "sitemaps",
        download_dir=tmp_path / "downloads",
        worker_backend=WorkerBackend.INLINE,
        max_workers=2,
        fetch_retries=3,
        fetch_retry_delay=0,
        web_server="web.test",
        canonical_server=CANONICAL,
        replication_access_uri=REPLICATION,
        replication_access_token=TOKEN,
        ping_urls=["https://search.test/ping?sitemap={sitemap_url}"],
        log_json=True,
    )


@pytest.fixture
def engine(settings: SitemapSettings) -> Generator[Any, None, None]:
    """Engine with the state tables and the test source tables created."""
    eng = create_sitemap_engine(settings.database_url)
    create_state_tables(eng)
    with eng.begin() as conn:
        SOURCE_METADATA.create_all(conn)
    yield eng
    eng.dispose()


@pytest.fixture
def seed(engine: Any) -> Callable[..., None]:
    """Insert rows into a source table: ``seed("artist", {"id": 1, ...})``."""

    def _seed(table_name: str, *rows: dict[str, Any]) -> None:
        with engine.begin() as conn:
            conn.execute(insert(SOURCE_METADATA.tables[table_name]), list(rows))

    return _seed


def is_claimed(engine: Any, entity_type: str, id: int) -> bool:
    """Whether the checked-entities ledger holds ``(entity_type, id)``."""
    ledger = CheckedEntityTable.__table__
    with engine.connect() as conn:
        found = conn.execute(
            select(ledger.c.id).where(ledger.c.entity_type == entity_type, ledger.c.id == id)
        ).first()
    return found is not None


@pytest.fixture
def make_change() -> Callable[..., RowChange]:
    """Factory for :class:`RowChange` values with sensible defaults."""

    def _make(
        table: str = "artist",
        value: Any = 1,
        *,
        column: str = "id",
        operation: Operation = Operation.UPDATE,
        schema: str = "musicbrainz",
        replication_sequence: int = 101,
        sequence_id: int = 1,
        last_modified: datetime | None = None,
    ) -> RowChange:
        return RowChange(
            schema=schema,
            table=table,
            operation=operation,
            column=column,
            value=value,
            last_modified=last_modified or datetime(2024, 3, 1, 12, 0, tzinfo=UTC),
            sequence_id=sequence_id,
            replication_sequence=replication_sequence,
        )

    return _make


# =============================================================================
# Fake HTTP Server
# =============================================================================


class FakeServer:
    """Canned responses keyed by URL, served through ``httpx.MockTransport``.

    A reply is a status code, raw ``bytes``, a JSON-able dict/list, an
    exception to raise, or a callable taking the request. Replies are used in
    order; the last one repeats. URLs match exactly, query string included;
    unrouted URLs answer 404.
    """

    def __init__(self) -> None:
        self.routes: dict[str, list[Any]] = {}
        self.requests: list[httpx.Request] = []

    def route(self, url: str, *replies: Any) -> None:
        self.routes[url] = list(replies)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def hits(self, url: str) -> int:
        return sum(1 for r in self.requests if str(r.url) == url)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        replies = self.routes.get(str(request.url))
        if not replies:
            return httpx.Response(404)
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, int):
            return httpx.Response(reply)
        if isinstance(reply, bytes):
            return httpx.Response(200, content=reply)
        if isinstance(reply, (dict, list)):
            return httpx.Response(200, json=reply)
        return reply(request)


@pytest.fixture
def fake_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def http(fake_server: FakeServer) -> Generator[httpx.Client, None, None]:
    client = fake_server.client()
    yield client
    client.close()


# =============================================================================
# Replication Packets
# =============================================================================


def pack_row(row: dict[str, str | None]) -> str:
    """Encode a row the way dbmirror packs it."""
    parts = []
    for column, value in row.items():
        if value is None:
            parts.append(f'"{column}"= ')
        else:
            escaped = value.replace("\\", "\\\\").replace("'", "''")
            parts.append(f"\"{column}\"='{escaped}' ")
    return "".join(parts)


def packet_bytes(operations: list[tuple]) -> bytes:
    """Build a replication archive.

    Each operation is ``(seq_id, "schema.table", op_code, keys, data)``;
    ``keys`` and ``data`` may be ``None``.
    """
    pending_lines = []
    data_lines = []
    for seq_id, qualified, op, keys, data in operations:
        schema, table = qualified.split(".")
        pending_lines.append(f'{seq_id}\t"{schema}"."{table}"\t{op}')
        if keys is not None:
            data_lines.append(f"{seq_id}\tt\t{pack_row(keys)}")
        if data is not None:
            data_lines.append(f"{seq_id}\tf\t{pack_row(data)}")

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:bz2") as tar:
        for name, lines in (
            ("mbdump/dbmirror_pending", pending_lines),
            ("mbdump/dbmirror_pendingdata", data_lines),
        ):
            content = ("\n".join(lines) + "\n").encode("utf-8") if lines else b""
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


@pytest.fixture
def make_packet(tmp_path: Path) -> Callable[..., Path]:
    """Write a packet archive to disk: ``make_packet(101, [(1, ...), ...])``."""

    def _make(sequence: int, operations: list[tuple]) -> Path:
        path = tmp_path / f"replication-{sequence}.tar.bz2"
        path.write_bytes(packet_bytes(operations))
        return path

    return _make


class FakeReplication:
    """Publishes packets on a :class:`FakeServer` under ``REPLICATION``."""

    def __init__(self, server: FakeServer) -> None:
        self.server = server

    def set_current(self, sequence: int) -> None:
        self.server.route(
            f"{REPLICATION}/replication-info?token={TOKEN}",
            {"last_packet": f"replication-{sequence}.tar.bz2"},
        )

    def publish(self, sequence: int, operations: list[tuple] | None = None) -> None:
        self.server.route(
            f"{REPLICATION}/replication-{sequence}.tar.bz2?token={TOKEN}",
            packet_bytes(operations or []),
        )


@pytest.fixture
def replication(fake_server: FakeServer) -> FakeReplication:
    return FakeReplication(fake_server)
