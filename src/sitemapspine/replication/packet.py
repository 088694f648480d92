"""
Replication packet decoding.

A packet is a bzip2 tarball whose ``mbdump/`` directory holds two
tab-separated dbmirror files:

    dbmirror_pending       seq_id  "schema"."table"  op
    dbmirror_pendingdata   seq_id  is_key(t|f)       packed row

Packed rows look like ``"id"='42' "name"='O''Brien' "comment"= `` where a
doubled quote or a backslash escape stands for a literal character and a
missing value is SQL NULL. Each pair, including the last, ends with a space.

Extraction happens in a temporary directory that is removed on every exit
path; the decoded :class:`ReplicationPacket` lives only in memory.

Tags:
    replication, dbmirror, packet, parser, sitemap-spine
"""

from __future__ import annotations

import re
import tarfile
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sitemapspine.core.errors import FatalReplicationError
from sitemapspine.core.logging import get_logger
from sitemapspine.replication.models import Operation, PacketOperation, ReplicationPacket

logger = get_logger(__name__)

PENDING_MEMBER = "mbdump/dbmirror_pending"
PENDINGDATA_MEMBER = "mbdump/dbmirror_pendingdata"

_TABLE_NAME = re.compile(r'^"(?P<schema>[^"]+)"\."(?P<table>[^"]+)"$')
_PACKED_PAIR = re.compile(
    r"""
    "(?P<column>.*?)"
    =
    (?:'(?P<value>(?:\\\\|''|\\'|[^'])*)')?   # absent value means NULL
    \x20
    """,
    re.VERBOSE | re.DOTALL,
)
_ESCAPE = re.compile(r"\\\\|''|\\'")


def packet_filename(sequence: int) -> str:
    return f"replication-{sequence}.tar.bz2"


def _unescape(value: str) -> str:
    return _ESCAPE.sub(lambda m: "\\" if m.group(0) == "\\\\" else "'", value)


def unpack_data(packed: str, seq_id: int | None = None) -> dict[str, str | None]:
    """Decode one dbmirror packed row into a column → value mapping.

    Raises:
        FatalReplicationError: If *packed* does not follow the format.
    """
    result: dict[str, str | None] = {}
    pos = 0
    while pos < len(packed):
        match = _PACKED_PAIR.match(packed, pos)
        if match is None:
            raise FatalReplicationError(
                f"Failed to parse packed data for seq_id {seq_id}: {packed[pos:pos + 80]!r}"
            )
        value = match.group("value")
        result[match.group("column")] = None if value is None else _unescape(value)
        pos = match.end()
    return result


def _split_line(line: str, expected: int, member: str, lineno: int) -> list[str]:
    fields = line.rstrip("\r\n").split("\t", expected - 1)
    if len(fields) != expected:
        raise FatalReplicationError(f"{member}:{lineno}: expected {expected} fields")
    return fields


def _seq_id(raw: str, member: str, lineno: int) -> int:
    try:
        return int(raw)
    except ValueError:
        raise FatalReplicationError(f"{member}:{lineno}: bad seq_id {raw!r}") from None


def parse_packet(pending: str, pendingdata: str, sequence: int) -> ReplicationPacket:
    """Decode the contents of the two dbmirror files.

    Raises:
        FatalReplicationError: On any malformed line.
    """
    headers: dict[int, tuple[str, str, Operation]] = {}
    for lineno, line in enumerate(pending.split("\n"), start=1):
        if not line.strip():
            continue
        raw_seq, table_name, op = _split_line(line, 3, "dbmirror_pending", lineno)
        match = _TABLE_NAME.match(table_name)
        if match is None:
            raise FatalReplicationError(
                f"dbmirror_pending:{lineno}: bad table name {table_name!r}"
            )
        seq_id = _seq_id(raw_seq, "dbmirror_pending", lineno)
        headers[seq_id] = (match["schema"], match["table"], Operation.parse(op))

    keys: dict[int, dict[str, str | None]] = {}
    data: dict[int, dict[str, str | None]] = {}
    for lineno, line in enumerate(pendingdata.split("\n"), start=1):
        if not line:
            continue
        raw_seq, is_key, packed = _split_line(line, 3, "dbmirror_pendingdata", lineno)
        seq_id = _seq_id(raw_seq, "dbmirror_pendingdata", lineno)
        if seq_id not in headers:
            raise FatalReplicationError(
                f"dbmirror_pendingdata:{lineno}: seq_id {seq_id} has no pending entry"
            )
        if is_key not in ("t", "f"):
            raise FatalReplicationError(
                f"dbmirror_pendingdata:{lineno}: bad key flag {is_key!r}"
            )
        target = keys if is_key == "t" else data
        target[seq_id] = unpack_data(packed, seq_id)

    operations = tuple(
        PacketOperation(
            seq_id=seq_id,
            schema=schema,
            table=table,
            operation=op,
            keys=keys.get(seq_id, {}),
            data=data.get(seq_id, {}),
        )
        for seq_id, (schema, table, op) in sorted(headers.items())
    )
    return ReplicationPacket(sequence=sequence, operations=operations)


@contextmanager
def open_packet(archive: Path, sequence: int) -> Iterator[ReplicationPacket]:
    """Extract a downloaded ``replication-<N>.tar.bz2`` and yield its packet.

    The extraction directory is removed when the block exits, whether it
    completes, returns early or raises.

    Raises:
        FatalReplicationError: If the archive is unreadable, lacks the dbmirror
            files, or contains malformed lines.
    """
    with tempfile.TemporaryDirectory(prefix=f"sitemaps-{sequence}-") as tmp:
        try:
            with tarfile.open(archive, "r:bz2") as tar:
                for member in (PENDING_MEMBER, PENDINGDATA_MEMBER):
                    tar.extract(member, tmp, filter="data")
        except KeyError as e:
            raise FatalReplicationError(
                f"Packet {sequence} is missing {e.args[0] if e.args else 'a dbmirror file'}",
                cause=e,
            ).with_context(replication_sequence=sequence) from e
        except (tarfile.TarError, EOFError, OSError) as e:
            raise FatalReplicationError(
                f"Packet {sequence} is unreadable", cause=e
            ).with_context(replication_sequence=sequence) from e

        root = Path(tmp)
        logger.debug("replication.packet_extracted", sequence=sequence, path=tmp)
        try:
            pending = (root / PENDING_MEMBER).read_text(encoding="utf-8")
            pendingdata = (root / PENDINGDATA_MEMBER).read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise FatalReplicationError(f"Packet {sequence} is not UTF-8", cause=e) from e

        try:
            yield parse_packet(pending, pendingdata, sequence)
        finally:
            logger.debug("replication.extraction_removed", sequence=sequence, path=tmp)
