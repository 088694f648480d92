"""
Replication consumer: numbered packets in, ordered row changes out.

Architecture:
    ::

        ReplicationClient.download(N)   (retried with ConstantBackoff)
                │
                ▼
        open_packet(replication-N.tar.bz2)   temp dir, always removed
                │
                ▼
        extract_changes(packet)
          ├── drop tables rejected by should_follow_table()
          ├── one RowChange per followed primary-key column
          ├── value: key row first, then data row
          ├── last_modified: last_updated → created (inserts) → now
          └── collapse repeats of (schema, table, column, value)

Tags:
    replication, consumer, row-change, sitemap-spine
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sitemapspine.core.errors import TransientFetchError
from sitemapspine.core.logging import get_logger
from sitemapspine.execution.retry import ConstantBackoff, RetryContext
from sitemapspine.replication.client import ReplicationClient
from sitemapspine.replication.models import Operation, PacketOperation, ReplicationPacket, RowChange
from sitemapspine.replication.packet import open_packet, packet_filename
from sitemapspine.schema.catalog import SchemaCatalog, should_follow_table

logger = get_logger(__name__)

_INTEGER = re.compile(r"^-?[0-9]+$")
_SHORT_OFFSET = re.compile(r":[0-9]{2}(?:\.[0-9]+)?[+-][0-9]{2}$")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def coerce_key(value: str | None) -> Any:
    """Integer-looking key values become ints; everything else is kept as text."""
    if value is not None and _INTEGER.match(value):
        return int(value)
    return value


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a PostgreSQL timestamp literal (``2024-01-02 03:04:05.6+00``).

    Naive values are taken as UTC. Returns ``None`` for missing or
    unparseable input.
    """
    if not value:
        return None
    text = value.strip()
    if _SHORT_OFFSET.search(text):
        text += ":00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _last_modified(op: PacketOperation, fallback: datetime) -> datetime:
    stamp = parse_timestamp(op.data.get("last_updated"))
    if stamp is None and op.operation is Operation.INSERT:
        stamp = parse_timestamp(op.data.get("created"))
    return stamp or fallback


def extract_changes(
    packet: ReplicationPacket,
    catalog: SchemaCatalog,
    now: datetime | None = None,
) -> list[RowChange]:
    """Turn a decoded packet into ordered, de-duplicated row changes.

    Args:
        packet: Decoded packet.
        catalog: Source of primary key columns.
        now: Fallback modification time; defaults to the current time.
    """
    fallback = now or _utcnow()
    seen: set[tuple[str, str, str, Any]] = set()
    changes: list[RowChange] = []
    skipped_tables: set[str] = set()

    for op in packet.operations:
        if not should_follow_table(op.qualified_table):
            skipped_tables.add(op.qualified_table)
            continue

        last_modified = _last_modified(op, fallback)
        for column in catalog.primary_keys(op.schema, op.table):
            raw = op.keys.get(column)
            if raw is None:
                raw = op.data.get(column)
            if raw is None:
                logger.warning(
                    "replication.missing_key",
                    table=op.qualified_table,
                    column=column,
                    sequence_id=op.seq_id,
                )
                continue

            value = coerce_key(raw)
            dedupe_key = (op.schema, op.table, column, value)
            if dedupe_key in seen:
                continue
            seen.add(dedupe_key)

            changes.append(
                RowChange(
                    schema=op.schema,
                    table=op.table,
                    operation=op.operation,
                    column=column,
                    value=value,
                    last_modified=last_modified,
                    sequence_id=op.seq_id,
                    replication_sequence=packet.sequence,
                )
            )

    if skipped_tables:
        logger.debug(
            "replication.tables_skipped",
            sequence=packet.sequence,
            tables=sorted(skipped_tables),
        )
    logger.info(
        "replication.changes_extracted",
        sequence=packet.sequence,
        operations=len(packet),
        changes=len(changes),
    )
    return changes


class ReplicationConsumer:
    """
    Downloads packets and yields their row changes.

    Args:
        client: Replication endpoint client.
        catalog: Schema catalog for primary keys.
        download_dir: Where packet archives are stored.
        retry: Strategy for download failures (only ``TransientFetchError``
            is retried).
        sleep: Injected into the retry loop; tests pass a no-op.
        clock: Supplies the fallback modification time.
    """

    def __init__(
        self,
        client: ReplicationClient,
        catalog: SchemaCatalog,
        download_dir: Path,
        retry: ConstantBackoff | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.catalog = catalog
        self.download_dir = download_dir
        self.retry = retry or ConstantBackoff(
            max_retries=3, delay=10.0, retryable_errors=(TransientFetchError,)
        )
        self._sleep = sleep
        self._clock = clock

    def current_sequence(self) -> int:
        return self.client.current_sequence()

    def fetch_packet(self, sequence: int) -> Path:
        """Download packet *sequence*, retrying transient failures."""
        dest = self.download_dir / packet_filename(sequence)

        def _on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "replication.download_retrying",
                sequence=sequence,
                attempt=attempt,
                delay=delay,
                error=str(error),
            )

        ctx = RetryContext(self.retry, on_retry=_on_retry)
        if self._sleep is not None:
            ctx.sleep = self._sleep
        return ctx.run(self.client.download, sequence, dest)

    def changes(self, sequence: int) -> Iterator[RowChange]:
        """Download, extract and decode packet *sequence*, yielding its changes.

        The downloaded archive is deleted once the changes are consumed.

        Raises:
            TransientFetchError: If the download keeps failing.
            FatalReplicationError: If the packet is malformed.
        """
        archive = self.fetch_packet(sequence)
        try:
            with open_packet(archive, sequence) as packet:
                now = self._clock()
                yield from extract_changes(packet, self.catalog, now)
        finally:
            archive.unlink(missing_ok=True)
