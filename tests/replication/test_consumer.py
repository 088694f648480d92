"""Tests for change extraction and the replication consumer."""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from conftest import REPLICATION, TOKEN

from sitemapspine.core.errors import FatalReplicationError, TransientFetchError
from sitemapspine.execution.retry import ConstantBackoff
from sitemapspine.replication.client import ReplicationClient
from sitemapspine.replication.consumer import (
    ReplicationConsumer,
    coerce_key,
    extract_changes,
    parse_timestamp,
)
from sitemapspine.replication.models import (
    Operation,
    PacketOperation,
    ReplicationPacket,
)

NOW = datetime(2024, 6, 1, tzinfo=UTC)


def op(seq_id, table, operation, keys=None, data=None, schema="musicbrainz"):
    return PacketOperation(
        seq_id=seq_id,
        schema=schema,
        table=table,
        operation=operation,
        keys=keys or {},
        data=data or {},
    )


class TestHelpers:
    """Key coercion and timestamp parsing."""

    def test_coerce_key(self):
        assert coerce_key("42") == 42
        assert coerce_key("-3") == -3
        assert coerce_key("f27ec8db-af05") == "f27ec8db-af05"
        assert coerce_key(None) is None

    def test_parse_postgres_timestamp(self):
        assert parse_timestamp("2024-01-02 03:04:05.6+00") == datetime(
            2024, 1, 2, 3, 4, 5, 600000, tzinfo=UTC
        )

    def test_parse_offset_timestamp(self):
        parsed = parse_timestamp("2024-01-02 03:04:05+02")
        assert parsed.utcoffset() == timedelta(hours=2)
        assert parsed.tzinfo == timezone(timedelta(hours=2))

    def test_naive_is_utc(self):
        assert parse_timestamp("2024-01-02 03:04:05") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_unparseable(self, value):
        assert parse_timestamp(value) is None


class TestExtractChanges:
    """Packet → RowChange list."""

    def test_one_change_per_primary_key_column(self, catalog):
        packet = ReplicationPacket(
            101,
            (op(1, "artist_ipi", Operation.INSERT, data={"artist": "5", "ipi": "00001"}),),
        )
        # ipi is an ignored primary key column in the test catalog
        (change,) = extract_changes(packet, catalog, NOW)
        assert (change.table, change.column, change.value) == ("artist_ipi", "artist", 5)
        assert change.replication_sequence == 101

    def test_delete_uses_keys_row(self, catalog):
        packet = ReplicationPacket(
            101, (op(1, "l_artist_recording", Operation.DELETE, keys={"id": "9"}),)
        )
        (change,) = extract_changes(packet, catalog, NOW)
        assert change.operation is Operation.DELETE
        assert change.value == 9

    def test_keys_row_wins_over_data_row(self, catalog):
        packet = ReplicationPacket(
            101, (op(1, "artist", Operation.UPDATE, keys={"id": "1"}, data={"id": "2"}),)
        )
        (change,) = extract_changes(packet, catalog, NOW)
        assert change.value == 1

    def test_ignored_tables_dropped(self, catalog):
        packet = ReplicationPacket(
            101,
            (
                op(1, "artist_tag", Operation.INSERT, data={"artist": "1", "tag": "2"}),
                op(2, "artist_meta", Operation.UPDATE, keys={"id": "1"}),
            ),
        )
        assert extract_changes(packet, catalog, NOW) == []

    def test_duplicates_collapse_to_first(self, catalog):
        packet = ReplicationPacket(
            101,
            (
                op(1, "artist", Operation.UPDATE, keys={"id": "1"}),
                op(2, "artist", Operation.UPDATE, keys={"id": "1"}),
                op(3, "artist", Operation.UPDATE, keys={"id": "2"}),
            ),
        )
        changes = extract_changes(packet, catalog, NOW)
        assert [(c.value, c.sequence_id) for c in changes] == [(1, 1), (2, 3)]

    def test_missing_key_value_skipped(self, catalog):
        packet = ReplicationPacket(101, (op(1, "artist", Operation.UPDATE, data={"name": "x"}),))
        assert extract_changes(packet, catalog, NOW) == []

    def test_unknown_table_has_no_keys(self, catalog):
        packet = ReplicationPacket(101, (op(1, "series", Operation.UPDATE, keys={"id": "1"}),))
        assert extract_changes(packet, catalog, NOW) == []


class TestLastModified:
    """Which timestamp a change carries."""

    def test_last_updated(self, catalog):
        packet = ReplicationPacket(
            101,
            (
                op(
                    1,
                    "artist",
                    Operation.UPDATE,
                    keys={"id": "1"},
                    data={"id": "1", "last_updated": "2024-02-03 04:05:06+00"},
                ),
            ),
        )
        (change,) = extract_changes(packet, catalog, NOW)
        assert change.last_modified == datetime(2024, 2, 3, 4, 5, 6, tzinfo=UTC)

    def test_created_for_inserts(self, catalog):
        packet = ReplicationPacket(
            101,
            (op(1, "artist_alias", Operation.INSERT, data={"id": "3", "created": "2023-01-01"}),),
        )
        (change,) = extract_changes(packet, catalog, NOW)
        assert change.last_modified == datetime(2023, 1, 1, tzinfo=UTC)

    def test_created_ignored_for_updates(self, catalog):
        packet = ReplicationPacket(
            101,
            (op(1, "artist_alias", Operation.UPDATE, data={"id": "3", "created": "2023-01-01"}),),
        )
        (change,) = extract_changes(packet, catalog, NOW)
        assert change.last_modified == NOW

    def test_fallback_when_absent(self, catalog):
        packet = ReplicationPacket(101, (op(1, "artist", Operation.DELETE, keys={"id": "1"}),))
        (change,) = extract_changes(packet, catalog, NOW)
        assert change.last_modified == NOW


class TestReplicationConsumer:
    """Download, decode and clean up."""

    @pytest.fixture
    def consumer(self, http, catalog, tmp_path):
        client = ReplicationClient(http, REPLICATION, token=TOKEN)
        return ReplicationConsumer(
            client,
            catalog,
            tmp_path / "downloads",
            retry=ConstantBackoff(
                max_retries=3, delay=5.0, retryable_errors=(TransientFetchError,)
            ),
            sleep=lambda seconds: None,
            clock=lambda: NOW,
        )

    def test_changes_and_archive_removed(self, consumer, replication, tmp_path):
        replication.publish(
            101,
            [
                (1, "musicbrainz.artist", "u", {"id": "1"}, {"id": "1", "name": "A"}),
                (2, "musicbrainz.artist_alias", "i", None, {"id": "7", "artist": "1"}),
            ],
        )
        changes = list(consumer.changes(101))
        assert [(c.table, c.value) for c in changes] == [("artist", 1), ("artist_alias", 7)]
        assert all(c.replication_sequence == 101 for c in changes)
        assert all(c.last_modified == NOW for c in changes)
        assert not (tmp_path / "downloads" / "replication-101.tar.bz2").exists()

    def test_current_sequence(self, consumer, replication):
        replication.set_current(205)
        assert consumer.current_sequence() == 205

    def test_download_retried(self, consumer, fake_server, replication):
        replication.publish(101)
        url = f"{REPLICATION}/replication-101.tar.bz2?token={TOKEN}"
        good = fake_server.routes[url][0]
        fake_server.route(url, 502, 502, good)
        assert list(consumer.changes(101)) == []
        assert fake_server.hits(url) == 3

    def test_download_gives_up_after_four_attempts(self, consumer, fake_server):
        url = f"{REPLICATION}/replication-101.tar.bz2?token={TOKEN}"
        fake_server.route(url, 500)
        with pytest.raises(TransientFetchError):
            list(consumer.changes(101))
        assert fake_server.hits(url) == 4

    def test_malformed_packet_is_fatal(self, consumer, fake_server, tmp_path):
        fake_server.route(f"{REPLICATION}/replication-101.tar.bz2?token={TOKEN}", b"garbage")
        with pytest.raises(FatalReplicationError):
            list(consumer.changes(101))
        assert not (tmp_path / "downloads" / "replication-101.tar.bz2").exists()
