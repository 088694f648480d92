"""Tests for ReplicationClient against a mocked endpoint."""

import httpx
import pytest
from conftest import REPLICATION, TOKEN

from sitemapspine.core.errors import TransientFetchError
from sitemapspine.replication.client import ReplicationClient

INFO_URL = f"{REPLICATION}/replication-info?token={TOKEN}"


@pytest.fixture
def client(http):
    return ReplicationClient(http, REPLICATION + "/", token=TOKEN)


class TestCurrentSequence:
    """``replication-info`` handling."""

    def test_parses_last_packet(self, client, fake_server):
        fake_server.route(INFO_URL, {"last_packet": "replication-1234.tar.bz2"})
        assert client.current_sequence() == 1234
        (request,) = fake_server.requests
        assert request.url.params["token"] == TOKEN

    def test_non_200(self, client, fake_server):
        fake_server.route(INFO_URL, 503)
        with pytest.raises(TransientFetchError) as exc_info:
            client.current_sequence()
        assert exc_info.value.context.http_status == 503

    @pytest.mark.parametrize(
        "body",
        [{"last_packet": "replication-x.tar.bz2"}, {"other": 1}, [1, 2]],
        ids=["bad-name", "missing-key", "not-an-object"],
    )
    def test_unexpected_body(self, client, fake_server, body):
        fake_server.route(INFO_URL, body)
        with pytest.raises(TransientFetchError):
            client.current_sequence()

    def test_transport_error(self, client, fake_server):
        fake_server.route(INFO_URL, httpx.ConnectError("refused"))
        with pytest.raises(TransientFetchError) as exc_info:
            client.current_sequence()
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


class TestDownload:
    """Packet downloads."""

    def test_writes_file(self, client, fake_server, tmp_path):
        fake_server.route(f"{REPLICATION}/replication-7.tar.bz2?token={TOKEN}", b"archive-bytes")
        dest = tmp_path / "downloads" / "replication-7.tar.bz2"
        assert client.download(7, dest) == dest
        assert dest.read_bytes() == b"archive-bytes"
        assert not dest.with_name(dest.name + ".part").exists()
        assert "If-Modified-Since" not in fake_server.requests[0].headers

    def test_leftover_file_is_replaced(self, client, fake_server, tmp_path):
        # e.g. left behind by a run that was killed before cleaning up
        dest = tmp_path / "replication-7.tar.bz2"
        dest.write_bytes(b"truncated")
        fake_server.route(f"{REPLICATION}/replication-7.tar.bz2?token={TOKEN}", b"archive-bytes")

        client.download(7, dest)
        assert dest.read_bytes() == b"archive-bytes"
        assert "If-Modified-Since" not in fake_server.requests[0].headers

    def test_not_modified_is_an_error(self, client, fake_server, tmp_path):
        fake_server.route(f"{REPLICATION}/replication-7.tar.bz2?token={TOKEN}", 304)
        with pytest.raises(TransientFetchError) as exc_info:
            client.download(7, tmp_path / "replication-7.tar.bz2")
        assert exc_info.value.context.http_status == 304

    def test_missing_packet(self, client, tmp_path):
        with pytest.raises(TransientFetchError) as exc_info:
            client.download(8, tmp_path / "replication-8.tar.bz2")
        assert exc_info.value.context.http_status == 404
        assert exc_info.value.context.replication_sequence == 8
        assert not (tmp_path / "replication-8.tar.bz2").exists()
