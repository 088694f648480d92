"""HTTP access to the replication packet endpoint."""

from __future__ import annotations

import re
from pathlib import Path

import httpx

from sitemapspine.core.errors import TransientFetchError
from sitemapspine.core.logging import get_logger
from sitemapspine.replication.packet import packet_filename

logger = get_logger(__name__)

_LAST_PACKET = re.compile(r"^replication-(?P<sequence>[0-9]+)\.tar\.bz2$")


class ReplicationClient:
    """
    Read the latest published sequence and download packets.

    The client does not own *http*; the caller closes it.

    Example:
        with httpx.Client(timeout=60) as http:
            client = ReplicationClient(http, settings.replication_access_uri, token)
            latest = client.current_sequence()
            client.download(latest, Path("/tmp/replication-123.tar.bz2"))
    """

    def __init__(self, http: httpx.Client, access_uri: str, token: str = ""):
        self._http = http
        self.access_uri = access_uri.rstrip("/")
        self._token = token

    def current_sequence(self) -> int:
        """Return the sequence number of the newest published packet.

        Raises:
            TransientFetchError: On transport errors, non-200 responses, or a
                ``last_packet`` value that is not a packet file name.
        """
        url = f"{self.access_uri}/replication-info"
        try:
            response = self._http.get(url, params={"token": self._token})
        except httpx.HTTPError as e:
            raise TransientFetchError(f"Request to {url} failed", cause=e).with_context(
                url=url
            ) from e

        if response.status_code != 200:
            raise TransientFetchError(
                f"Request to {url} returned status code {response.status_code}"
            ).with_context(url=url, http_status=response.status_code)

        try:
            last_packet = response.json()["last_packet"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransientFetchError(f"Unexpected replication-info from {url}", cause=e) from e

        match = _LAST_PACKET.match(str(last_packet))
        if match is None:
            raise TransientFetchError(
                f"Unexpected last_packet {last_packet!r} from {url}"
            ).with_context(url=url)

        sequence = int(match["sequence"])
        logger.debug("replication.current_sequence", sequence=sequence)
        return sequence

    def download(self, sequence: int, dest: Path) -> Path:
        """Fetch ``replication-<sequence>.tar.bz2`` into *dest*, replacing any existing file.

        Raises:
            TransientFetchError: On transport errors or any status other than 200.
        """
        url = f"{self.access_uri}/{packet_filename(sequence)}"
        try:
            with self._http.stream("GET", url, params={"token": self._token}) as response:
                if response.status_code != 200:
                    raise TransientFetchError(
                        f"Request to {url} returned status code {response.status_code}"
                    ).with_context(
                        url=url, http_status=response.status_code, replication_sequence=sequence
                    )

                dest.parent.mkdir(parents=True, exist_ok=True)
                partial = dest.with_name(dest.name + ".part")
                with partial.open("wb") as fh:
                    for chunk in response.iter_bytes():
                        fh.write(chunk)
                partial.replace(dest)
        except httpx.HTTPError as e:
            raise TransientFetchError(f"Request to {url} failed", cause=e).with_context(
                url=url, replication_sequence=sequence
            ) from e

        logger.info("replication.packet_fetched", sequence=sequence, path=str(dest))
        return dest
