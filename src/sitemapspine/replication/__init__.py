"""Replication packets: download, decode, and derive row changes."""

from sitemapspine.replication.models import (
    Operation,
    PacketOperation,
    ReplicationPacket,
    RowChange,
)
from sitemapspine.replication.packet import (
    open_packet,
    packet_filename,
    parse_packet,
    unpack_data,
)
from sitemapspine.replication.client import ReplicationClient
from sitemapspine.replication.consumer import ReplicationConsumer, extract_changes

__all__ = [
    "Operation",
    "PacketOperation",
    "ReplicationClient",
    "ReplicationConsumer",
    "ReplicationPacket",
    "RowChange",
    "extract_changes",
    "open_packet",
    "packet_filename",
    "parse_packet",
    "unpack_data",
]
