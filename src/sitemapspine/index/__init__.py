"""Incremental sitemap shards, the sitemap index and search-engine pings."""

from sitemapspine.index.ping import ping_search_engines
from sitemapspine.index.writer import (
    IncrementalIndexWriter,
    ShardBuild,
    SitemapUrl,
    is_protected,
    shard_filename,
)

__all__ = [
    "IncrementalIndexWriter",
    "ShardBuild",
    "SitemapUrl",
    "is_protected",
    "ping_search_engines",
    "shard_filename",
]
