"""
sitemap-spine - incremental sitemap maintenance from replication packets.

Reads numbered replication packets from the primary database, walks the
foreign-key graph from each changed row to the indexable entities it can
affect, re-fetches their JSON-LD pages, and rewrites only the incremental
sitemap shards whose content changed.
"""

__version__ = "0.1.0"
