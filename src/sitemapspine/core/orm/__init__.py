"""SQLAlchemy models for the sitemap state tables."""

from sitemapspine.core.orm.base import SitemapBase
from sitemapspine.core.orm.tables import (
    LASTMOD_TABLES,
    CheckedEntityTable,
    ControlTable,
    LastModMixin,
    lastmod_table,
)

__all__ = [
    "LASTMOD_TABLES",
    "CheckedEntityTable",
    "ControlTable",
    "LastModMixin",
    "SitemapBase",
    "lastmod_table",
]
