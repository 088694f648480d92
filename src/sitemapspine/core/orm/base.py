"""Declarative base and type-map for the sitemap state tables.

Uses SQLAlchemy 2.0 ``DeclarativeBase`` with a ``type_annotation_map`` that
maps Python built-in types to portable SA column types.

The state tables are declared without a schema. Deployments that keep them in
a dedicated schema (``sitemaps`` on PostgreSQL) get it through the engine's
``schema_translate_map``; see :func:`sitemapspine.core.session.create_sitemap_engine`.
"""

from __future__ import annotations

import datetime

from sqlalchemy import Boolean, DateTime, Integer, Text
from sqlalchemy.orm import DeclarativeBase


class SitemapBase(DeclarativeBase):
    """Shared declarative base for every sitemap state table.

    * ``str``   → ``Text``
    * ``int``   → ``Integer``
    * ``bool``  → ``Boolean``
    * ``datetime.datetime`` → ``DateTime(timezone=True)``
    """

    type_annotation_map = {
        str: Text,
        int: Integer,
        bool: Boolean,
        datetime.datetime: DateTime(timezone=True),
    }
