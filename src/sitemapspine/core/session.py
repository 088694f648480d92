"""SQLAlchemy engine factory and transaction helpers.

This module provides:

* ``create_sitemap_engine``     -- Create a SA engine from a URL.
* ``serializable_transaction``  -- One connection + transaction at
  ``SERIALIZABLE`` isolation (``BEGIN IMMEDIATE`` on SQLite).
* ``create_state_tables``       -- Create control/ledger/lastmod tables.

Every worker process calls ``create_sitemap_engine`` itself; engines and
their pooled DBAPI connections are never shared across processes.

Tags:
    sitemap-spine, sqlalchemy, engine, transactions
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.schema import CreateSchema

from sitemapspine.core.orm import SitemapBase


def create_sitemap_engine(
    url: str,
    *,
    state_schema: str | None = None,
    echo: bool = False,
    pool_size: int | None = None,
    busy_timeout_ms: int = 30_000,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with the pipeline's defaults.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql+psycopg://…``, etc.)
    state_schema:
        Schema holding the state tables. Mapped through
        ``schema_translate_map`` so the models stay schema-less.
    echo:
        If ``True``, log all SQL.
    pool_size:
        Connection pool size (ignored for SQLite).
    busy_timeout_ms:
        How long SQLite waits on a locked database before failing.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = _sa_create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            # Let SQLAlchemy emit BEGIN itself (see _begin_immediate)
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn: Connection) -> None:
            # Take the write lock up front so read-then-insert steps serialize
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    else:
        if pool_size is not None:
            kwargs["pool_size"] = pool_size
        engine = _sa_create_engine(url, echo=echo, pool_pre_ping=True, **kwargs)

    if state_schema:
        engine = engine.execution_options(schema_translate_map={None: state_schema})
    return engine


@contextmanager
def serializable_transaction(engine: Engine) -> Iterator[Connection]:
    """Yield a connection inside one serializable transaction.

    Commits on normal exit and rolls back if the block raises.
    """
    with engine.connect() as conn:
        if conn.dialect.name != "sqlite":
            conn.execution_options(isolation_level="SERIALIZABLE")
        with conn.begin():
            yield conn


def create_state_tables(engine: Engine, state_schema: str | None = None) -> None:
    """Create the sitemap state tables (and their schema) if missing."""
    with engine.begin() as conn:
        if state_schema and conn.dialect.name != "sqlite":
            conn.execute(CreateSchema(state_schema, if_not_exists=True))
        SitemapBase.metadata.create_all(conn)
