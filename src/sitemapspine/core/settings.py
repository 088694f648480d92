"""
Centralized settings for sitemap-spine.

All fields can be set through ``SITEMAP_*`` environment variables (e.g.
``SITEMAP_DATABASE_URL=postgresql+psycopg://…``) or a ``.env`` file.

Settings are plain pydantic data, so they pickle cleanly into worker
processes; each worker builds its own engine and HTTP client from them.

Tags:
    settings, configuration, pydantic, environment, sitemap-spine
"""

from __future__ import annotations

import tempfile
from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkerBackend(str, Enum):
    """Where work items run."""

    PROCESS = "process"  # one OS process per worker, own DB connection
    INLINE = "inline"  # the coordinator's own process (tests, debugging)


class EarlyExitPolicy(str, Enum):
    """What to do when the first candidate of a suffix batch is unchanged."""

    FIRST_UNCHANGED = "first_unchanged"  # skip the rest of the batch
    NEVER = "never"  # always check every candidate


class SitemapSettings(BaseSettings):
    """Configuration for one incremental sitemap deployment.

    Fields
    ──────
    database_url              : SQLAlchemy URL of the primary database
    state_schema              : Schema holding control/ledger/lastmod tables
    replication_access_uri    : Base URL serving ``replication-<N>.tar.bz2``
    web_server                : host[:port] the pages are fetched from
    canonical_server          : Public origin used in sitemap URLs
    output_dir                : Directory holding sitemap shards and index
    early_exit_policy         : Batch short-circuit (see ``EarlyExitPolicy``)
    """

    model_config = SettingsConfigDict(
        env_prefix="SITEMAP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ─────────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///data/sitemaps.db")
    state_schema: str | None = Field(
        default=None,
        description="Schema for sitemap state tables (e.g. 'sitemaps'); None on SQLite",
    )
    schema_catalog_path: Path | None = Field(
        default=None,
        description="YAML schema catalog; the bundled catalog is used when unset",
    )

    # ── Replication source ───────────────────────────────────────
    replication_access_uri: str = "https://metabrainz.org/api/musicbrainz"
    replication_access_token: str = ""
    download_dir: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()))

    # ── Rendering application ────────────────────────────────────
    web_server: str = "localhost:5000"
    canonical_server: str = "https://musicbrainz.org"
    http_timeout: float = 60.0
    fetch_retries: int = Field(default=3, ge=0)
    fetch_retry_delay: float = Field(default=10.0, ge=0)

    # ── Workers ──────────────────────────────────────────────────
    worker_backend: WorkerBackend = WorkerBackend.PROCESS
    max_workers: int = Field(default=4, ge=1)
    early_exit_policy: EarlyExitPolicy = EarlyExitPolicy.FIRST_UNCHANGED
    stalled_backlog_tolerance: int = Field(default=2, ge=0)

    # ── Output ───────────────────────────────────────────────────
    output_dir: Path = Field(default_factory=lambda: Path("data") / "sitemaps")
    index_filename: str = "sitemap-index.xml"
    sitemap_base_url: str | None = Field(
        default=None,
        description="Public URL prefix of output_dir; defaults to <canonical_server>/",
    )
    max_urls_per_shard: int = Field(default=50_000, ge=1)

    # ── Search engine notification ───────────────────────────────
    ping_urls: list[str] = Field(
        default_factory=lambda: ["https://www.google.com/ping?sitemap={sitemap_url}"],
    )
    ping_timeout: float = 10.0

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    @field_validator("canonical_server")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def index_path(self) -> Path:
        return self.output_dir / self.index_filename

    @property
    def public_base_url(self) -> str:
        base = self.sitemap_base_url or f"{self.canonical_server}/"
        return base if base.endswith("/") else f"{base}/"


@lru_cache(maxsize=1)
def get_settings() -> SitemapSettings:
    """Return the process-wide settings instance."""
    return SitemapSettings()


__all__ = ["EarlyExitPolicy", "SitemapSettings", "WorkerBackend", "get_settings"]
