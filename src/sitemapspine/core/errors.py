"""
Structured error types for the incremental sitemap pipeline.

Every failure the pipeline can surface is one of a handful of typed errors.
Each carries a category, an explicit retry flag, structured context for the
log line, and the chained underlying exception.

Manifesto:
    The pipeline distinguishes failures by what the caller should do next:

    - **Retry it:** ``TransientFetchError`` (network trouble, 5xx)
    - **Stop the run:** ``FatalReplicationError`` (bad packet, bad path)
    - **Fix the deployment:** ``ConfigurationError`` (no control row,
      no base sitemap index)
    - **Page an operator:** ``StalledRunError`` (a previous run left the
      checked-entities ledger behind)

    Sequence-level failures never advance the control cursor, so the failed
    sequence is retried naturally on the next invocation.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        SitemapError                          │
        │        (category, retryable, retry_after, context, cause)    │
        ├──────────────────────────────────────────────────────────────┤
        │                                                              │
        │  TransientFetchError      FatalReplicationError              │
        │  (NETWORK, retryable)     (PARSE)                            │
        │                                                              │
        │  ConfigurationError       StalledRunError                    │
        │  (CONFIG)                 (ORCHESTRATION)                    │
        │                                                              │
        │  WorkerFailedError                                           │
        │  (PIPELINE)                                                  │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> error = TransientFetchError("replication-info returned 502")
    >>> error.retryable
    True
    >>> error.with_context(url="https://example.org/replication-info").context.url
    'https://example.org/replication-info'

Tags:
    error-handling, exception-hierarchy, retry-logic, sitemap-spine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for log routing and retry decisions."""

    NETWORK = "NETWORK"           # Connection, timeout, 5xx
    DATABASE = "DATABASE"         # Lock waits, serialization failures
    STORAGE = "STORAGE"           # Output directory, temp extraction
    PARSE = "PARSE"               # Malformed packet, bad dependency path
    CONFIG = "CONFIG"             # Missing control row, missing index
    PIPELINE = "PIPELINE"         # Worker failures
    ORCHESTRATION = "ORCHESTRATION"  # Run-level state problems
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-``None`` fields are emitted by :meth:`to_dict`, so a context can
    be as sparse as the failure requires.

    Attributes:
        replication_sequence: Packet sequence being processed.
        entity_type: Indexable entity type involved.
        table: Qualified ``schema.table`` of the changed row.
        url: URL being fetched.
        http_status: HTTP status code, if any.
        metadata: Additional key-value pairs.
    """

    replication_sequence: int | None = None
    entity_type: str | None = None
    table: str | None = None
    url: str | None = None
    http_status: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["replication_sequence", "entity_type", "table", "url", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class SitemapError(Exception):
    """
    Base exception for all pipeline errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers can
    override both per instance.

    Examples:
        >>> error = SitemapError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["retryable"]
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    # Process exit status reported by the CLI when this error ends a run
    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SitemapError:
        """
        Add context to this error (fluent API).

        Usage:
            raise FatalReplicationError("Bad join").with_context(
                entity_type="artist", table="musicbrainz.artist_alias"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class TransientFetchError(SitemapError):
    """
    Network or server-side failure that may succeed on retry.

    Raised for transport errors and non-success responses from the
    replication endpoint, and for 5xx responses from the rendering
    application once the page-level retry budget is spent.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class FatalReplicationError(SitemapError):
    """Malformed replication packet or an inconsistent dependency path."""

    default_category = ErrorCategory.PARSE


class ConfigurationError(SitemapError):
    """Deployment problem detected before any processing started."""

    default_category = ErrorCategory.CONFIG


class StalledRunError(SitemapError):
    """The checked-entities ledger was left behind and the backlog is growing."""

    default_category = ErrorCategory.ORCHESTRATION


class WorkerFailedError(SitemapError):
    """A worker reported an unrecoverable error for one work item."""

    default_category = ErrorCategory.PIPELINE


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SitemapError",
    "TransientFetchError",
    "FatalReplicationError",
    "ConfigurationError",
    "StalledRunError",
    "WorkerFailedError",
]
