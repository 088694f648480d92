"""Fetch the JSON-LD representation of one page from the rendering application."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import httpx

from sitemapspine.core.errors import TransientFetchError
from sitemapspine.core.logging import get_logger
from sitemapspine.execution.retry import ConstantBackoff, RetryContext

logger = get_logger(__name__)

JSONLD_ACCEPT = "application/ld+json"


class FetchStatus(str, Enum):
    OK = "ok"
    REDIRECT = "redirect"  # page number does not exist
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class FetchOutcome:
    status: FetchStatus
    url: str
    payload: bytes | None = None
    http_status: int | None = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.OK


class PageFetcher:
    """
    GET a page with ``Accept: application/ld+json``, never following redirects.

    Public URLs on *canonical_server* are requested from ``http://<web_server>``
    instead. Server errors (5xx) and transport errors are retried under
    *retry*; any other non-success status fails the page immediately.
    A page that still fails is logged and reported as ``FAILED``; it never
    raises.

    Example:
        fetcher = PageFetcher(http, "localhost:5000", "https://musicbrainz.org")
        outcome = fetcher.fetch("https://musicbrainz.org/artist/<gid>")
    """

    def __init__(
        self,
        http: httpx.Client,
        web_server: str,
        canonical_server: str,
        retry: ConstantBackoff | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self._http = http
        self.web_server = web_server
        self.canonical_server = canonical_server.rstrip("/")
        self.retry = retry or ConstantBackoff(
            max_retries=3, delay=10.0, retryable_errors=(TransientFetchError,)
        )
        self._sleep = sleep

    def request_url(self, url: str) -> str:
        return url.replace(self.canonical_server, f"http://{self.web_server}", 1)

    def _get(self, request_url: str) -> FetchOutcome:
        try:
            response = self._http.get(
                request_url,
                headers={"Accept": JSONLD_ACCEPT},
                follow_redirects=False,
            )
        except httpx.TransportError as e:
            raise TransientFetchError(
                f"Request to {request_url} failed", cause=e
            ).with_context(url=request_url) from e

        code = response.status_code
        if 300 <= code < 400:
            return FetchOutcome(FetchStatus.REDIRECT, request_url, http_status=code)
        if code >= 500:
            raise TransientFetchError(
                f"Got response code {code} fetching {request_url}"
            ).with_context(url=request_url, http_status=code)
        if response.is_success:
            return FetchOutcome(
                FetchStatus.OK, request_url, payload=response.content, http_status=code
            )
        return FetchOutcome(FetchStatus.FAILED, request_url, http_status=code)

    def fetch(self, url: str) -> FetchOutcome:
        """Fetch *url* (a public page URL) and classify the response."""
        request_url = self.request_url(url)

        def _on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "fetch.retrying", url=request_url, attempt=attempt, delay=delay, error=str(error)
            )

        ctx = RetryContext(self.retry, on_retry=_on_retry)
        if self._sleep is not None:
            ctx.sleep = self._sleep
        try:
            outcome = ctx.run(self._get, request_url)
        except TransientFetchError as e:
            logger.error(
                "fetch.failed",
                url=request_url,
                attempts=ctx.attempt,
                http_status=e.context.http_status,
                error=e.message,
            )
            return FetchOutcome(
                FetchStatus.FAILED,
                request_url,
                http_status=e.context.http_status,
                attempts=ctx.attempt,
            )

        if outcome.status is FetchStatus.REDIRECT:
            logger.info("fetch.redirect_skipped", url=request_url, http_status=outcome.http_status)
        elif outcome.status is FetchStatus.FAILED:
            logger.error(
                "fetch.failed",
                url=request_url,
                http_status=outcome.http_status,
                attempts=ctx.attempt,
            )
        return FetchOutcome(
            outcome.status,
            outcome.url,
            payload=outcome.payload,
            http_status=outcome.http_status,
            attempts=ctx.attempt,
        )
