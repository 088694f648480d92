"""Notify search engines that the sitemap index changed."""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import quote

import httpx

from sitemapspine.core.logging import get_logger

logger = get_logger(__name__)


def ping_search_engines(
    client: httpx.Client,
    urls: Iterable[str],
    sitemap_url: str,
    timeout: float = 10.0,
) -> int:
    """GET each ping endpoint with *sitemap_url* filled in.

    ``urls`` are templates containing ``{sitemap_url}``. Failures, including
    a template that does not format to a valid URL, are logged and never raised.

    Returns:
        Number of endpoints that answered with a success status.
    """
    encoded = quote(sitemap_url, safe="")
    succeeded = 0
    for template in urls:
        url = template
        try:
            url = template.format(sitemap_url=encoded)
            response = client.get(url, timeout=timeout)
            response.raise_for_status()
        except (KeyError, IndexError, ValueError, httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("ping.failed", url=url, error=repr(e))
            continue
        succeeded += 1
        logger.info("ping.sent", url=url, http_status=response.status_code)
    return succeeded
