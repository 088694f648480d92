"""Tests for search engine pings."""

import httpx

from sitemapspine.index.ping import ping_search_engines

SITEMAP = "https://musicbrainz.test/sitemap-index.xml"
ENCODED = "https%3A%2F%2Fmusicbrainz.test%2Fsitemap-index.xml"


class TestPing:
    def test_fills_in_encoded_url(self, http, fake_server):
        fake_server.route(f"https://search.test/ping?sitemap={ENCODED}", 200)
        template = "https://search.test/ping?sitemap={sitemap_url}"
        sent = ping_search_engines(http, [template], SITEMAP)
        assert sent == 1
        assert fake_server.hits(f"https://search.test/ping?sitemap={ENCODED}") == 1

    def test_failures_are_counted_not_raised(self, http, fake_server):
        fake_server.route(f"https://a.test/ping?sitemap={ENCODED}", 200)
        fake_server.route(f"https://b.test/ping?sitemap={ENCODED}", 500)
        fake_server.route(f"https://c.test/ping?sitemap={ENCODED}", httpx.ConnectError("down"))
        templates = [f"https://{host}.test/ping?sitemap={{sitemap_url}}" for host in "abc"]

        assert ping_search_engines(http, templates, SITEMAP) == 1
        assert len(fake_server.requests) == 3

    def test_no_endpoints(self, http, fake_server):
        assert ping_search_engines(http, [], SITEMAP) == 0
        assert fake_server.requests == []

    def test_bad_template_is_skipped(self, http, fake_server):
        fake_server.route(f"https://a.test/ping?sitemap={ENCODED}", 200)
        templates = [
            "https://search.test/ping?s={sitemap}",
            "https://search.test/ping?s={0}",
            "https://search.test/ping?s={sitemap_url",
            "https://a.test/ping?sitemap={sitemap_url}",
        ]
        assert ping_search_engines(http, templates, SITEMAP) == 1
        assert len(fake_server.requests) == 1

    def test_invalid_url_is_skipped(self, http, fake_server):
        template = "https://search.test/ping\n?s={sitemap_url}"
        assert ping_search_engines(http, [template], SITEMAP) == 0
