import asyncio

import httpx

from auditflow.audit.discovery import UrlDiscoverer, extract_internal_links, normalize_url
from auditflow.config import Settings

SITEMAP = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/a</loc></url>
  <url><loc>https://example.com/b/</loc></url>
  <url><loc>https://elsewhere.org/x</loc></url>
</urlset>"""

HOME = """<html><body>
  <nav>
    <a href="/c">C</a>
    <a href="https://www.example.com/d#top">D</a>
    <a href="mailto:hello@example.com">mail</a>
    <a href="javascript:void(0)">js</a>
    <a href="https://elsewhere.org/y">external</a>
  </nav>
</body></html>"""


def _transport(with_sitemap=True):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/sitemap.xml":
            if with_sitemap:
                return httpx.Response(200, text=SITEMAP)
            return httpx.Response(404)
        if path.endswith(".xml"):
            return httpx.Response(404)
        if path in ("", "/"):
            return httpx.Response(200, html=HOME)
        return httpx.Response(200, html=f"<html><body><a href='{path}/child'>child</a></body></html>")

    return httpx.MockTransport(handler)


def _discoverer(**kwargs):
    settings = Settings(CRAWL_MAX_PAGES=5, CRAWL_MAX_DEPTH=1)
    return UrlDiscoverer(settings=settings, **kwargs)


def test_normalize_url():
    assert normalize_url("example.com") == "https://example.com"
    assert normalize_url("https://example.com/") == "https://example.com"
    assert normalize_url("https://example.com/a/#frag") == "https://example.com/a"
    assert normalize_url("   ") == ""


def test_extract_internal_links_keeps_same_site_only():
    links = extract_internal_links(HOME, "https://example.com")
    assert links == ["https://example.com/c", "https://www.example.com/d"]


def test_discovery_combines_strategies_and_starts_with_seed():
    discoverer = _discoverer(transport=_transport())
    urls = asyncio.run(discoverer.discover("https://example.com", max_pages=20))

    assert urls[0] == "https://example.com"
    assert urls[1:3] == ["https://example.com/a", "https://example.com/b"]
    assert "https://example.com/c" in urls
    assert "https://www.example.com/d" in urls
    assert not any("elsewhere.org" in u for u in urls)
    assert len(urls) == len(set(urls))


def test_discovery_is_capped():
    discoverer = _discoverer(transport=_transport())
    urls = asyncio.run(discoverer.discover("https://example.com", max_pages=2))
    assert urls == ["https://example.com", "https://example.com/a"]


def test_navigation_used_when_sitemap_missing():
    reported = []
    discoverer = _discoverer(transport=_transport(with_sitemap=False))
    urls = asyncio.run(discoverer.discover(
        "https://example.com", max_pages=20, on_strategy_done=lambda name, n: reported.append(name),
    ))

    assert urls[:3] == ["https://example.com", "https://example.com/c", "https://www.example.com/d"]
    assert reported == ["sitemap", "navigation", "crawl"]


def test_failing_strategy_is_skipped():
    async def broken(url):
        raise RuntimeError("boom")

    async def static(url):
        return [url + "/ok"]

    discoverer = _discoverer(strategies=[("broken", broken), ("static", static)])
    urls = asyncio.run(discoverer.discover("https://example.com", max_pages=10))
    assert urls == ["https://example.com", "https://example.com/ok"]


def test_empty_strategies_fall_back_to_seed():
    async def nothing(url):
        return []

    discoverer = _discoverer(strategies=[("a", nothing), ("b", nothing)])
    assert asyncio.run(discoverer.discover("example.com/", max_pages=10)) == ["https://example.com"]
