# auditflow/audit/discovery.py
"""
URL discovery for a website audit.

Strategies run in order (sitemap, navigation links, limited crawl) and feed a
de-duplicated, capped URL set that always starts with the seed URL, so a site
where every strategy comes back empty is still audited through its home page.

A strategy is any `async (url) -> list[str]`; the defaults share one
httpx.AsyncClient per discovery call.
"""
import logging
from collections import deque
from functools import partial
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Set, Tuple
from urllib.parse import urldefrag, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from auditflow.config import Settings, get_settings

logger = logging.getLogger(__name__)

DiscoveryStrategy = Callable[[str], Awaitable[List[str]]]

SKIP_SCHEMES = ("mailto:", "tel:", "javascript:", "#")
SITEMAP_PATHS = ("/sitemap.xml", "/sitemap_index.xml", "/sitemaps.xml")
NESTED_SITEMAP_LIMIT = 5


# ============================================================
# URL helpers
# ============================================================

def normalize_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        return ""
    if not url.startswith(("http://", "https://")):
        url = "https://" + url.lstrip("/")
    url, _ = urldefrag(url)
    parsed = urlparse(url)
    if parsed.path in ("", "/") and not parsed.query:
        return f"{parsed.scheme}://{parsed.netloc}"
    return url.rstrip("/")


def _host(netloc: str) -> str:
    host = netloc.lower()
    return host[4:] if host.startswith("www.") else host


def same_site(url: str, base_url: str) -> bool:
    return _host(urlparse(url).netloc) == _host(urlparse(base_url).netloc)


def extract_internal_links(html: str, base_url: str) -> List[str]:
    """Anchor targets on the same site as `base_url`, resolved and normalised, in page order."""
    soup = BeautifulSoup(html or "", "html.parser")
    found: List[str] = []
    seen: Set[str] = set()
    for a in soup.find_all("a", href=True):
        href = (a.get("href") or "").strip()
        if not href or href.lower().startswith(SKIP_SCHEMES):
            continue
        absolute = urljoin(base_url, href)
        parsed = urlparse(absolute)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        if not same_site(absolute, base_url):
            continue
        norm = normalize_url(absolute)
        if norm not in seen:
            seen.add(norm)
            found.append(norm)
    return found


def _is_html(resp: httpx.Response) -> bool:
    return "text/html" in resp.headers.get("Content-Type", "").lower()


# ============================================================
# Default strategies
# ============================================================

async def discover_via_sitemap(url: str, client: httpx.AsyncClient) -> List[str]:
    parsed = urlparse(url)
    root = f"{parsed.scheme}://{parsed.netloc}"
    for path in SITEMAP_PATHS:
        try:
            resp = await client.get(root + path)
        except httpx.HTTPError as e:
            logger.debug("Sitemap fetch failed for %s%s: %s", root, path, e)
            continue
        if resp.status_code != 200:
            continue
        locs = _sitemap_locs(resp.text)
        pages = [u for u in locs if not u.lower().endswith(".xml")]
        # sitemap index: follow a few nested sitemaps one level deep
        for nested in [u for u in locs if u.lower().endswith(".xml")][:NESTED_SITEMAP_LIMIT]:
            try:
                nested_resp = await client.get(nested)
            except httpx.HTTPError:
                continue
            if nested_resp.status_code == 200:
                pages.extend(u for u in _sitemap_locs(nested_resp.text) if not u.lower().endswith(".xml"))
        pages = [normalize_url(u) for u in pages if same_site(u, url)]
        if pages:
            return pages
    return []


def _sitemap_locs(xml_text: str) -> List[str]:
    soup = BeautifulSoup(xml_text or "", "html.parser")
    return [loc.get_text(strip=True) for loc in soup.find_all("loc") if loc.get_text(strip=True)]


async def discover_via_navigation(url: str, client: httpx.AsyncClient) -> List[str]:
    resp = await client.get(url)
    resp.raise_for_status()
    if not _is_html(resp):
        return []
    return extract_internal_links(resp.text, str(resp.url))


async def discover_via_crawl(
    url: str,
    client: httpx.AsyncClient,
    max_pages: int = 20,
    max_depth: int = 2,
) -> List[str]:
    """Breadth-first crawl of same-site pages, bounded by page count and depth."""
    start = normalize_url(url)
    visited: List[str] = []
    seen: Set[str] = {start}
    queue = deque([(start, 0)])

    while queue and len(visited) < max_pages:
        current, depth = queue.popleft()
        try:
            resp = await client.get(current)
        except httpx.HTTPError as e:
            logger.debug("Crawl fetch failed for %s: %s", current, e)
            continue
        if resp.status_code >= 400:
            continue
        visited.append(current)
        if depth >= max_depth or not _is_html(resp):
            continue
        for link in extract_internal_links(resp.text, current):
            if link not in seen:
                seen.add(link)
                queue.append((link, depth + 1))
    return visited


# ============================================================
# Discoverer
# ============================================================

class UrlDiscoverer:
    def __init__(
        self,
        strategies: Optional[Sequence[Tuple[str, DiscoveryStrategy]]] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._strategies = list(strategies) if strategies is not None else None
        self.settings = settings or get_settings()
        self._transport = transport

    def _default_strategies(self, client: httpx.AsyncClient) -> List[Tuple[str, DiscoveryStrategy]]:
        return [
            ("sitemap", partial(discover_via_sitemap, client=client)),
            ("navigation", partial(discover_via_navigation, client=client)),
            (
                "crawl",
                partial(
                    discover_via_crawl,
                    client=client,
                    max_pages=self.settings.CRAWL_MAX_PAGES,
                    max_depth=self.settings.CRAWL_MAX_DEPTH,
                ),
            ),
        ]

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.DISCOVERY_TIMEOUT_SECONDS,
            follow_redirects=True,
            headers={"User-Agent": self.settings.USER_AGENT},
            transport=self._transport,
        )

    async def discover(
        self,
        main_url: str,
        max_pages: int,
        on_strategy_done: Optional[Callable[[str, int], None]] = None,
    ) -> List[str]:
        if self._strategies is not None:
            return await self._run(main_url, max_pages, self._strategies, on_strategy_done)
        async with self._client() as client:
            return await self._run(main_url, max_pages, self._default_strategies(client), on_strategy_done)

    async def _run(
        self,
        main_url: str,
        max_pages: int,
        strategies: Iterable[Tuple[str, DiscoveryStrategy]],
        on_strategy_done: Optional[Callable[[str, int], None]],
    ) -> List[str]:
        seed = normalize_url(main_url)
        found = {seed: None}  # insertion-ordered set

        for name, strategy in strategies:
            if len(found) >= max_pages:
                break
            try:
                urls = await strategy(seed)
            except Exception as e:
                logger.warning("Discovery strategy %s failed for %s: %s", name, seed, e)
                continue
            for u in urls or []:
                norm = normalize_url(u)
                if norm:
                    found.setdefault(norm, None)
            logger.debug("Discovery strategy %s: %d urls for %s", name, len(found), seed)
            if on_strategy_done is not None:
                on_strategy_done(name, min(len(found), max_pages))

        return list(found)[:max_pages]
