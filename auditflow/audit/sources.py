# auditflow/audit/sources.py
"""
Concrete data sources for the aggregator.

Each source is a zero-argument coroutine factory bound to one URL. A source
either returns a payload (a score plus named fields) or raises; the
aggregator decides what a failure means for the combined result.
"""
import asyncio
import logging
import time
from collections import deque
from functools import partial
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

import aiohttp
import httpx
from aiohttp import ClientTimeout
from aiohttp.client_exceptions import ClientError
from bs4 import BeautifulSoup

from auditflow.audit.aggregator import SourceAggregator, SourceCall
from auditflow.audit.discovery import normalize_url
from auditflow.audit.models import CombinedAuditResult, SourcePayload
from auditflow.config import Settings, get_settings

logger = logging.getLogger(__name__)

PAGESPEED_API = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
PSI_CATEGORIES = ("performance", "seo", "accessibility", "best-practices")


class SourceUnavailable(RuntimeError):
    pass


class RateLimiter:
    """
    Client-side throttle for a quota-limited API: at most `max_calls` in any
    rolling `window_seconds`, and at least `min_interval` seconds between two
    calls. Waiters are served in arrival order.
    """

    def __init__(
        self,
        max_calls: int,
        window_seconds: float = 60.0,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_calls < 1:
            raise ValueError(f"max_calls must be >= 1 (got {max_calls})")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._calls: Deque[float] = deque()
        self._lock: Optional[asyncio.Lock] = None

    @classmethod
    def for_pagespeed(cls, settings: Settings) -> "RateLimiter":
        interval_ms = settings.PSI_MIN_INTERVAL_MS
        if not settings.PSI_API_KEY:
            interval_ms = max(interval_ms, 100)
        return cls(settings.PSI_MAX_CALLS_PER_MINUTE, 60.0, interval_ms / 1000.0)

    async def acquire(self) -> float:
        """Wait for a free slot and take it; returns the seconds spent waiting."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                while self._calls and now - self._calls[0] >= self.window_seconds:
                    self._calls.popleft()
                delay = 0.0
                if len(self._calls) >= self.max_calls:
                    delay = self._calls[0] + self.window_seconds - now
                if self._calls and self.min_interval:
                    delay = max(delay, self._calls[-1] + self.min_interval - now)
                if delay <= 0:
                    break
                await self._sleep(delay)
                waited += delay
            self._calls.append(now)
        if waited:
            logger.debug("Throttled %.2fs before API call", waited)
        return waited


# ============================================================
# PageSpeed Insights (aiohttp)
# ============================================================

def _to_percent(v: Optional[float]) -> Optional[float]:
    """PSI category scores come in [0,1]; report them on 0..100."""
    if v is None:
        return None
    v = float(v)
    if v <= 1.0:
        v *= 100.0
    return max(0.0, min(100.0, v))


def _retry_after(resp: aiohttp.ClientResponse) -> Optional[float]:
    ra = resp.headers.get("Retry-After")
    if not ra:
        return None
    try:
        return float(ra)
    except ValueError:
        return None


def parse_lighthouse(data: Dict[str, Any]) -> SourcePayload:
    lighthouse = data.get("lighthouseResult", {}) or {}
    categories = lighthouse.get("categories", {}) or {}
    audits = lighthouse.get("audits", {}) or {}

    fields: Dict[str, Any] = {
        "performance": _to_percent(categories.get("performance", {}).get("score")),
        "seo": _to_percent(categories.get("seo", {}).get("score")),
        "accessibility": _to_percent(categories.get("accessibility", {}).get("score")),
        "best_practices": _to_percent(categories.get("best-practices", {}).get("score")),
        "lcp_seconds": float(audits.get("largest-contentful-paint", {}).get("numericValue") or 0.0) / 1000.0,
        "cls": float(audits.get("cumulative-layout-shift", {}).get("numericValue") or 0.0),
    }
    scored = [v for k, v in fields.items() if k in ("performance", "seo", "accessibility", "best_practices") and v is not None]
    if not scored:
        raise SourceUnavailable("lighthouse response carried no category scores")
    return SourcePayload(score=sum(scored) / len(scored), fields=fields)


async def _psi_attempt(
    session: aiohttp.ClientSession,
    url: str,
    api_key: str,
    strategy: str,
    endpoint: str = PAGESPEED_API,
) -> Tuple[Optional[SourcePayload], Optional[float]]:
    """One PSI request. Returns (payload, retry_after); payload None means retry."""
    params = [("url", url), ("strategy", strategy)] + [("category", c) for c in PSI_CATEGORIES]
    if api_key:
        params.append(("key", api_key))

    async with session.get(endpoint, params=params) as resp:
        if resp.status == 429:
            ra = _retry_after(resp) or 2.0
            logger.warning("[PSI] 429 for %s, retry-after=%.2fs", url, ra)
            return None, ra
        if resp.status >= 500:
            logger.warning("[PSI] HTTP %s for %s", resp.status, url)
            return None, None
        if resp.status != 200:
            text = await resp.text()
            raise SourceUnavailable(f"pagespeed HTTP {resp.status}: {text[:200]}")
        return parse_lighthouse(await resp.json()), None


async def pagespeed_source(
    url: str,
    api_key: str = "",
    strategy: str = "mobile",
    *,
    per_attempt_timeout: float = 8.0,
    max_attempts: int = 3,
    limiter: Optional[RateLimiter] = None,
    endpoint: str = PAGESPEED_API,
) -> SourcePayload:
    """
    Lighthouse scores from PageSpeed Insights.

    Retries 5xx responses and timeouts with exponential backoff, honours
    Retry-After on 429, and raises SourceUnavailable once attempts run out.
    With a `limiter`, every attempt first waits for a slot.
    The overall time budget is the aggregator's deadline.
    """
    target = normalize_url(url)
    timeout = ClientTimeout(total=per_attempt_timeout, sock_connect=min(5.0, per_attempt_timeout))
    last_error = "no attempt made"

    async with aiohttp.ClientSession(timeout=timeout) as session:
        for attempt in range(1, max_attempts + 1):
            retry_after = None
            if limiter is not None:
                await limiter.acquire()
            try:
                payload, retry_after = await _psi_attempt(session, target, api_key, strategy, endpoint)
                if payload is not None:
                    return payload
                last_error = "rate limited" if retry_after else "server error"
            except asyncio.TimeoutError:
                last_error = "request timed out"
                logger.warning("[PSI] Attempt %d/%d timed out for %s", attempt, max_attempts, target)
            except ClientError as ce:
                last_error = str(ce) or ce.__class__.__name__
                logger.warning("[PSI] ClientError on attempt %d/%d for %s: %s", attempt, max_attempts, target, ce)

            if attempt < max_attempts:
                await asyncio.sleep(retry_after if retry_after is not None else min(6.0, 2 ** (attempt - 1)))

    raise SourceUnavailable(f"pagespeed failed after {max_attempts} attempts: {last_error}")


# ============================================================
# On-page content (httpx + BeautifulSoup)
# ============================================================

def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return " ".join(str(v) for v in value).strip()
    return str(value).strip()


def analyze_content(html: str) -> SourcePayload:
    soup = BeautifulSoup(html or "", "html.parser")

    title = _text(soup.title.string if soup.title else "")
    desc_tag = soup.find("meta", attrs={"name": "description"})
    description = _text(desc_tag.get("content") if desc_tag else "")
    viewport_tag = soup.find("meta", attrs={"name": "viewport"})
    viewport = _text(viewport_tag.get("content") if viewport_tag else "").lower()
    canonical = soup.find("link", rel="canonical")
    h1 = len(soup.find_all("h1"))
    h2 = len(soup.find_all("h2"))
    images = soup.find_all("img")
    missing_alt = sum(1 for img in images if not _text(img.get("alt")))
    words = len(soup.get_text(" ", strip=True).split())

    score = 0
    if title:
        score += 15 + (10 if 30 <= len(title) <= 65 else 0)
    if description:
        score += 10 + (10 if 70 <= len(description) <= 160 else 0)
    if h1 == 1:
        score += 15
    elif h1 > 1:
        score += 5
    if h2:
        score += 5
    if images:
        score += int(15 * (len(images) - missing_alt) / len(images))
    else:
        score += 5
    if "width=device-width" in viewport:
        score += 10
    if canonical is not None and canonical.get("href"):
        score += 5
    if words >= 300:
        score += 5

    return SourcePayload(
        score=max(0, min(100, score)),
        fields={
            "title": title,
            "meta_description": description,
            "h1_count": h1,
            "h2_count": h2,
            "image_count": len(images),
            "images_missing_alt": missing_alt,
            "word_count": words,
            "has_viewport": "width=device-width" in viewport,
            "has_canonical": canonical is not None,
        },
    )


async def content_source(
    url: str,
    client: Optional[httpx.AsyncClient] = None,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SourcePayload:
    """On-page signals. Without a `client` the source opens and closes its own."""
    if client is None:
        settings = settings or get_settings()
        async with httpx.AsyncClient(
            timeout=settings.DISCOVERY_TIMEOUT_SECONDS,
            follow_redirects=True,
            headers={"User-Agent": settings.USER_AGENT},
            transport=transport,
        ) as own_client:
            return await content_source(url, own_client)

    resp = await client.get(normalize_url(url))
    if resp.status_code >= 400:
        raise SourceUnavailable(f"HTTP {resp.status_code}")
    if "text/html" not in resp.headers.get("Content-Type", "").lower():
        raise SourceUnavailable(f"not an HTML page ({resp.headers.get('Content-Type', 'unknown')})")
    payload = analyze_content(resp.text)
    payload.fields["status_code"] = resp.status_code
    return payload


# ============================================================
# Page audit operation
# ============================================================

def build_page_audit(
    aggregator: Optional[SourceAggregator] = None,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    include_pagespeed: Optional[bool] = None,
    limiter: Optional[RateLimiter] = None,
):
    """
    The per-page operation BatchRunner calls: fetch every configured source
    for a URL and return the combined result. PageSpeed is only consulted
    when an API key is configured, unless `include_pagespeed` says otherwise.
    Pass the same `limiter` to every operation that shares one PSI quota.
    """
    settings = settings or get_settings()
    aggregator = aggregator or SourceAggregator.from_settings(settings)
    use_psi = bool(settings.PSI_API_KEY) if include_pagespeed is None else include_pagespeed
    if use_psi and limiter is None:
        limiter = RateLimiter.for_pagespeed(settings)

    async def audit_page(url: str) -> CombinedAuditResult:
        sources: List[Tuple[str, SourceCall]] = [
            ("content", partial(content_source, url, settings=settings, transport=transport)),
        ]
        if use_psi:
            sources.append(("pagespeed", partial(pagespeed_source, url, settings.PSI_API_KEY, limiter=limiter)))
        return await aggregator.aggregate(url, sources)

    return audit_page
