import asyncio

import httpx
import pytest
from aiohttp import web
from aiohttp import test_utils

from auditflow.audit.aggregator import SourceAggregator
from auditflow.audit.errors import AggregationError
from auditflow.audit.models import DataQuality
from auditflow.audit.sources import (
    RateLimiter,
    SourceUnavailable,
    analyze_content,
    build_page_audit,
    content_source,
    pagespeed_source,
    parse_lighthouse,
)
from auditflow.config import Settings

GOOD_PAGE = """<html><head>
<title>Acme Widgets - Industrial widgets since 1990</title>
<meta name="description" content="Acme builds durable industrial widgets for factories, workshops and laboratories around the world.">
<meta name="viewport" content="width=device-width, initial-scale=1">
<link rel="canonical" href="https://acme.example/">
</head><body>
<h1>Acme Widgets</h1><h2>Products</h2>
<img src="a.png" alt="A widget"><img src="b.png">
</body></html>"""


def test_analyze_content_scores_on_page_signals():
    payload = analyze_content(GOOD_PAGE)

    assert payload.fields["title"].startswith("Acme Widgets")
    assert payload.fields["h1_count"] == 1
    assert payload.fields["images_missing_alt"] == 1
    assert payload.fields["has_viewport"] is True
    # 25 title + 20 description + 15 h1 + 5 h2 + 7 alt ratio + 10 viewport + 5 canonical
    assert payload.score == 87


def test_analyze_content_on_empty_page():
    payload = analyze_content("")
    assert payload.score == 5
    assert payload.fields["word_count"] == 0


def test_content_source_rejects_error_pages():
    transport = httpx.MockTransport(lambda request: httpx.Response(404, html="<h1>missing</h1>"))

    async def scenario():
        async with httpx.AsyncClient(transport=transport) as client:
            await content_source("https://acme.example/gone", client)

    with pytest.raises(SourceUnavailable):
        asyncio.run(scenario())


LIGHTHOUSE = {
    "lighthouseResult": {
        "categories": {
            "performance": {"score": 0.9},
            "seo": {"score": 0.8},
            "accessibility": {"score": 1.0},
            "best-practices": {"score": 0.7},
        },
        "audits": {
            "largest-contentful-paint": {"numericValue": 2500},
            "cumulative-layout-shift": {"numericValue": 0.05},
        },
    }
}


def test_parse_lighthouse():
    payload = parse_lighthouse(LIGHTHOUSE)
    assert payload.fields["performance"] == pytest.approx(90.0)
    assert payload.fields["lcp_seconds"] == 2.5
    assert payload.score == pytest.approx(85.0)


def test_parse_lighthouse_without_scores_raises():
    with pytest.raises(SourceUnavailable):
        parse_lighthouse({"lighthouseResult": {}})


def test_page_audit_aggregates_content():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, html=GOOD_PAGE))
    audit = build_page_audit(
        aggregator=SourceAggregator(deadline_ms=2000),
        settings=Settings(PSI_API_KEY=""),
        transport=transport,
    )

    result = asyncio.run(audit("https://acme.example"))
    assert result.data_quality is DataQuality.real_time
    assert result.score == 87
    assert result.data_sources == {"content": True}
    assert result.metrics["status_code"] == 200


def test_page_audit_fails_when_content_unavailable():
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    audit = build_page_audit(settings=Settings(PSI_API_KEY=""), transport=transport)

    with pytest.raises(AggregationError) as info:
        asyncio.run(audit("https://acme.example"))
    assert info.value.errors == ["content: HTTP 500"]


def test_abandoned_content_fetch_runs_to_completion():
    async def slow(request):
        await asyncio.sleep(0.1)
        return httpx.Response(200, html=GOOD_PAGE)

    aggregator = SourceAggregator(deadline_ms=20)
    audit = build_page_audit(
        aggregator=aggregator,
        settings=Settings(PSI_API_KEY=""),
        transport=httpx.MockTransport(slow),
    )

    async def scenario():
        with pytest.raises(AggregationError):
            await audit("https://acme.example")
        abandoned = list(aggregator._abandoned)
        await asyncio.gather(*abandoned, return_exceptions=True)
        return abandoned

    abandoned = asyncio.run(scenario())
    assert len(abandoned) == 1
    assert abandoned[0].exception() is None
    assert abandoned[0].result().fields["title"].startswith("Acme Widgets")


def _fake_time():
    now = [0.0]

    async def sleep(seconds):
        now[0] += seconds

    return (lambda: now[0]), sleep


def test_rate_limiter_window_and_min_interval():
    clock, sleep = _fake_time()
    limiter = RateLimiter(max_calls=2, window_seconds=10.0, min_interval=1.0, clock=clock, sleep=sleep)

    async def scenario():
        return [await limiter.acquire() for _ in range(4)]

    # second call waits out the interval, third waits for the window to roll
    assert asyncio.run(scenario()) == [0.0, 1.0, 9.0, 1.0]


def test_rate_limiter_defaults_for_pagespeed():
    keyless = RateLimiter.for_pagespeed(Settings(PSI_API_KEY=""))
    keyed = RateLimiter.for_pagespeed(Settings(PSI_API_KEY="k", PSI_MAX_CALLS_PER_MINUTE=30))

    assert (keyless.max_calls, keyless.window_seconds, keyless.min_interval) == (100, 60.0, 0.1)
    assert (keyed.max_calls, keyed.min_interval) == (30, 0.0)
    with pytest.raises(ValueError):
        RateLimiter(max_calls=0)


def _serve_pagespeed(statuses):
    hits = []

    async def handler(request):
        status = statuses[min(len(hits), len(statuses) - 1)]
        hits.append(dict(request.query))
        if status == 200:
            return web.json_response(LIGHTHOUSE)
        if status == 429:
            return web.Response(status=429, headers={"Retry-After": "0.01"})
        return web.Response(status=status, text="bad request")

    app = web.Application()
    app.router.add_get("/runPagespeed", handler)
    return app, hits


def test_pagespeed_retries_after_rate_limit():
    app, hits = _serve_pagespeed([429, 200])
    limiter = RateLimiter(max_calls=100)

    async def scenario():
        server = test_utils.TestServer(app)
        await server.start_server()
        try:
            return await pagespeed_source(
                "acme.example",
                "key-1",
                limiter=limiter,
                endpoint=str(server.make_url("/runPagespeed")),
            )
        finally:
            await server.close()

    payload = asyncio.run(scenario())
    assert payload.score == pytest.approx(85.0)
    assert len(hits) == 2
    assert hits[0]["url"] == "https://acme.example"
    assert hits[0]["key"] == "key-1"
    assert len(limiter._calls) == 2


def test_pagespeed_client_error_is_not_retried():
    app, hits = _serve_pagespeed([400])

    async def scenario():
        server = test_utils.TestServer(app)
        await server.start_server()
        try:
            await pagespeed_source("https://acme.example", endpoint=str(server.make_url("/runPagespeed")))
        finally:
            await server.close()

    with pytest.raises(SourceUnavailable, match="HTTP 400"):
        asyncio.run(scenario())
    assert len(hits) == 1
