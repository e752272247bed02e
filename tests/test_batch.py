import asyncio
from collections import OrderedDict

from auditflow.audit.batch import BatchRunner, RunnerConfig, calculate_priority
from auditflow.audit.discovery import UrlDiscoverer
from auditflow.audit.models import AuditPhase, BatchEvent, CancellationToken, ProgressEvent
from auditflow.audit.record import InMemoryAuditStore


def _urls(n):
    return [f"https://example.com/page-{i}" for i in range(n)]


def _runner(audit, **overrides):
    config = RunnerConfig(max_concurrency=5, batch_size=10, enable_caching=False)
    for key, value in overrides.pop("config", {}).items():
        setattr(config, key, value)
    return BatchRunner(audit, config=config, memory_probe=lambda: 64.0, **overrides)


class Recorder:
    def __init__(self):
        self.events = []
        self.batches = []

    def progress(self, event):
        self.events.append(event)

    def batch(self, results, number):
        self.batches.append((number, results))

    @property
    def terminal(self):
        return [e for e in self.events if e.is_terminal]


def test_twenty_five_pages_in_three_batches():
    active = 0
    peak = 0

    async def audit(url):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.005)
        active -= 1
        return {"url": url, "score": 90}

    rec = Recorder()
    outcome = asyncio.run(_runner(audit).audit_urls(_urls(25), rec.progress, rec.batch))

    assert outcome.success and not outcome.cancelled
    assert [n for n, _ in rec.batches] == [1, 2, 3]
    assert [len(r) for _, r in rec.batches] == [10, 10, 5]
    assert peak <= 5
    assert len(rec.terminal) == 1
    final = rec.events[-1]
    assert final.status is AuditPhase.completed
    assert final.completed_pages == 25
    assert final.failed_pages == 0
    assert final.total_batches == 3
    assert final.estimated_time_remaining_ms == 0.0


def test_failing_page_is_recorded_and_does_not_stop_the_run():
    async def audit(url):
        if url.endswith("page-3"):
            raise RuntimeError("HTTP 500")
        return {"ok": True}

    rec = Recorder()
    runner = _runner(audit)
    outcome = asyncio.run(runner.audit_urls(_urls(12), rec.progress, rec.batch))

    assert outcome.success
    assert rec.events[-1].completed_pages == 11
    assert rec.events[-1].failed_pages == 1
    # on_batch_complete only carries successes
    assert sum(len(r) for _, r in rec.batches) == 11

    failed = [t for t in runner._runs[outcome.job_id].tasks if t.status == "failed"]
    assert [(t.url, t.error) for t in failed] == [("https://example.com/page-3", "HTTP 500")]


def test_every_result_reaches_on_batch_results():
    async def audit(url):
        if url.endswith("page-0"):
            raise ValueError("bad page")
        return 1

    seen = []
    asyncio.run(_runner(audit).audit_urls(
        _urls(4), on_batch_results=lambda results, n: seen.extend(results),
    ))
    assert len(seen) == 4
    assert [r.ok for r in seen].count(False) == 1


def test_cancellation_stops_before_the_next_batch():
    token = CancellationToken()
    rec = Recorder()

    async def audit(url):
        return {"url": url}

    def on_batch(results, number):
        rec.batch(results, number)
        token.cancel("stop")

    outcome = asyncio.run(_runner(audit).audit_urls(_urls(25), rec.progress, on_batch, token=token))

    assert outcome.cancelled
    assert [n for n, _ in rec.batches] == [1]
    assert len(rec.terminal) == 1
    assert rec.terminal[0].status is AuditPhase.cancelled
    assert rec.terminal[0].completed_pages == 10


def test_empty_url_set_completes_with_zeros():
    async def audit(url):
        raise AssertionError("should not be called")

    rec = Recorder()
    outcome = asyncio.run(_runner(audit).audit_urls([], rec.progress, rec.batch))

    assert outcome.success
    assert rec.batches == []
    assert len(rec.terminal) == 1
    final = rec.terminal[0]
    assert final.status is AuditPhase.completed
    assert (final.total_pages, final.completed_pages, final.failed_pages) == (0, 0, 0)


def test_orchestration_error_fails_the_run():
    class BrokenDiscoverer:
        async def discover(self, main_url, max_pages, on_strategy_done=None):
            raise RuntimeError("resolver unavailable")

    async def audit(url):
        return 1

    rec = Recorder()
    runner = _runner(audit, discoverer=BrokenDiscoverer())
    outcome = asyncio.run(runner.audit_website("https://example.com", rec.progress))

    assert not outcome.success
    assert outcome.error == "resolver unavailable"
    assert len(rec.terminal) == 1
    assert rec.terminal[0].status is AuditPhase.failed


def test_audit_website_discovers_and_puts_home_first():
    async def static(url):
        return [url + "/blog/2024/01/a-long-article-slug", url + "/about", url + "/"]

    audited = []

    async def audit(url):
        audited.append(url)
        return 1

    rec = Recorder()
    discoverer = UrlDiscoverer(strategies=[("static", static)])
    runner = _runner(audit, discoverer=discoverer, config={"max_concurrency": 1})
    outcome = asyncio.run(runner.audit_website("https://example.com", rec.progress))

    assert outcome.success
    assert audited == [
        "https://example.com",
        "https://example.com/about",
        "https://example.com/blog/2024/01/a-long-article-slug",
    ]
    phases = [e.status for e in rec.events]
    assert phases[0] is AuditPhase.discovering
    assert AuditPhase.auditing in phases


def test_calculate_priority():
    home = calculate_priority("https://example.com")
    about = calculate_priority("https://example.com/about-us")
    deep = calculate_priority("https://example.com/blog/2024/some-post")

    assert home == 148  # 100 + (50 - 19 / 10)
    assert home > about > deep
    assert calculate_priority("https://example.com/landing", "https://example.com/landing") >= 100
    assert calculate_priority("https://example.com/" + "x" * 600) == 0


def test_cache_serves_repeat_pages():
    calls = []

    async def audit(url):
        calls.append(url)
        return {"score": 70}

    runner = _runner(audit, config={"enable_caching": True})

    async def scenario():
        await runner.audit_urls(["https://example.com/a"])
        results = []
        await runner.audit_urls(
            ["https://example.com/a"], on_batch_complete=lambda r, n: results.extend(r),
        )
        return results

    results = asyncio.run(scenario())
    assert calls == ["https://example.com/a"]
    assert results[0].cached is True
    assert results[0].result == {"score": 70}


def test_store_answers_within_the_cache_window():
    store = InMemoryAuditStore()

    async def audit(url):
        raise AssertionError("store should have answered")

    async def scenario():
        await store.save({"kind": "page", "url": "https://example.com/a", "ok": True, "payload": {"score": 55}})
        runner = _runner(audit, store=store, config={"enable_caching": True})
        results = []
        await runner.audit_urls(["https://example.com/a"], on_batch_complete=lambda r, n: results.extend(r))
        return results

    results = asyncio.run(scenario())
    assert results[0].ok and results[0].cached
    assert results[0].result == {"score": 55}


def test_pages_are_persisted_to_the_store():
    store = InMemoryAuditStore()

    async def audit(url):
        if url.endswith("page-1"):
            raise RuntimeError("timeout")
        return {"score": 10}

    outcome = asyncio.run(_runner(audit, store=store).audit_urls(_urls(2), job_id="job-1"))
    assert outcome.job_id == "job-1"
    assert sorted((p["url"], p["ok"], p["job_id"]) for p in store.pages) == [
        ("https://example.com/page-0", True, "job-1"),
        ("https://example.com/page-1", False, "job-1"),
    ]


def test_cleanup_memory_evicts_oldest_half():
    async def audit(url):
        return 1

    cache = OrderedDict((f"https://example.com/{i}", i) for i in range(12))
    runner = _runner(audit, cache=cache, config={"cache_max_entries": 10})

    report = runner.cleanup_memory()
    assert report["evicted"] == 6
    assert list(cache) == [f"https://example.com/{i}" for i in range(6, 12)]


def test_memory_pressure_triggers_cleanup_before_a_batch():
    async def audit(url):
        return 1

    cache = OrderedDict((f"https://example.com/{i}", i) for i in range(12))
    runner = BatchRunner(
        audit,
        config=RunnerConfig(enable_caching=False, cache_max_entries=10, memory_limit_mb=100),
        cache=cache,
        memory_probe=lambda: 1024.0,
    )
    asyncio.run(runner.audit_urls(["https://other.example/x"]))
    assert len(cache) == 6


def test_stale_runs_are_dropped():
    async def audit(url):
        return 1

    runner = _runner(audit, config={"stale_after_seconds": 0})
    outcome = asyncio.run(runner.audit_urls(_urls(1)))
    assert outcome.job_id in runner._runs
    assert runner.cleanup_memory()["stale_runs"] == 1
    assert runner._runs == {}


def test_job_results_paginates_successes():
    async def audit(url):
        return url

    runner = _runner(audit)
    outcome = asyncio.run(runner.audit_urls(_urls(7)))

    first = runner.job_results(outcome.job_id, page=1, limit=3)
    last = runner.job_results(outcome.job_id, page=3, limit=3)
    assert first.total_results == 7 and first.total_pages == 3 and first.has_more
    assert len(last.items) == 1 and not last.has_more
    assert runner.job_results("unknown").total_results == 0


def test_stream_yields_progress_and_batches_then_ends():
    async def audit(url):
        return 1

    async def static(url):
        return [f"{url}/p{i}" for i in range(4)]

    runner = _runner(audit, discoverer=UrlDiscoverer(strategies=[("static", static)]), config={"batch_size": 2})

    async def collect():
        return [event async for event in runner.stream("https://example.com")]

    events = asyncio.run(collect())
    batches = [e for e in events if isinstance(e, BatchEvent)]
    progress = [e for e in events if isinstance(e, ProgressEvent)]

    assert [b.batch_number for b in batches] == [1, 2, 3]
    assert progress[-1] is events[-1]
    assert progress[-1].status is AuditPhase.completed
    assert progress[-1].completed_pages == 5
