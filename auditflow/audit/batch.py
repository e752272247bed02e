# auditflow/audit/batch.py
import asyncio
import logging
import math
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Union
from urllib.parse import urlparse

import psutil

from auditflow.audit.discovery import UrlDiscoverer, normalize_url
from auditflow.audit.executor import run_bounded
from auditflow.audit.models import (
    AuditPhase,
    BatchEvent,
    CancellationToken,
    JobOptions,
    PageResult,
    PageTask,
    ProgressEvent,
    ResultsPage,
    RunOutcome,
)
from auditflow.config import Settings, get_settings

logger = logging.getLogger(__name__)

AuditOperation = Callable[[str], Awaitable[Any]]
ProgressCallback = Callable[[ProgressEvent], Any]
BatchCallback = Callable[[List[PageResult], int], Any]

IMPORTANT_PATHS = ("/about", "/contact", "/services", "/products")


# ============================================================
# Configuration
# ============================================================

@dataclass
class RunnerConfig:
    max_pages: int = 100
    max_concurrency: int = 10
    batch_size: int = 20
    memory_limit_mb: float = 512.0
    enable_caching: bool = True
    cache_max_entries: int = 1000
    cache_window_seconds: int = 3600
    stale_after_seconds: int = 3600

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RunnerConfig":
        s = settings or get_settings()
        return cls(
            max_pages=s.MAX_PAGES,
            max_concurrency=s.MAX_CONCURRENCY,
            batch_size=s.BATCH_SIZE,
            memory_limit_mb=s.MEMORY_LIMIT_MB,
            cache_max_entries=s.CACHE_MAX_ENTRIES,
            cache_window_seconds=s.CACHE_WINDOW_SECONDS,
            stale_after_seconds=s.STALE_AFTER_SECONDS,
        )

    def for_job(self, options: JobOptions) -> "RunnerConfig":
        return replace(
            self,
            max_pages=options.max_pages,
            max_concurrency=options.max_concurrency,
            batch_size=options.batch_size or self.batch_size,
            enable_caching=options.enable_caching,
        )


# ============================================================
# Helpers
# ============================================================

def process_memory_mb() -> float:
    """Resident set size of this process in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


def calculate_priority(url: str, main_url: Optional[str] = None) -> int:
    parsed = urlparse(url)
    path = parsed.path.lower()
    priority = 0.0

    is_home = path in ("", "/")
    if main_url and normalize_url(url) == normalize_url(main_url):
        is_home = True
    if is_home:
        priority += 100
    if any(p in path for p in IMPORTANT_PATHS):
        priority += 50
    # shorter URLs sit closer to the top of the site
    priority += max(0.0, 50 - len(url) / 10)
    return int(priority)


def _new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


@dataclass
class _RunRecord:
    tasks: List[PageTask] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)
    finished: Optional[float] = None


class _ProgressEmitter:
    """Holds the running counters of one run and publishes snapshots of them."""

    def __init__(self, job_id: str, callback: Optional[ProgressCallback], memory_probe: Callable[[], float]):
        self.job_id = job_id
        self.callback = callback
        self.memory_probe = memory_probe
        self.total = 0
        self.completed = 0
        self.failed = 0
        self.current_batch = 0
        self.total_batches = 0
        self.started = time.monotonic()
        self.terminal_sent = False

    def _memory(self) -> float:
        try:
            return float(self.memory_probe())
        except Exception:
            logger.debug("memory probe failed", exc_info=True)
            return 0.0

    def emit(self, status: AuditPhase, error: Optional[str] = None) -> None:
        if self.terminal_sent:
            return
        processed = self.completed + self.failed
        average = (time.monotonic() - self.started) * 1000.0 / processed if processed else 0.0
        remaining = max(0, self.total - processed)
        event = ProgressEvent(
            job_id=self.job_id,
            total_pages=self.total,
            completed_pages=self.completed,
            failed_pages=self.failed,
            current_batch=self.current_batch,
            total_batches=self.total_batches,
            estimated_time_remaining_ms=0.0 if status.is_terminal else remaining * average,
            average_time_per_page_ms=average,
            memory_usage_mb=self._memory(),
            status=status,
            error=error,
        )
        if status.is_terminal:
            self.terminal_sent = True
        if self.callback is None:
            return
        try:
            self.callback(event)
        except Exception:
            logger.warning("progress callback failed for %s", self.job_id, exc_info=True)


# ============================================================
# Runner
# ============================================================

class BatchRunner:
    """
    Audits a website page by page: discovers URLs, orders them by priority,
    then works through fixed-size batches one after another with a bounded
    number of audits in flight inside each batch.

    A failing page is recorded and counted; it never stops the run. Only an
    error in the orchestration itself fails the run.
    """

    def __init__(
        self,
        audit: AuditOperation,
        config: Optional[RunnerConfig] = None,
        discoverer: Optional[UrlDiscoverer] = None,
        cache: Optional["OrderedDict[str, Any]"] = None,
        memory_probe: Optional[Callable[[], float]] = None,
        store=None,
    ):
        self.audit = audit
        self.config = config or RunnerConfig.from_settings()
        self.discoverer = discoverer
        self.cache: "OrderedDict[str, Any]" = cache if cache is not None else OrderedDict()
        self.memory_probe = memory_probe or process_memory_mb
        self.store = store
        self._runs: Dict[str, _RunRecord] = {}

    # -------------------- public API --------------------

    async def audit_website(
        self,
        main_url: str,
        on_progress: Optional[ProgressCallback] = None,
        on_batch_complete: Optional[BatchCallback] = None,
        token: Optional[CancellationToken] = None,
        **kwargs,
    ) -> RunOutcome:
        return await self.audit_urls([main_url], on_progress, on_batch_complete, token, discover=True, **kwargs)

    async def audit_urls(
        self,
        urls: Sequence[str],
        on_progress: Optional[ProgressCallback] = None,
        on_batch_complete: Optional[BatchCallback] = None,
        token: Optional[CancellationToken] = None,
        discover: bool = False,
        job_id: Optional[str] = None,
        config: Optional[RunnerConfig] = None,
        on_batch_results: Optional[BatchCallback] = None,
    ) -> RunOutcome:
        """
        Run the pipeline over `urls`. With `discover=True` each URL is a seed
        for discovery and the union of what is found gets audited.

        `on_batch_complete` receives the successful results of each batch;
        `on_batch_results` receives every result of the batch, failures included.
        """
        job_id = job_id or _new_run_id()
        cfg = config or self.config
        emitter = _ProgressEmitter(job_id, on_progress, self.memory_probe)
        try:
            main_url = None
            if discover:
                main_url = urls[0] if urls else None
                urls = await self._discover(urls, cfg, emitter)
            return await self._execute(job_id, urls, main_url, cfg, emitter, token, on_batch_complete, on_batch_results)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.exception("Audit run %s failed: %s", job_id, error)
            record = self._runs.get(job_id)
            if record is not None:
                record.finished = time.monotonic()
            emitter.emit(AuditPhase.failed, error=error)
            return RunOutcome(job_id=job_id, success=False, error=error)

    async def stream(self, main_url: str, discover: bool = True, **kwargs) -> AsyncIterator[Union[ProgressEvent, BatchEvent]]:
        """Progress and batch events of one run, ending after the terminal progress event."""
        job_id = kwargs.pop("job_id", None) or _new_run_id()
        events: asyncio.Queue = asyncio.Queue()

        def _on_batch(results: List[PageResult], batch_number: int) -> None:
            events.put_nowait(BatchEvent(job_id=job_id, batch_number=batch_number, results=results))

        run = asyncio.ensure_future(self.audit_urls(
            [main_url],
            on_progress=events.put_nowait,
            on_batch_complete=_on_batch,
            discover=discover,
            job_id=job_id,
            **kwargs,
        ))
        try:
            while True:
                event = await events.get()
                yield event
                if isinstance(event, ProgressEvent) and event.is_terminal:
                    break
            await run
        finally:
            if not run.done():
                run.cancel()

    def job_results(self, job_id: str, page: int = 1, limit: int = 50) -> ResultsPage:
        record = self._runs.get(job_id)
        ok = [PageResult.from_task(t) for t in record.tasks if t.status == "completed"] if record else []
        return ResultsPage.paginate(ok, page, limit)

    def create_tasks(self, urls: Sequence[str], main_url: Optional[str] = None, max_pages: Optional[int] = None) -> List[PageTask]:
        seen = set()
        tasks: List[PageTask] = []
        for url in urls:
            norm = normalize_url(url)
            if not norm or norm in seen:
                continue
            seen.add(norm)
            tasks.append(PageTask(url=norm, priority=calculate_priority(norm, main_url)))
            if max_pages is not None and len(tasks) >= max_pages:
                break
        # sorted() is stable: equal priorities keep discovery order
        return sorted(tasks, key=lambda t: -t.priority)

    def cleanup_memory(self, config: Optional[RunnerConfig] = None) -> Dict[str, int]:
        cfg = config or self.config
        evicted = 0
        if len(self.cache) > cfg.cache_max_entries:
            for _ in range(len(self.cache) // 2):
                self.cache.popitem(last=False)
                evicted += 1

        cutoff = time.monotonic() - cfg.stale_after_seconds
        stale = [jid for jid, r in self._runs.items() if r.finished is not None and r.finished < cutoff]
        for jid in stale:
            del self._runs[jid]

        if evicted or stale:
            logger.info("Memory cleanup: evicted %d cache entries, dropped %d stale runs", evicted, len(stale))
        return {"evicted": evicted, "stale_runs": len(stale)}

    # -------------------- pipeline --------------------

    async def _discover(self, seeds: Sequence[str], cfg: RunnerConfig, emitter: _ProgressEmitter) -> List[str]:
        if self.discoverer is None:
            self.discoverer = UrlDiscoverer()
        emitter.emit(AuditPhase.discovering)

        def _on_strategy(name: str, count: int) -> None:
            emitter.total = count
            emitter.emit(AuditPhase.discovering)

        found: Dict[str, None] = {}
        for seed in seeds:
            if len(found) >= cfg.max_pages:
                break
            urls = await self.discoverer.discover(seed, cfg.max_pages - len(found), _on_strategy)
            for u in urls:
                found.setdefault(u, None)
        logger.info("Discovered %d urls from %d seed(s)", len(found), len(seeds))
        return list(found)

    async def _execute(
        self,
        job_id: str,
        urls: Sequence[str],
        main_url: Optional[str],
        cfg: RunnerConfig,
        emitter: _ProgressEmitter,
        token: Optional[CancellationToken],
        on_batch_complete: Optional[BatchCallback],
        on_batch_results: Optional[BatchCallback],
    ) -> RunOutcome:
        tasks = self.create_tasks(urls, main_url, cfg.max_pages)
        record = self._runs[job_id] = _RunRecord(tasks=tasks)

        emitter.total = len(tasks)
        emitter.total_batches = math.ceil(len(tasks) / cfg.batch_size)
        emitter.started = time.monotonic()
        emitter.emit(AuditPhase.auditing)

        for batch_index in range(emitter.total_batches):
            if token is not None and token.cancelled:
                break

            if self._memory_exceeded(cfg):
                self.cleanup_memory(cfg)

            batch = tasks[batch_index * cfg.batch_size:(batch_index + 1) * cfg.batch_size]
            emitter.current_batch = batch_index + 1

            async def _worker(task: PageTask) -> PageResult:
                result = await self._audit_one(task, cfg, job_id)
                if result.ok:
                    emitter.completed += 1
                else:
                    emitter.failed += 1
                return result

            slots = await run_bounded(
                batch,
                _worker,
                limit=min(cfg.max_concurrency, len(batch)),
                on_item_done=lambda _n: emitter.emit(AuditPhase.auditing),
            )
            results = [
                s if isinstance(s, PageResult) else PageResult(url=t.url, ok=False, error=str(s))
                for t, s in zip(batch, slots)
            ]
            logger.debug("Run %s batch %d/%d done", job_id, batch_index + 1, emitter.total_batches)

            _notify(on_batch_results, results, batch_index + 1)
            successes = [r for r in results if r.ok]
            if successes:
                _notify(on_batch_complete, successes, batch_index + 1)

        record.finished = time.monotonic()
        if token is not None and token.cancelled:
            logger.info("Run %s cancelled after %d/%d batches", job_id, emitter.current_batch, emitter.total_batches)
            emitter.emit(AuditPhase.cancelled, error=token.reason)
            return RunOutcome(job_id=job_id, success=True, cancelled=True)

        logger.info(
            "Run %s completed: %d ok, %d failed, %d batches",
            job_id, emitter.completed, emitter.failed, emitter.total_batches,
        )
        emitter.emit(AuditPhase.completed)
        return RunOutcome(job_id=job_id, success=True)

    def _memory_exceeded(self, cfg: RunnerConfig) -> bool:
        try:
            usage = float(self.memory_probe())
        except Exception:
            logger.debug("memory probe failed", exc_info=True)
            return False
        if usage > cfg.memory_limit_mb:
            logger.warning("Memory usage %.1fMB above limit %.1fMB", usage, cfg.memory_limit_mb)
            return True
        return False

    async def _audit_one(self, task: PageTask, cfg: RunnerConfig, job_id: str) -> PageResult:
        task.status = "processing"
        task.started_at = time.monotonic()
        try:
            cached = await self._lookup(task.url, cfg) if cfg.enable_caching else None
            if cached is not None:
                task.result = cached
                task.cached = True
            else:
                task.result = await self.audit(task.url)
                if cfg.enable_caching:
                    self.cache[task.url] = task.result
                    self.cache.move_to_end(task.url)
            task.status = "completed"
        except Exception as e:
            task.status = "failed"
            task.error = str(e) or e.__class__.__name__
            logger.warning("Audit failed for %s: %s", task.url, task.error)
        finally:
            task.ended_at = time.monotonic()

        if not task.cached:
            await self._persist(task, job_id)
        return PageResult.from_task(task)

    async def _lookup(self, url: str, cfg: RunnerConfig) -> Any:
        if url in self.cache:
            return self.cache[url]
        if self.store is None or cfg.cache_window_seconds <= 0:
            return None
        try:
            row = await self.store.query(url, timedelta(seconds=cfg.cache_window_seconds))
        except Exception as e:
            logger.warning("Store lookup failed for %s: %s", url, e)
            return None
        return row.get("payload") if row else None

    async def _persist(self, task: PageTask, job_id: str) -> None:
        if self.store is None:
            return
        result = task.result.to_dict() if hasattr(task.result, "to_dict") else task.result
        try:
            await self.store.save({
                "kind": "page",
                "job_id": job_id,
                "url": task.url,
                "ok": task.status == "completed",
                "payload": result,
                "error": task.error,
            })
        except Exception as e:
            logger.warning("Store save failed for %s: %s", task.url, e)


def _notify(callback: Optional[BatchCallback], results: List[PageResult], batch_number: int) -> None:
    if callback is None:
        return
    try:
        callback(results, batch_number)
    except Exception:
        logger.warning("batch callback failed for batch %d", batch_number, exc_info=True)
