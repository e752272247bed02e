# auditflow/audit/queue.py
"""
Prioritised job queue on top of BatchRunner.

Jobs wait in one list ordered by priority rank (FIFO among equals). A
periodic tick admits the head of the list while the number of running jobs
is below an adaptive ceiling derived from queue depth. Running jobs are
never preempted; cancellation is cooperative and takes effect between
batches.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from auditflow.audit.batch import BatchRunner, RunnerConfig
from auditflow.audit.errors import JobNotFound
from auditflow.audit.models import (
    AuditPhase,
    Job,
    JobOptions,
    JobStatus,
    PageResult,
    Priority,
    ProgressEvent,
    ResultsPage,
    RunOutcome,
    utcnow,
)
from auditflow.config import Settings, get_settings

logger = logging.getLogger(__name__)

RunnerFactory = Callable[["OrderedDict[str, Any]"], BatchRunner]
Notifier = Callable[[Job], Any]


@dataclass
class QueueState:
    jobs: Dict[str, Job] = field(default_factory=dict)
    pending: List[Job] = field(default_factory=list)
    running: Dict[str, asyncio.Task] = field(default_factory=dict)
    cache: "OrderedDict[str, Any]" = field(default_factory=OrderedDict)
    subscribers: Dict[str, List[asyncio.Queue]] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    seq: int = 0


class JobQueue:
    """
    `runner` is either a BatchRunner shared by every job, or a factory that
    receives the queue's URL cache and returns a runner for one job.
    `notifier` is called with each finished job whose options ask for it.
    """

    def __init__(
        self,
        runner: Union[BatchRunner, RunnerFactory],
        store=None,
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.notifier = notifier
        self.state = QueueState()
        if isinstance(runner, BatchRunner):
            self._runner: Optional[BatchRunner] = runner
            self._runner_factory: Optional[RunnerFactory] = None
            self.state.cache = runner.cache
        else:
            self._runner = None
            self._runner_factory = runner
        self._scheduler: Optional[AsyncIOScheduler] = None

    # -------------------- admission --------------------

    async def enqueue(
        self,
        targets: Sequence[str],
        priority: Union[str, Priority] = Priority.medium,
        options: Optional[Union[JobOptions, Dict[str, Any]]] = None,
    ) -> str:
        rank = Priority.parse(priority)
        opts = JobOptions.from_mapping(options).validate()

        seen = set()
        clean: List[str] = []
        for t in targets or []:
            t = str(t or "").strip()
            if t and t not in seen:
                seen.add(t)
                clean.append(t)
        if not clean:
            raise ValueError("targets must contain at least one URL")

        async with self.state.lock:
            self.state.seq += 1
            job = Job(
                id=uuid.uuid4().hex,
                targets=clean,
                priority=rank,
                options=opts,
                seq=self.state.seq,
            )
            self.state.jobs[job.id] = job
            self._insert(job)

        logger.info("Job %s queued: %d target(s), priority=%s", job.id, len(clean), rank.value)
        await self._persist(job)
        return job.id

    def _insert(self, job: Job) -> None:
        # first position holding a strictly lower rank; equals stay FIFO
        pending = self.state.pending
        index = len(pending)
        for i, other in enumerate(pending):
            if other.priority.rank < job.priority.rank:
                index = i
                break
        pending.insert(index, job)

    # -------------------- inspection --------------------

    def status(self, job_id: str) -> Optional[Job]:
        return self.state.jobs.get(job_id)

    def iter_jobs(self) -> List[Job]:
        """Live jobs: queued in admission order, then processing oldest first."""
        processing = sorted(
            (j for j in self.state.jobs.values() if j.status is JobStatus.processing),
            key=lambda j: j.seq,
        )
        return list(self.state.pending) + processing

    def results(self, job_id: str, page: int = 1, limit: int = 50) -> Optional[ResultsPage]:
        if page < 1:
            raise ValueError("page must be >= 1")
        if limit < 1:
            raise ValueError("limit must be >= 1")
        job = self.state.jobs.get(job_id)
        if job is None or job.results is None:
            return None
        return ResultsPage.paginate(list(job.results), page, limit)

    def stats(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        for job in self.state.jobs.values():
            counts[job.status.value] += 1
        counts["total"] = len(self.state.jobs)
        counts["running_tasks"] = len(self.state.running)
        counts["cache_size"] = len(self.state.cache)
        counts["concurrency_ceiling"] = self.adaptive_ceiling()
        return counts

    def adaptive_ceiling(self) -> int:
        low = self.settings.QUEUE_MIN_CONCURRENCY
        high = self.settings.QUEUE_MAX_CONCURRENCY
        return min(high, max(low, len(self.state.pending) // 2))

    async def subscribe(self, job_id: str) -> AsyncIterator[ProgressEvent]:
        """Progress events of one job, ending with its terminal event."""
        job = self.state.jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status.is_terminal:
            yield self._terminal_event(job)
            return

        inbox: asyncio.Queue = asyncio.Queue()
        self.state.subscribers.setdefault(job_id, []).append(inbox)
        try:
            while True:
                event = await inbox.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            listeners = self.state.subscribers.get(job_id, [])
            if inbox in listeners:
                listeners.remove(inbox)
            if not listeners:
                self.state.subscribers.pop(job_id, None)

    # -------------------- cancellation & cleanup --------------------

    async def cancel(self, job_id: str, reason: str = "cancelled by user") -> bool:
        async with self.state.lock:
            job = self.state.jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return False
            was_queued = job.status is JobStatus.queued
            if was_queued:
                self.state.pending.remove(job)
                job.completed_at = utcnow()
            job.status = JobStatus.cancelled
            job.token.cancel(reason)

        logger.info("Job %s cancelled (%s)", job_id, "queued" if was_queued else "processing")
        if was_queued:
            # no runner will report on this job
            self._publish(job_id, self._terminal_event(job))
        await self._persist(job)
        return True

    async def purge(self, older_than: Union[timedelta, datetime]) -> int:
        if isinstance(older_than, timedelta):
            cutoff = utcnow() - older_than
        else:
            cutoff = older_than if older_than.tzinfo else older_than.replace(tzinfo=timezone.utc)
        async with self.state.lock:
            stale = [
                job_id for job_id, job in self.state.jobs.items()
                if job.status.is_terminal
                and job_id not in self.state.running
                and (job.completed_at or job.created_at) < cutoff
            ]
            for job_id in stale:
                del self.state.jobs[job_id]
        if stale:
            logger.info("Purged %d finished job(s)", len(stale))
        return len(stale)

    def evict_cache(self) -> int:
        cache = self.state.cache
        if len(cache) <= self.settings.CACHE_MAX_ENTRIES:
            return 0
        evicted = len(cache) // 2
        for _ in range(evicted):
            cache.popitem(last=False)
        logger.info("Evicted %d cached page audit(s)", evicted)
        return evicted

    async def maintenance(self) -> Dict[str, int]:
        evicted = self.evict_cache()
        if self._runner is not None:
            self._runner.cleanup_memory()
        purged = await self.purge(timedelta(seconds=self.settings.JOB_RETENTION_SECONDS))
        return {"evicted": evicted, "purged": purged}

    # -------------------- processing --------------------

    async def tick(self) -> List[str]:
        """Admit queued jobs up to the adaptive ceiling; returns the admitted ids."""
        admitted: List[Job] = []
        async with self.state.lock:
            ceiling = self.adaptive_ceiling()
            while self.state.pending and len(self.state.running) < ceiling:
                job = self.state.pending.pop(0)
                job.status = JobStatus.processing
                job.started_at = utcnow()
                self.state.running[job.id] = asyncio.create_task(self._run_job(job), name=f"audit-job-{job.id}")
                admitted.append(job)

        for job in admitted:
            logger.info("Job %s started (priority=%s)", job.id, job.priority.value)
            await self._persist(job)
        return [j.id for j in admitted]

    def _runner_for(self) -> BatchRunner:
        if self._runner is not None:
            return self._runner
        return self._runner_factory(self.state.cache)

    async def _run_job(self, job: Job) -> None:
        runner = self._runner_for()
        config: RunnerConfig = runner.config.for_job(job.options)
        terminal: List[ProgressEvent] = []

        def _on_progress(event: ProgressEvent) -> None:
            p = job.progress
            p.total = event.total_pages
            p.completed = event.completed_pages
            p.failed = event.failed_pages
            p.current_batch = event.current_batch
            p.total_batches = event.total_batches
            if event.is_terminal:
                # held back until the job status is final
                terminal.append(event)
            else:
                self._publish(job.id, event)

        def _on_batch_results(results: List[PageResult], batch_number: int) -> None:
            job.add_results(results)

        try:
            outcome = await runner.audit_urls(
                job.targets,
                on_progress=_on_progress,
                token=job.token,
                discover=job.options.discover,
                job_id=job.id,
                config=config,
                on_batch_results=_on_batch_results,
            )
        except Exception as e:
            logger.exception("Job %s crashed", job.id)
            outcome = RunOutcome(job_id=job.id, success=False, error=str(e) or e.__class__.__name__)

        async with self.state.lock:
            if job.status is not JobStatus.cancelled:
                if outcome.success and not outcome.cancelled:
                    job.status = JobStatus.completed
                    if job.results is None:
                        job.results = []
                else:
                    job.status = JobStatus.failed
                    job.error = outcome.error
            job.completed_at = utcnow()
            self.state.running.pop(job.id, None)

        logger.info(
            "Job %s %s: %d ok, %d failed",
            job.id, job.status.value, job.progress.completed, job.progress.failed,
        )
        await self._persist(job)
        event = terminal[-1] if terminal else self._terminal_event(job)
        if event.status.value != job.status.value:
            event = self._terminal_event(job)
        self._publish(job.id, event)
        if job.options.notify_on_complete:
            await self._notify(job)

    def _terminal_event(self, job: Job) -> ProgressEvent:
        p = job.progress
        return ProgressEvent(
            job_id=job.id,
            total_pages=p.total,
            completed_pages=p.completed,
            failed_pages=p.failed,
            current_batch=p.current_batch,
            total_batches=p.total_batches,
            status=AuditPhase(job.status.value) if job.status.is_terminal else AuditPhase.auditing,
            error=job.error,
        )

    async def _notify(self, job: Job) -> None:
        if self.notifier is None:
            logger.info("Job %s finished with notify_on_complete but no notifier is configured", job.id)
            return
        try:
            outcome = self.notifier(job)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning("Notifier failed for job %s: %s", job.id, e)

    def _publish(self, job_id: str, event: ProgressEvent) -> None:
        for inbox in list(self.state.subscribers.get(job_id, [])):
            inbox.put_nowait(event)

    async def _persist(self, job: Job) -> None:
        if self.store is None:
            return
        try:
            await self.store.save({"kind": "job", **job.to_dict()})
        except Exception as e:
            logger.warning("Store save failed for job %s: %s", job.id, e)

    # -------------------- lifecycle --------------------

    def start(self) -> None:
        """Schedule the admission tick and maintenance; call from inside the running loop."""
        if self._scheduler is not None:
            return
        scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.settings.QUEUE_POLL_SECONDS,
            id="auditflow_queue_tick",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        scheduler.add_job(
            self.maintenance,
            "interval",
            seconds=self.settings.MAINTENANCE_SECONDS,
            id="auditflow_queue_maintenance",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Job queue started (tick every %ss)", self.settings.QUEUE_POLL_SECONDS)

    async def stop(self, cancel_running: bool = False) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        if cancel_running:
            for job_id in list(self.state.running):
                await self.cancel(job_id, reason="queue shutting down")
        running = list(self.state.running.values())
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        logger.info("Job queue stopped")


# ============================================================
# Process-wide accessor for the API layer
# ============================================================

_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    global _job_queue
    if _job_queue is None:
        from auditflow.audit.record import SqlAuditStore
        from auditflow.audit.sources import RateLimiter, build_page_audit

        settings = get_settings()
        store = SqlAuditStore()
        # one PSI quota for every job
        limiter = RateLimiter.for_pagespeed(settings)

        def _factory(cache):
            return BatchRunner(
                build_page_audit(settings=settings, limiter=limiter),
                config=RunnerConfig.from_settings(settings),
                cache=cache,
                store=store,
            )

        _job_queue = JobQueue(_factory, store=store, settings=settings)
    return _job_queue
