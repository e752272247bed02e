"""Audit orchestration package

Modules:
- executor: bounded-concurrency worker pool with order-preserving results.
- discovery: sitemap / navigation / limited-crawl URL discovery.
- batch: BatchRunner, sequential batches of page audits with progress and memory governance.
- queue: JobQueue, prioritised multi-job scheduling with adaptive concurrency.
- aggregator: SourceAggregator, deadline-bounded fan-out over data sources.
- sources: PageSpeed and on-page content sources, plus the per-page audit operation.
- record: job and page-audit persistence.

The API layer reaches the process-wide queue via: from auditflow.audit.queue import get_job_queue
"""
from auditflow.audit.aggregator import SourceAggregator
from auditflow.audit.batch import BatchRunner, RunnerConfig, calculate_priority
from auditflow.audit.executor import BoundedExecutor, run_bounded
from auditflow.audit.queue import JobQueue

__all__ = [
    'BatchRunner',
    'BoundedExecutor',
    'JobQueue',
    'RunnerConfig',
    'SourceAggregator',
    'calculate_priority',
    'run_bounded',
]
