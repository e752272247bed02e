# auditflow/audit/aggregator.py
"""
Combine several independent data sources into one audit result per target.

All sources start together and share one deadline. A source still running at
the deadline is reported as timed out and abandoned: it keeps running in the
background until it settles, and whatever it produces is thrown away.
"""
import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from auditflow.audit.errors import AggregationError
from auditflow.audit.models import (
    CombinedAuditResult,
    DataQuality,
    SourcePayload,
    SourceResult,
    SourceStatus,
)

logger = logging.getLogger(__name__)

SourceCall = Callable[[], Awaitable[Any]]
FieldMerger = Callable[[Any, Any], Any]
Sources = Union[Sequence[Tuple[str, SourceCall]], Mapping[str, SourceCall]]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_score(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


class SourceAggregator:
    def __init__(
        self,
        deadline_ms: int = 30000,
        require_all: bool = False,
        field_mergers: Optional[Dict[str, FieldMerger]] = None,
    ):
        if deadline_ms is None or deadline_ms <= 0:
            raise ValueError(f"deadline_ms must be > 0 (got {deadline_ms})")
        self.deadline_ms = deadline_ms
        self.require_all = require_all
        self.field_mergers: Dict[str, FieldMerger] = dict(field_mergers or {})
        # abandoned calls stay referenced here until they settle
        self._abandoned: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, field_mergers: Optional[Dict[str, FieldMerger]] = None) -> "SourceAggregator":
        return cls(
            deadline_ms=settings.SOURCE_DEADLINE_MS,
            require_all=settings.REQUIRE_ALL_SOURCES,
            field_mergers=field_mergers,
        )

    @property
    def abandoned_count(self) -> int:
        return len(self._abandoned)

    async def aggregate(
        self,
        target: str,
        sources: Sources,
        deadline_ms: Optional[int] = None,
        require_all: Optional[bool] = None,
    ) -> CombinedAuditResult:
        pairs = list(sources.items()) if isinstance(sources, Mapping) else list(sources)
        if not pairs:
            raise ValueError("at least one source is required")
        deadline = self.deadline_ms if deadline_ms is None else deadline_ms
        strict = self.require_all if require_all is None else require_all

        started = time.perf_counter()
        outcomes = await self._settle(pairs, deadline)
        total_ms = (time.perf_counter() - started) * 1000.0
        failures = [f"{r.source_name}: {r.error}" for r in outcomes if not r.ok]
        successes = [r for r in outcomes if r.ok]

        for r in outcomes:
            if not r.ok:
                logger.warning("[AGG] %s source %s %s: %s", target, r.source_name, r.status.value, r.error)

        if (strict and failures) or not successes:
            failed = CombinedAuditResult(
                target=target,
                data_sources={r.source_name: r.ok for r in outcomes},
                data_quality=DataQuality.failed,
                errors=failures,
                latencies_ms=_latencies(outcomes, total_ms),
            )
            if not successes:
                message = f"all sources failed for {target}: " + "; ".join(failures)
            else:
                message = f"required sources failed for {target}: " + "; ".join(failures)
            raise AggregationError(message, errors=failures, result=failed)

        return self.merge(target, outcomes, total_ms=total_ms)

    async def _settle(self, pairs: List[Tuple[str, SourceCall]], deadline_ms: int) -> List[SourceResult]:
        started = time.perf_counter()
        latencies: Dict[int, float] = {}
        tasks: List[asyncio.Task] = []

        for index, (name, call) in enumerate(pairs):
            task = asyncio.ensure_future(_invoke(call))
            task.add_done_callback(_latency_recorder(latencies, index, started))
            tasks.append(task)

        try:
            _done, pending = await asyncio.wait(tasks, timeout=deadline_ms / 1000.0)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        for task in pending:
            self._abandoned.add(task)
            task.add_done_callback(self._forget)

        outcomes: List[SourceResult] = []
        for index, ((name, _), task) in enumerate(zip(pairs, tasks)):
            if task in pending:
                outcomes.append(SourceResult(
                    source_name=name,
                    status=SourceStatus.timed_out,
                    error=f"timed out after {deadline_ms}ms",
                    latency_ms=float(deadline_ms),
                ))
                continue
            latency = latencies.get(index, (time.perf_counter() - started) * 1000.0)
            exc = asyncio.CancelledError("cancelled") if task.cancelled() else task.exception()
            if exc is not None:
                outcomes.append(SourceResult(
                    source_name=name,
                    status=SourceStatus.failed,
                    error=str(exc) or exc.__class__.__name__,
                    latency_ms=latency,
                ))
                continue
            outcomes.append(SourceResult(
                source_name=name,
                status=SourceStatus.success,
                payload=task.result(),
                latency_ms=latency,
            ))
        return outcomes

    def _forget(self, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Abandoned source settled with error: %s", task.exception())

    def merge(
        self,
        target: str,
        outcomes: Sequence[SourceResult],
        total_ms: Optional[float] = None,
    ) -> CombinedAuditResult:
        """Fold successful payloads in source order; first writer wins unless a field merger is set."""
        metrics: Dict[str, Any] = {}
        scores: List[float] = []

        for r in outcomes:
            if not r.ok or r.payload is None:
                continue
            if r.payload.score is not None:
                scores.append(clamp_score(r.payload.score))
            for key, value in r.payload.fields.items():
                if key not in metrics:
                    metrics[key] = value
                elif key in self.field_mergers:
                    metrics[key] = self.field_mergers[key](metrics[key], value)

        all_ok = all(r.ok for r in outcomes)
        return CombinedAuditResult(
            target=target,
            score=round_half_up(sum(scores) / len(scores)) if scores else None,
            metrics=metrics,
            data_sources={r.source_name: r.ok for r in outcomes},
            data_quality=DataQuality.real_time if all_ok else DataQuality.partial,
            errors=[f"{r.source_name}: {r.error}" for r in outcomes if not r.ok],
            latencies_ms=_latencies(outcomes, total_ms),
        )


def _latencies(outcomes: Sequence[SourceResult], total_ms: Optional[float]) -> Dict[str, float]:
    latencies = {r.source_name: r.latency_ms for r in outcomes}
    if total_ms is None:
        total_ms = max(latencies.values(), default=0.0)
    latencies["total"] = total_ms
    return latencies


async def _invoke(call: SourceCall) -> SourcePayload:
    raw = await call()
    if raw is None:
        raise ValueError("returned no data")
    return SourcePayload.coerce(raw)


def _latency_recorder(latencies: Dict[int, float], index: int, started: float):
    def _record(_task: asyncio.Task) -> None:
        latencies[index] = (time.perf_counter() - started) * 1000.0
    return _record
