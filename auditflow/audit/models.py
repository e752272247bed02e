# auditflow/audit/models.py
"""
Domain types shared by the executor, batch runner, job queue and aggregator.

Everything here is plain data: dataclasses and str-valued enums that
serialise straight to JSON for the store and the API layer.
"""
from __future__ import annotations

import asyncio
import enum
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from auditflow.audit.errors import InvalidJobOptions


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================
# Enums
# ============================================================

class Priority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        if isinstance(value, Priority):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidJobOptions(f"unknown priority: {value!r}") from None


_PRIORITY_RANK = {
    Priority.low: 1,
    Priority.medium: 2,
    Priority.high: 3,
    Priority.urgent: 4,
}


class JobStatus(str, enum.Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed, JobStatus.cancelled)


class AuditPhase(str, enum.Enum):
    discovering = "discovering"
    auditing = "auditing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (AuditPhase.completed, AuditPhase.failed, AuditPhase.cancelled)


class SourceStatus(str, enum.Enum):
    success = "success"
    failed = "failed"
    timed_out = "timedOut"


class DataQuality(str, enum.Enum):
    real_time = "real-time"
    partial = "partial"
    failed = "failed"


# ============================================================
# Cancellation
# ============================================================

class CancellationToken:
    """Cooperative cancellation flag handed from the queue to a running job."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# ============================================================
# Jobs
# ============================================================

def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidJobOptions(f"{name} must be an integer (got {value!r})")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidJobOptions(f"{name} must be an integer (got {value!r})") from None
    if number < 1:
        raise InvalidJobOptions(f"{name} must be >= 1 (got {value})")
    return number


@dataclass
class JobOptions:
    max_pages: int = 50
    max_concurrency: int = 10
    batch_size: Optional[int] = None  # falls back to the runner's configured size
    enable_caching: bool = True
    discover: bool = False
    notify_on_complete: bool = False

    def validate(self) -> "JobOptions":
        self.max_pages = _positive_int("max_pages", self.max_pages)
        self.max_concurrency = _positive_int("max_concurrency", self.max_concurrency)
        if self.batch_size is not None:
            self.batch_size = _positive_int("batch_size", self.batch_size)
        return self

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "JobOptions":
        if data is None:
            return cls()
        if isinstance(data, JobOptions):
            return data
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_pages": self.max_pages,
            "max_concurrency": self.max_concurrency,
            "batch_size": self.batch_size,
            "enable_caching": self.enable_caching,
            "discover": self.discover,
            "notify_on_complete": self.notify_on_complete,
        }


@dataclass
class JobProgress:
    total: int = 0
    completed: int = 0
    failed: int = 0
    current_batch: int = 0
    total_batches: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
        }


@dataclass
class Job:
    id: str
    targets: List[str]
    priority: Priority = Priority.medium
    options: JobOptions = field(default_factory=JobOptions)
    status: JobStatus = JobStatus.queued
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: JobProgress = field(default_factory=JobProgress)
    results: Optional[List["PageResult"]] = None
    error: Optional[str] = None
    seq: int = 0
    token: CancellationToken = field(default_factory=CancellationToken, repr=False, compare=False)

    def add_results(self, items: List["PageResult"]) -> None:
        # a cancelled job's result list is frozen, except for the in-flight batch
        # which the runner reports before it notices the token
        if self.status.is_terminal and self.status is not JobStatus.cancelled:
            return
        if self.results is None:
            self.results = []
        self.results.extend(items)

    def to_dict(self, include_results: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "targets": list(self.targets),
            "priority": self.priority.value,
            "options": self.options.to_dict(),
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "progress": self.progress.to_dict(),
            "result_count": len(self.results) if self.results is not None else 0,
            "error": self.error,
        }
        if include_results:
            data["results"] = [r.to_dict() for r in (self.results or [])]
        return data


# ============================================================
# Runs, pages and progress
# ============================================================

@dataclass
class PageTask:
    url: str
    priority: int = 0
    status: str = "pending"  # pending, processing, completed, failed
    result: Any = None
    error: Optional[str] = None
    cached: bool = False
    started_at: Optional[float] = None
    ended_at: Optional[float] = None


@dataclass
class PageResult:
    url: str
    ok: bool
    result: Any = None
    error: Optional[str] = None
    cached: bool = False

    @classmethod
    def from_task(cls, task: PageTask) -> "PageResult":
        return cls(
            url=task.url,
            ok=task.status == "completed",
            result=task.result,
            error=task.error,
            cached=task.cached,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = self.result
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        return {
            "url": self.url,
            "ok": self.ok,
            "result": result,
            "error": self.error,
            "cached": self.cached,
        }


@dataclass
class ProgressEvent:
    job_id: str
    total_pages: int = 0
    completed_pages: int = 0
    failed_pages: int = 0
    current_batch: int = 0
    total_batches: int = 0
    estimated_time_remaining_ms: float = 0.0
    average_time_per_page_ms: float = 0.0
    memory_usage_mb: float = 0.0
    status: AuditPhase = AuditPhase.discovering
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "total_pages": self.total_pages,
            "completed_pages": self.completed_pages,
            "failed_pages": self.failed_pages,
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
            "estimated_time_remaining_ms": round(self.estimated_time_remaining_ms, 1),
            "average_time_per_page_ms": round(self.average_time_per_page_ms, 1),
            "memory_usage_mb": round(self.memory_usage_mb, 1),
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class BatchEvent:
    job_id: str
    batch_number: int
    results: List[PageResult]


@dataclass
class RunOutcome:
    job_id: str
    success: bool
    error: Optional[str] = None
    cancelled: bool = False


@dataclass
class ResultsPage:
    items: List[Any]
    total_results: int
    current_page: int
    total_pages: int
    has_more: bool

    @classmethod
    def paginate(cls, items: List[Any], page: int = 1, limit: int = 50) -> "ResultsPage":
        if page < 1:
            raise ValueError("page must be >= 1")
        if limit < 1:
            raise ValueError("limit must be >= 1")
        total = len(items)
        total_pages = math.ceil(total / limit)
        start = (page - 1) * limit
        return cls(
            items=list(items[start:start + limit]),
            total_results=total,
            current_page=page,
            total_pages=total_pages,
            has_more=page < total_pages,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [i.to_dict() if hasattr(i, "to_dict") else i for i in self.items],
            "total_results": self.total_results,
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "has_more": self.has_more,
        }


# ============================================================
# Sources
# ============================================================

@dataclass
class SourcePayload:
    """Normalised output of one data source: an optional score plus named fields."""

    score: Optional[float] = None
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, raw: Any) -> "SourcePayload":
        if isinstance(raw, SourcePayload):
            return raw
        if isinstance(raw, bool):
            raise TypeError("a bare boolean is not a source payload")
        if isinstance(raw, (int, float)):
            return cls(score=float(raw))
        if isinstance(raw, Mapping):
            fields = dict(raw)
            score = fields.pop("score", None)
            if score is not None:
                score = float(score)
            return cls(score=score, fields=fields)
        raise TypeError(f"unsupported source payload type: {type(raw).__name__}")


@dataclass
class SourceResult:
    source_name: str
    status: SourceStatus
    payload: Optional[SourcePayload] = None
    error: Optional[str] = None
    latency_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is SourceStatus.success


@dataclass
class CombinedAuditResult:
    target: str
    score: Optional[int] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    data_sources: Dict[str, bool] = field(default_factory=dict)
    data_quality: DataQuality = DataQuality.failed
    errors: List[str] = field(default_factory=list)
    latencies_ms: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "score": self.score,
            "metrics": self.metrics,
            "data_sources": dict(self.data_sources),
            "data_quality": self.data_quality.value,
            "errors": list(self.errors),
            "latencies_ms": {k: round(v, 1) for k, v in self.latencies_ms.items()},
        }
