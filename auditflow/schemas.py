from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobOptionsIn(BaseModel):
    max_pages: int = 50
    max_concurrency: int = 10
    batch_size: Optional[int] = None
    enable_caching: bool = True
    discover: bool = False
    notify_on_complete: bool = False


class JobCreate(BaseModel):
    targets: List[str] = Field(..., min_length=1)
    priority: str = "medium"
    options: Optional[JobOptionsIn] = None


class JobCreated(BaseModel):
    job_id: str
    status: str = "queued"


class JobProgressOut(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    current_batch: int = 0
    total_batches: int = 0


class JobOut(BaseModel):
    id: str
    targets: List[str]
    priority: str
    options: Dict[str, Any]
    status: str
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    progress: JobProgressOut
    result_count: int = 0
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PageResultOut(BaseModel):
    url: str
    ok: bool
    result: Optional[Any] = None
    error: Optional[str] = None
    cached: bool = False


class ResultsPageOut(BaseModel):
    items: List[PageResultOut]
    total_results: int
    current_page: int
    total_pages: int
    has_more: bool


class QueueStatsOut(BaseModel):
    queued: int
    processing: int
    completed: int
    failed: int
    cancelled: int
    total: int
    running_tasks: int
    cache_size: int
    concurrency_ceiling: int
