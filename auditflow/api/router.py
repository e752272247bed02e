# auditflow/api/router.py
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from auditflow.audit.errors import InvalidJobOptions, JobNotFound
from auditflow.audit.queue import JobQueue, get_job_queue
from auditflow.schemas import JobCreate, JobCreated, JobOut, QueueStatsOut, ResultsPageOut

logger = logging.getLogger(__name__)

router = APIRouter()


def json_dumps(obj: Any) -> str:
    """Compact JSON for SSE."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False, default=str)


def _job_or_404(queue: JobQueue, job_id: str):
    job = queue.status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"job {job_id} not found")
    return job


@router.post("/jobs", response_model=JobCreated, status_code=202)
async def create_job(body: JobCreate, queue: JobQueue = Depends(get_job_queue)):
    options = body.options.model_dump() if body.options else None
    try:
        job_id = await queue.enqueue(body.targets, priority=body.priority, options=options)
    except (InvalidJobOptions, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    return JobCreated(job_id=job_id)


@router.get("/jobs/{job_id}", response_model=JobOut)
async def get_job(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    return _job_or_404(queue, job_id).to_dict()


@router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    job = _job_or_404(queue, job_id)
    cancelled = await queue.cancel(job_id)
    return {"job_id": job_id, "cancelled": cancelled, "status": job.status.value}


@router.get("/jobs/{job_id}/results", response_model=ResultsPageOut)
async def get_results(
    job_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    queue: JobQueue = Depends(get_job_queue),
):
    _job_or_404(queue, job_id)
    results = queue.results(job_id, page=page, limit=limit)
    if results is None:
        raise HTTPException(status_code=404, detail="no results yet")
    return results.to_dict()


@router.get("/jobs/{job_id}/events")
async def job_events(job_id: str, request: Request, queue: JobQueue = Depends(get_job_queue)):
    """Server-sent progress events for one job, closed after the terminal event."""
    _job_or_404(queue, job_id)

    async def event_stream():
        try:
            async for event in queue.subscribe(job_id):
                if await request.is_disconnected():
                    break
                yield f"data: {json_dumps(event.to_dict())}\n\n"
        except JobNotFound:
            # purged between the lookup and the subscription
            yield f"data: {json_dumps({'job_id': job_id, 'status': 'failed', 'error': 'job not found'})}\n\n"

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        # Helpful behind nginx / reverse proxies:
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)


@router.get("/queue/stats", response_model=QueueStatsOut)
async def queue_stats(queue: JobQueue = Depends(get_job_queue)):
    return queue.stats()
