"""
Job queue API routes

Submit generation jobs, inspect and manage them, and follow job events as a
Server-Sent Events stream.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from mediaqueue.config import get_settings
from mediaqueue.schemas.job import (
    BaseJob,
    EnqueueJobRequest,
    JobEventType,
    JobStatus,
    JobType,
    PriorityRequest,
)
from mediaqueue.services.events import WILDCARD
from mediaqueue.services.job_manager import JobQueueManager
from mediaqueue.utils.metrics import get_snapshot

router = APIRouter()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


def get_queue(request: Request) -> JobQueueManager:
    return request.app.state.queue


def _job_body(job: BaseJob) -> dict:
    return job.model_dump(mode="json", by_alias=True)


def _require(job: Optional[BaseJob]) -> BaseJob:
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


# ─── Listing & stats ───────────────────────────────────────────────

@router.get("")
async def list_jobs(
    job_type: Optional[JobType] = Query(None, alias="type"),
    status: Optional[JobStatus] = None,
    queue: JobQueueManager = Depends(get_queue),
):
    """All jobs, newest first, optionally filtered by type and status"""
    jobs = queue.get_jobs(job_type, status)
    return {"success": True, "jobs": [_job_body(job) for job in jobs]}


@router.get("/stats")
async def job_stats(queue: JobQueueManager = Depends(get_queue)):
    return {"success": True, "stats": queue.get_stats().model_dump(by_alias=True)}


@router.get("/metrics")
async def job_metrics(request: Request):
    processor = getattr(request.app.state, "processor", None)
    return {
        "success": True,
        "metrics": get_snapshot(),
        "inFlight": processor.in_flight_ids if processor is not None else [],
    }


@router.get("/events")
async def stream_events(
    request: Request,
    event_type: str = Query(WILDCARD, alias="type"),
    queue: JobQueueManager = Depends(get_queue),
):
    """Server-Sent Events stream of job events ("*" for all of them)"""
    if event_type != WILDCARD and event_type not in {e.value for e in JobEventType}:
        raise HTTPException(status_code=422, detail=f"Unknown event type: {event_type}")

    async def event_source():
        async for event in queue.events.stream(event_type):
            if await request.is_disconnected():
                break
            yield f"event: {event.type.value}\ndata: {event.model_dump_json(by_alias=True)}\n\n"

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ─── Bulk removal ──────────────────────────────────────────────────

@router.delete("/completed")
async def clear_completed(queue: JobQueueManager = Depends(get_queue)):
    return {"success": True, "removed": queue.clear_completed()}


@router.delete("/failed")
async def clear_failed(queue: JobQueueManager = Depends(get_queue)):
    return {"success": True, "removed": queue.clear_failed()}


@router.delete("")
async def clear_all(queue: JobQueueManager = Depends(get_queue)):
    return {"success": True, "removed": queue.clear_all()}


# ─── Submission ────────────────────────────────────────────────────

@router.post("/{job_type}", status_code=201)
@limiter.limit(lambda: get_settings().enqueue_rate_limit)
async def enqueue_job(
    request: Request,
    job_type: JobType,
    body: EnqueueJobRequest,
    queue: JobQueueManager = Depends(get_queue),
):
    """Queue a generation job. Params are passed to the handler untouched."""
    job = queue.add_job(job_type, body.params, priority=body.priority, max_retries=body.max_retries)
    return {"success": True, "job": _job_body(job)}


# ─── Single job ────────────────────────────────────────────────────

@router.get("/{job_id}")
async def get_job(job_id: str, queue: JobQueueManager = Depends(get_queue)):
    job = _require(queue.get_job(job_id))
    return {"success": True, "job": _job_body(job)}


@router.post("/{job_id}/retry")
async def retry_job(job_id: str, queue: JobQueueManager = Depends(get_queue)):
    """Send a failed or cancelled job back to the queue.

    A job that is not retryable, or has used all its retries, comes back
    unchanged with retried=false.
    """
    before = _require(queue.get_job(job_id))
    job = _require(queue.retry_job(job_id))
    return {"success": True, "retried": job.retry_count > before.retry_count, "job": _job_body(job)}


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, queue: JobQueueManager = Depends(get_queue)):
    job = _require(queue.cancel_job(job_id))
    return {"success": True, "cancelled": job.status == JobStatus.CANCELLED, "job": _job_body(job)}


@router.patch("/{job_id}/priority")
async def set_priority(job_id: str, req: PriorityRequest, queue: JobQueueManager = Depends(get_queue)):
    """Change a job's priority; values outside 1-10 are clamped"""
    job = _require(queue.set_job_priority(job_id, req.priority))
    return {"success": True, "job": _job_body(job)}


@router.delete("/{job_id}")
async def delete_job(job_id: str, queue: JobQueueManager = Depends(get_queue)):
    if not queue.delete_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"success": True}
