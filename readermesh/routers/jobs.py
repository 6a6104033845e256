"""Router: GET /v1/jobs/{job_id} - query job status, or stream it as server-sent events."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from readermesh.config import Settings
from readermesh.dependencies import get_queue, get_settings
from readermesh.schemas.common import JobStatus
from readermesh.services.stream_bridge import job_events
from readermesh.storage.job_queue import JobQueue

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["jobs"])


@router.get("/jobs/{job_id}", response_model=JobStatus, response_model_exclude_none=True)
async def get_job_status(job_id: str, queue: JobQueue = Depends(get_queue)):
    """Get the status, progress, and result of a job.

    Poll this endpoint until ``status`` is ``completed`` or ``failed``.
    Queued jobs also report their ``position`` in the queue.
    """
    status = queue.get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return status


@router.get("/jobs/{job_id}/stream")
async def stream_job(
    job_id: str,
    request: Request,
    queue: JobQueue = Depends(get_queue),
    settings: Settings = Depends(get_settings),
):
    """Push status changes for one job as ``text/event-stream``.

    Ends with a ``result`` or ``error`` event followed by ``[DONE]``.
    Unknown ids get a single ``error`` event.
    """
    logger.info("stream_opened", job_id=job_id)
    events = job_events(
        queue.get_status,
        job_id,
        poll_interval=settings.status_poll_interval_ms / 1000,
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
