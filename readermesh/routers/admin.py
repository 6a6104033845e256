"""Router: POST /v1/admin/reclaim - fail jobs stuck in processing."""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from readermesh.config import Settings
from readermesh.dependencies import get_settings, get_store
from readermesh.schemas.jobs import ReclaimResponse
from readermesh.storage.status_store import StatusStore
from readermesh.sweeper import reclaim_stale

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


@router.post("/reclaim", response_model=ReclaimResponse)
async def reclaim(
    timeout_seconds: Optional[int] = Query(None, ge=1, alias="timeoutSeconds"),
    store: StatusStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """Mark jobs processing for longer than the timeout as failed.

    Defaults to ``STALE_JOB_TIMEOUT_SECONDS``.
    """
    timeout = timeout_seconds or settings.stale_job_timeout_seconds
    reclaimed = reclaim_stale(store, timeout)
    logger.info("reclaim_requested", timeout_seconds=timeout, reclaimed=len(reclaimed))
    return ReclaimResponse(reclaimed=reclaimed, timeout_seconds=timeout)
