"""Router: POST /v1/explain, /v1/summarize, /v1/summarize-batch - job submission."""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from readermesh.config import Settings
from readermesh.dependencies import (
    get_client_id,
    get_dispatcher,
    get_provider_factory,
    get_queue,
    get_settings,
)
from readermesh.errors import ReaderMeshError
from readermesh.schemas.common import (
    CamelModel,
    ExplainPayload,
    JobType,
    SummarizeBatchPayload,
    SummarizePayload,
)
from readermesh.schemas.jobs import JobAccepted
from readermesh.services.completion import stream_with_fallback
from readermesh.services.model_router import provider_chain, select_model
from readermesh.services.providers import ProviderFactory
from readermesh.services.stream_bridge import error_events, inline_events
from readermesh.storage.job_queue import JobQueue, build_job
from readermesh.workers.dispatch import Dispatcher
from readermesh.workers.tasks import build_result_data, plan_job

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["submit"])

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


@dataclass
class SubmitContext:
    """Bundle runtime dependencies for submission endpoints."""
    queue: JobQueue
    dispatcher: Dispatcher
    settings: Settings
    factory: Optional[ProviderFactory]
    client_id: str


def get_submit_context(
    queue: JobQueue = Depends(get_queue),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    factory: Optional[ProviderFactory] = Depends(get_provider_factory),
    client_id: str = Depends(get_client_id),
) -> SubmitContext:
    return SubmitContext(queue, dispatcher, settings, factory, client_id)


async def _submit(
    job_type: JobType,
    payload: CamelModel,
    request: Request,
    inline: bool,
    ctx: SubmitContext,
):
    job = build_job(job_type, payload, ctx.client_id)
    plan = plan_job(job)

    # Fail fast when no provider could ever serve this job
    selection = select_model(plan.router_input, ctx.settings)
    chain = provider_chain(selection, ctx.settings)

    if inline:
        deltas = stream_with_fallback(chain, plan.request, factory=ctx.factory, settings=ctx.settings)
        try:
            first = await run_in_threadpool(next, deltas, None)
        except ReaderMeshError as exc:
            logger.error("inline_failed", job_id=job.job_id, error=str(exc))
            return StreamingResponse(error_events(str(exc)), media_type="text/event-stream", headers=SSE_HEADERS)
        if first is None:
            return StreamingResponse(
                error_events("Provider returned no content"), media_type="text/event-stream", headers=SSE_HEADERS
            )

        served_by = first[0]
        logger.info(
            "inline_started",
            job_id=job.job_id,
            type=job_type.value,
            provider=served_by.provider.value,
            model=served_by.model_id,
        )
        body = inline_events(
            job,
            itertools.chain([first], deltas),
            lambda text: build_result_data(job, plan, text),
        )
        return StreamingResponse(
            body,
            media_type="text/event-stream",
            headers={
                **SSE_HEADERS,
                "X-Provider": served_by.provider.value,
                "X-Model": served_by.model_id,
            },
        )

    job_id = ctx.queue.enqueue(job)
    mode = ctx.dispatcher.dispatch()
    logger.info("job_dispatched", job_id=job_id, mode=mode)

    status_url = str(request.url_for("get_job_status", job_id=job_id).path)
    stream_url = str(request.url_for("stream_job", job_id=job_id).path)
    return JobAccepted(
        job_id=job_id,
        type=job_type,
        priority=job.priority,
        status_url=status_url,
        stream_url=stream_url,
    )


@router.post("/explain", status_code=202, response_model=JobAccepted)
async def submit_explain(
    payload: ExplainPayload,
    request: Request,
    inline: bool = Query(False, description="Process in the request and stream the answer"),
    ctx: SubmitContext = Depends(get_submit_context),
):
    """Explain a term, optionally in the context of a passage.

    Highest priority job type. Returns 202 with ``jobId`` and ``statusUrl``,
    or an event stream when ``inline=true``.
    """
    return await _submit(JobType.EXPLAIN, payload, request, inline, ctx)


@router.post("/summarize", status_code=202, response_model=JobAccepted)
async def submit_summarize(
    payload: SummarizePayload,
    request: Request,
    inline: bool = Query(False, description="Process in the request and stream the answer"),
    ctx: SubmitContext = Depends(get_submit_context),
):
    """Summarize a single page (lowest priority)."""
    return await _submit(JobType.SUMMARIZE, payload, request, inline, ctx)


@router.post("/summarize-batch", status_code=202, response_model=JobAccepted)
async def submit_summarize_batch(
    payload: SummarizeBatchPayload,
    request: Request,
    inline: bool = Query(False, description="Process in the request and stream the answer"),
    ctx: SubmitContext = Depends(get_submit_context),
):
    """Summarize several pages in one provider call.

    The result is a mapping from page number (string keys) to summary text.
    """
    return await _submit(JobType.SUMMARIZE_BATCH, payload, request, inline, ctx)
