"""Server-sent event streams for job status.

``job_events`` turns the polled status store into a push stream for one
job; ``inline_events`` renders a request processed in-line with the same
event vocabulary, so clients handle both paths identically.

Every event is one ``data: <json>\\n\\n`` frame with a ``type`` of
``status``, ``progress``, ``result`` or ``error``; terminal jobs end with the
literal ``data: [DONE]\\n\\n`` sentinel.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Iterable, Iterator
from typing import Any, Callable, Optional

import structlog
from starlette.concurrency import run_in_threadpool

from readermesh.errors import ReaderMeshError
from readermesh.schemas.common import Job, JobResult, JobState, JobStatus, ModelSelection

logger = structlog.get_logger(__name__)

DONE = "data: [DONE]\n\n"


def sse(event_type: str, data: dict[str, Any]) -> str:
    return f"data: {json.dumps({'type': event_type, 'data': data}, default=str)}\n\n"


def result_payload(result: Optional[JobResult]) -> dict[str, Any]:
    """Result event body: text for explain/summarize, a page map for batches."""
    data = result.data if result is not None else None
    if isinstance(data, str):
        return {"content": data}
    if isinstance(data, dict):
        return {"summaries": data}
    return {"data": data}


def _progress_payload(progress: int | str) -> dict[str, Any]:
    if isinstance(progress, str):
        return {"content": progress}
    return {"percent": progress}


async def job_events(
    read_status: Callable[[str], Optional[JobStatus]],
    job_id: str,
    poll_interval: float = 1.0,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """Poll ``read_status`` and yield SSE frames until the job is terminal.

    A ``status`` event is sent only when the status field changes, a
    ``progress`` event whenever the progress value differs from the last
    poll. Completed jobs produce one ``result`` event, failed jobs one
    ``error`` event, each followed by ``[DONE]``. The stream stops quietly
    when the client disconnects; the job itself is not affected.
    """
    log = logger.bind(job_id=job_id)
    last_status: Optional[JobState] = None
    last_progress: Optional[int | str] = None

    while True:
        if is_disconnected is not None and await is_disconnected():
            log.info("stream_client_disconnected")
            return

        try:
            status = await run_in_threadpool(read_status, job_id)
        except Exception as exc:
            log.error("stream_poll_failed", error=str(exc))
            yield sse("error", {"message": str(exc) or "Status lookup failed"})
            return

        if status is None:
            yield sse("error", {"message": "Job not found"})
            return

        if status.status != last_status:
            if status.status == JobState.COMPLETED:
                yield sse("result", result_payload(status.result))
                yield DONE
                log.info("stream_completed")
                return
            if status.status == JobState.FAILED:
                yield sse("error", {"message": status.error or "Job failed"})
                yield DONE
                log.info("stream_failed", error=status.error)
                return
            yield sse("status", {"status": status.status.value, "position": status.position})
            last_status = status.status

        if status.progress is not None and status.progress != last_progress:
            last_progress = status.progress
            yield sse("progress", _progress_payload(status.progress))

        await asyncio.sleep(poll_interval)


def inline_events(
    job: Job,
    deltas: Iterable[tuple[ModelSelection, str]],
    shape_result: Callable[[str], tuple[Any, Optional[str]]],
) -> Iterator[str]:
    """Render a provider stream processed in the request as SSE frames."""
    log = logger.bind(job_id=job.job_id, type=job.type.value)
    text = ""
    selection: Optional[ModelSelection] = None
    try:
        for selection, delta in deltas:
            text += delta
            yield sse("progress", {"delta": delta})
    except ReaderMeshError as exc:
        log.error("inline_failed", error=str(exc))
        yield sse("error", {"message": str(exc)})
        yield DONE
        return

    data, note = shape_result(text)
    result = JobResult(
        success=True,
        data=data,
        error=note,
        provider=selection.provider.value if selection else None,
        model=selection.model_id if selection else None,
    )
    payload = result_payload(result)
    payload.update(provider=result.provider, model=result.model)
    yield sse("result", payload)
    yield DONE
    log.info("inline_completed", provider=result.provider, chars=len(text))


def error_events(message: str) -> Iterator[str]:
    """A terminal error rendered as a complete event stream."""
    yield sse("error", {"message": message})
    yield DONE
