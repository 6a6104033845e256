"""HTTP submission of ``summarize-batch`` jobs.

The server either queues the batch (``202`` with a ``statusUrl`` to poll) or
processes it inline and answers with an event stream; both are handled.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Protocol

import httpx
import structlog

from readermesh.config import Settings, settings as default_settings
from readermesh.errors import JobFailed, JobNotFound, JobTimedOut, ProviderUnavailable
from readermesh.schemas.common import PageInput, SummarizeBatchPayload

logger = structlog.get_logger(__name__)

INLINE_JOB_ID = "inline"


class BatchSubmitter(Protocol):
    async def submit(self, pages: list[PageInput]) -> Any:
        """Run one batch to completion and return its result data."""
        ...


def _result_from_event(data: dict[str, Any]) -> Any:
    if "summaries" in data:
        return data["summaries"]
    if "content" in data:
        return data["content"]
    return data.get("data")


def read_event_stream(text: str) -> Any:
    """Pull the result out of a complete ``text/event-stream`` body.

    Raises:
        JobFailed: on an ``error`` event.
    """
    for line in text.splitlines():
        if not line.startswith("data: "):
            continue
        body = line[len("data: "):]
        if body == "[DONE]":
            break
        event = json.loads(body)
        if event.get("type") == "result":
            return _result_from_event(event.get("data") or {})
        if event.get("type") == "error":
            raise JobFailed(INLINE_JOB_ID, (event.get("data") or {}).get("message") or "Job failed")
    raise JobFailed(INLINE_JOB_ID, "Stream ended without a result")


class HttpBatchSubmitter:
    """Submits batches to a ReaderMesh API over HTTP."""

    def __init__(
        self,
        base_url: str,
        settings: Settings = default_settings,
        client: Optional[httpx.AsyncClient] = None,
        client_id: Optional[str] = None,
        inline: bool = False,
    ) -> None:
        headers = {"X-Client-Id": client_id} if client_id else None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=settings.provider_timeout_seconds,
            headers=headers,
        )
        self.poll_interval = settings.status_poll_interval_ms / 1000
        self.poll_attempts = settings.status_poll_attempts
        self.inline = inline

    async def submit(self, pages: list[PageInput]) -> Any:
        payload = SummarizeBatchPayload(pages=pages).model_dump(mode="json", by_alias=True)
        params = {"inline": "true"} if self.inline else None
        response = await self._client.post("/v1/summarize-batch", json=payload, params=params)

        if response.status_code == 503:
            body = response.json()
            raise ProviderUnavailable(body.get("detail", "No provider available"), body.get("missing"))
        response.raise_for_status()

        if response.status_code == 202:
            accepted = response.json()
            logger.info("batch_submitted", job_id=accepted["jobId"], pages=len(pages))
            return await self.wait_for_result(accepted["jobId"], accepted["statusUrl"])

        return read_event_stream(response.text)

    async def wait_for_result(self, job_id: str, status_url: str) -> Any:
        """Poll ``status_url`` until the job is terminal.

        Raises:
            JobFailed: the server reported ``failed``.
            JobNotFound: the job is unknown or expired.
            JobTimedOut: still unfinished after ``poll_attempts`` polls.
        """
        for _ in range(self.poll_attempts):
            response = await self._client.get(status_url)
            if response.status_code == 404:
                raise JobNotFound(job_id)
            response.raise_for_status()
            status = response.json()

            if status["status"] == "completed":
                return (status.get("result") or {}).get("data")
            if status["status"] == "failed":
                raise JobFailed(job_id, status.get("error") or "Job failed")

            await asyncio.sleep(self.poll_interval)

        logger.warning("batch_poll_timed_out", job_id=job_id, attempts=self.poll_attempts)
        raise JobTimedOut(job_id, self.poll_attempts)

    async def aclose(self) -> None:
        await self._client.aclose()
