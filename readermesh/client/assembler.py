"""Client-side page batching for summaries.

Pages are queued one at a time as a reader scrolls; a single drain task
packs them into token-budgeted batches and submits those one after another,
pausing between batches while more pages wait.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Optional

import structlog

from readermesh.client.submitter import BatchSubmitter
from readermesh.config import Settings, settings as default_settings
from readermesh.errors import MalformedResponse
from readermesh.schemas.common import PageInput
from readermesh.services.batching import Batch, has_text, summaries_for, take_batch
from readermesh.services.prompts import NO_TEXT_SUMMARY

logger = structlog.get_logger(__name__)


class BatchAssembler:
    """Owns the pending pages and the only drain loop for one client."""

    def __init__(
        self,
        submitter: BatchSubmitter,
        settings: Settings = default_settings,
        *,
        max_pages: Optional[int] = None,
        max_tokens: Optional[int] = None,
        pacing_seconds: Optional[float] = None,
    ) -> None:
        self.submitter = submitter
        self.max_pages = max_pages or settings.max_batch_pages
        self.max_tokens = max_tokens or settings.max_batch_tokens
        self.pacing_seconds = (
            pacing_seconds if pacing_seconds is not None else settings.batch_pacing_ms / 1000
        )
        self.cache: dict[int, str] = {}
        self._pending: deque[PageInput] = deque()
        self._futures: dict[int, asyncio.Future[str]] = {}
        self._draining = False
        self._drain_task: Optional[asyncio.Task[None]] = None

    @property
    def pending(self) -> list[int]:
        return [p.page_number for p in self._pending]

    def enqueue_page(self, page_number: int, page_text: str) -> asyncio.Future[str]:
        """Future resolving to the page's summary.

        Calling again for a page that is cached, queued, or in flight returns
        the existing result without queueing anything.
        """
        loop = asyncio.get_running_loop()

        if page_number in self._futures:
            return self._futures[page_number]

        if page_number in self.cache:
            future = loop.create_future()
            future.set_result(self.cache[page_number])
            return future

        future = loop.create_future()
        if not has_text(page_text):
            self.cache[page_number] = NO_TEXT_SUMMARY
            future.set_result(NO_TEXT_SUMMARY)
            logger.debug("page_without_text", page=page_number)
            return future

        self._futures[page_number] = future
        self._pending.append(PageInput(page_number=page_number, page_text=page_text))
        self._start_drain()
        return future

    def _start_drain(self) -> None:
        if self._draining:
            return
        self._draining = True
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._pending:
                batch = take_batch(self._pending, self.max_pages, self.max_tokens)
                await self._submit(batch)
                if self._pending:
                    await asyncio.sleep(self.pacing_seconds)
        finally:
            self._draining = False

    async def _submit(self, batch: Batch) -> None:
        numbers = batch.page_numbers
        log = logger.bind(pages=numbers, tokens=batch.estimated_tokens)
        log.info("batch_submitting")
        try:
            data = await self.submitter.submit(batch.pages)
        except Exception as exc:
            log.error("batch_failed", error=str(exc))
            for number in numbers:
                self._settle(number, error=exc)
            return

        resolved, unresolved = summaries_for(data, numbers)
        for number, summary in resolved.items():
            self.cache[number] = summary
            self._settle(number, summary=summary)
        for number in unresolved:
            self._settle(number, error=MalformedResponse(f"no summary returned for page {number}"))
        log.info("batch_completed", resolved=len(resolved), unresolved=len(unresolved))

    def _settle(
        self,
        page_number: int,
        summary: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        future = self._futures.pop(page_number, None)
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(summary)

    async def wait_idle(self) -> None:
        """Wait for the current drain loop, if any, to finish."""
        if self._drain_task is not None:
            await self._drain_task
