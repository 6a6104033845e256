"""Worker tasks: claim the next job, route it, call providers, record the outcome."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from readermesh.config import Settings, settings as default_settings
from readermesh.errors import (
    InvalidTransition,
    JobNotFound,
    MalformedResponse,
    ProviderError,
    ProviderUnavailable,
)
from readermesh.schemas.common import (
    ExplainPayload,
    Job,
    JobResult,
    JobStatus,
    JobType,
    SummarizeBatchPayload,
    SummarizePayload,
)
from readermesh.services import prompts
from readermesh.services.batching import parse_batch_summaries
from readermesh.services.completion import complete_with_fallback
from readermesh.services.model_router import RouterInput, count_words, provider_chain, select_model
from readermesh.services.providers import ProviderFactory, ProviderRequest
from readermesh.storage.job_queue import JobQueue
from readermesh.storage.status_store import StatusStore, status_store

logger = structlog.get_logger(__name__)


@dataclass
class JobPlan:
    """Routing input and provider request derived from a job's payload."""
    router_input: RouterInput
    request: ProviderRequest
    page_numbers: list[int] = field(default_factory=list)


def plan_job(job: Job) -> JobPlan:
    payload = job.typed_payload()

    if isinstance(payload, ExplainPayload):
        return JobPlan(
            router_input=RouterInput(
                text=payload.term,
                task_type=payload.task_type,
                history_length=len(payload.history),
                word_count=count_words(payload.term),
            ),
            request=ProviderRequest(
                prompt=prompts.explain_prompt(payload),
                system_prompt=prompts.EXPLAIN_SYSTEM_PROMPT,
                max_tokens=prompts.EXPLAIN_MAX_TOKENS,
                history=payload.history,
            ),
        )

    if isinstance(payload, SummarizeBatchPayload):
        text = "\n\n".join(p.page_text for p in payload.pages)
        return JobPlan(
            router_input=RouterInput(text=text),
            request=ProviderRequest(
                prompt=prompts.batch_prompt(payload.pages),
                system_prompt=prompts.BATCH_SYSTEM_PROMPT,
                max_tokens=prompts.batch_max_tokens(len(payload.pages)),
            ),
            page_numbers=[p.page_number for p in payload.pages],
        )

    if isinstance(payload, SummarizePayload):
        return JobPlan(
            router_input=RouterInput(text=payload.page_text),
            request=ProviderRequest(
                prompt=prompts.summarize_prompt(payload),
                system_prompt=prompts.SUMMARIZE_SYSTEM_PROMPT,
                max_tokens=prompts.SUMMARIZE_MAX_TOKENS,
            ),
            page_numbers=[payload.page_number],
        )

    raise ValueError(f"Unsupported job type: {job.type}")


def build_result_data(job: Job, plan: JobPlan, text: str) -> tuple[Any, Optional[str]]:
    """Shape the completion text into result data.

    Returns (data, note). For batch jobs an unparseable answer degrades to
    ``{first_page: raw_text}`` and ``note`` explains why.
    """
    if job.type != JobType.SUMMARIZE_BATCH:
        return text.strip(), None
    try:
        return parse_batch_summaries(text), None
    except MalformedResponse as exc:
        first = str(plan.page_numbers[0])
        return {first: text.strip()}, f"Malformed batch response, returned raw text for page {first}: {exc}"


def degraded_batch_data(plan: JobPlan, exc: MalformedResponse) -> tuple[dict[str, str], str]:
    """Partial result for a batch whose provider stream broke off.

    Whatever text arrived goes to the first page; with no text the map is empty.
    """
    text = exc.partial_text.strip()
    if not text:
        return {}, f"Malformed batch response, no text received: {exc}"
    first = str(plan.page_numbers[0])
    return {first: text}, f"Malformed batch response, returned partial text for page {first}: {exc}"


class ProgressWriter:
    """Writes accumulated streamed text into the job's ``progress`` field.

    A write happens once ``flush_chars`` new characters have arrived, or when
    the text shrinks because a fallback provider started over.
    """

    def __init__(self, queue: JobQueue, job_id: str, flush_chars: int) -> None:
        self._queue = queue
        self._job_id = job_id
        self._flush_chars = flush_chars
        self._written = 0

    def __call__(self, text: str) -> None:
        if len(text) < self._written or len(text) - self._written >= self._flush_chars:
            self._queue.report_progress(self._job_id, text)
            self._written = len(text)


def _finalize(queue: JobQueue, job_id: str, *, result: Optional[JobResult] = None, error: Optional[str] = None) -> Optional[JobStatus]:
    try:
        if error is not None:
            return queue.fail(job_id, error)
        return queue.complete(job_id, result)
    except (InvalidTransition, JobNotFound) as exc:
        # reclaimed by the sweep or expired while we were working
        logger.warning("job_already_finalized", job_id=job_id, error=str(exc))
        return queue.get_status(job_id)


def process_job(
    job: Job,
    queue: JobQueue,
    settings: Settings = default_settings,
    factory: Optional[ProviderFactory] = None,
) -> Optional[JobStatus]:
    """Run one claimed job to ``completed`` or ``failed``.

    Transient provider errors move to the next provider in the fallback
    chain; the job fails only when the chain is exhausted or the error is
    not fallback-eligible.
    """
    log = logger.bind(job_id=job.job_id, type=job.type.value)

    try:
        plan = plan_job(job)
        selection = select_model(plan.router_input, settings)
        log.info("model_selected", provider=selection.provider.value, model=selection.model_id, reason=selection.reason)

        chain = provider_chain(selection, settings)
        try:
            completion = complete_with_fallback(
                chain,
                plan.request,
                on_text=ProgressWriter(queue, job.job_id, settings.progress_flush_chars),
                factory=factory,
                settings=settings,
            )
        except MalformedResponse as exc:
            if job.type != JobType.SUMMARIZE_BATCH:
                raise
            log.warning(
                "batch_response_malformed",
                provider=exc.provider,
                error=str(exc),
                partial_chars=len(exc.partial_text),
            )
            data, note = degraded_batch_data(plan, exc)
            result = JobResult(success=True, data=data, error=note, provider=exc.provider, model=exc.model)
            return _finalize(queue, job.job_id, result=result)

        data, note = build_result_data(job, plan, completion.text)
        result = JobResult(
            success=True,
            data=data,
            error=note,
            provider=completion.selection.provider.value,
            model=completion.selection.model_id,
        )
        status = _finalize(queue, job.job_id, result=result)
        log.info(
            "job_completed",
            provider=result.provider,
            model=result.model,
            fallbacks=len(completion.failures),
            degraded=note is not None,
        )
        return status

    except (InvalidTransition, JobNotFound) as exc:
        # a progress write found the job reclaimed or expired; stop here
        log.warning("job_already_finalized", error=str(exc))
        return queue.get_status(job.job_id)

    except (ProviderUnavailable, ProviderError) as exc:
        log.error("job_failed", error=str(exc), kind=getattr(exc, "kind", type(exc).__name__))
        return _finalize(queue, job.job_id, error=str(exc))

    except Exception as exc:
        log.error("job_failed", error=str(exc), exc_info=True)
        return _finalize(queue, job.job_id, error=str(exc))


def run_next_in(
    store: StatusStore,
    settings: Settings = default_settings,
    factory: Optional[ProviderFactory] = None,
) -> Optional[str]:
    """Claim and run the best queued job in ``store``. Returns its id, or ``None`` if idle."""
    queue = JobQueue(store)
    job = queue.claim_next()
    if job is None:
        return None
    process_job(job, queue, settings, factory)
    return job.job_id


def run_next_job() -> Optional[str]:
    """RQ entrypoint: one worker tick against the configured Redis store."""
    with status_store(default_settings, fallback=False) as store:
        return run_next_in(store, default_settings)


def drain(
    store: StatusStore,
    settings: Settings = default_settings,
    factory: Optional[ProviderFactory] = None,
) -> int:
    """Run jobs until the queue is empty. Returns how many were processed."""
    count = 0
    while run_next_in(store, settings, factory) is not None:
        count += 1
    return count
