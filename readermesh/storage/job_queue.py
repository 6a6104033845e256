"""Priority job queue on top of a ``StatusStore``."""

from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog

from readermesh.schemas.common import (
    JOB_PRIORITIES,
    CamelModel,
    Job,
    JobResult,
    JobState,
    JobStatus,
    JobType,
)
from readermesh.storage.status_store import StatusStore, utcnow

logger = structlog.get_logger(__name__)


def build_job(job_type: JobType, payload: CamelModel | dict[str, Any], client_id: str = "anonymous") -> Job:
    """Create a new immutable job with a fresh id and its type's priority."""
    if isinstance(payload, CamelModel):
        payload = payload.model_dump(mode="json", by_alias=True)
    return Job(
        job_id=str(uuid.uuid4()),
        type=job_type,
        client_id=client_id,
        payload=payload,
        priority=JOB_PRIORITIES[job_type],
        created_at=utcnow(),
    )


class JobQueue:
    """Strict-priority, FIFO-within-priority dispatch of jobs."""

    def __init__(self, store: StatusStore) -> None:
        self.store = store

    def enqueue(self, job: Job) -> str:
        """Persist ``job`` as ``queued`` and return its id."""
        expected = JOB_PRIORITIES[job.type]
        if job.priority != expected:
            job = job.model_copy(update={"priority": expected})
        self.store.create(job)
        logger.info(
            "job_enqueued",
            job_id=job.job_id,
            type=job.type.value,
            priority=job.priority,
            client_id=job.client_id,
        )
        return job.job_id

    def submit(self, job_type: JobType, payload: CamelModel | dict[str, Any], client_id: str = "anonymous") -> str:
        return self.enqueue(build_job(job_type, payload, client_id))

    def claim_next(self) -> Optional[Job]:
        """Highest priority, oldest queued job, now marked ``processing``; ``None`` if idle."""
        job = self.store.claim()
        if job is not None:
            logger.info("job_claimed", job_id=job.job_id, type=job.type.value, priority=job.priority)
        return job

    def get_status(self, job_id: str) -> Optional[JobStatus]:
        status = self.store.read(job_id)
        if status is None:
            return None
        if status.status == JobState.QUEUED:
            status = status.model_copy(update={"position": self.store.position(job_id)})
        return status

    def report_progress(self, job_id: str, progress: int | str) -> JobStatus:
        return self.store.write(job_id, progress=progress)

    def complete(self, job_id: str, result: JobResult) -> JobStatus:
        return self.store.write(job_id, status=JobState.COMPLETED, result=result)

    def fail(self, job_id: str, error: str, result: Optional[JobResult] = None) -> JobStatus:
        return self.store.write(
            job_id,
            status=JobState.FAILED,
            error=error,
            result=result or JobResult(success=False, error=error),
        )
