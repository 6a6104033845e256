"""Fail jobs whose worker died mid-flight.

Statuses only move forward, so a stale ``processing`` job is never put back
in the queue; it is marked ``failed`` and the client may resubmit.

Run with: python -m readermesh.sweeper
"""

from __future__ import annotations

import structlog

from readermesh.config import settings
from readermesh.errors import InvalidTransition, JobNotFound
from readermesh.logging_config import configure_logging
from readermesh.storage.job_queue import JobQueue
from readermesh.storage.status_store import StatusStore, status_store

logger = structlog.get_logger(__name__)

STALE_JOB_ERROR = "Job timed out while processing"


def reclaim_stale(store: StatusStore, timeout_seconds: float) -> list[str]:
    """Mark every job processing for longer than ``timeout_seconds`` as failed."""
    queue = JobQueue(store)
    reclaimed: list[str] = []
    for job_id in store.stale_processing(timeout_seconds):
        try:
            queue.fail(job_id, STALE_JOB_ERROR)
        except (InvalidTransition, JobNotFound):
            # finished or expired between the scan and the write
            continue
        reclaimed.append(job_id)
        logger.warning("job_reclaimed", job_id=job_id, timeout_seconds=timeout_seconds)
    return reclaimed


def main() -> None:
    configure_logging(settings)
    with status_store(settings, fallback=False) as store:
        reclaimed = reclaim_stale(store, settings.stale_job_timeout_seconds)
    logger.info("sweep_finished", reclaimed=len(reclaimed))


if __name__ == "__main__":
    main()
