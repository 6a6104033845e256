"""Job status persistence: Redis-backed with an in-memory fallback.

Both backends share one contract: ``create`` / ``claim`` / ``read`` /
``write`` / ``expire``. ``claim`` hands each queued job to exactly one
caller, in strict priority order with FIFO among equal priorities. ``write``
is a compare-and-set against the stored state, so two writers (a worker
and the stale sweep) can never move a job backwards.
"""

from __future__ import annotations

import heapq
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

import redis as redis_lib
import structlog

from readermesh.config import Settings, settings as default_settings
from readermesh.errors import InvalidTransition, JobNotFound
from readermesh.schemas.common import (
    JOB_TRANSITIONS,
    Job,
    JobResult,
    JobState,
    JobStatus,
)

logger = structlog.get_logger(__name__)

# Sequence numbers stay below this, so priority always dominates the score
SEQ_SPAN = 10**12

_UNSET: Any = object()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def apply_update(
    current: JobStatus,
    *,
    status: Optional[JobState] = None,
    progress: Any = _UNSET,
    result: Optional[JobResult] = None,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
) -> JobStatus:
    """Return ``current`` with the update applied.

    Raises:
        InvalidTransition: if ``status`` is not a forward move from the current
            state, or if the job is already terminal.
    """
    if current.status.terminal and status is None:
        # a finished record is frozen until it expires
        raise InvalidTransition(current.job_id, current.status.value, "progress")
    now = now or utcnow()
    changes: dict[str, Any] = {}
    if status is not None and status != current.status:
        if status not in JOB_TRANSITIONS[current.status]:
            raise InvalidTransition(current.job_id, current.status.value, status.value)
        changes["status"] = status
        changes["position"] = None
        if status == JobState.PROCESSING:
            changes["started_at"] = now
        if status.terminal and current.completed_at is None:
            changes["completed_at"] = now
    elif status is not None and status.terminal:
        # completed_at is written once; a repeated terminal write is rejected
        raise InvalidTransition(current.job_id, current.status.value, status.value)
    if progress is not _UNSET:
        changes["progress"] = progress
    if result is not None:
        changes["result"] = result
    if error is not None:
        changes["error"] = error
    return current.model_copy(update=changes)


class StatusStore(ABC):
    """Durable key/value store for job records with expiry."""

    backend = "abstract"

    def __init__(self, ttl_seconds: int = 3600) -> None:
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    def create(self, job: Job) -> JobStatus:
        """Persist ``job`` with status ``queued`` and make it claimable."""

    @abstractmethod
    def claim(self) -> Optional[Job]:
        """Atomically take the best queued job and mark it ``processing``."""

    @abstractmethod
    def read(self, job_id: str) -> Optional[JobStatus]:
        ...

    @abstractmethod
    def read_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    def write(
        self,
        job_id: str,
        *,
        status: Optional[JobState] = None,
        progress: Any = _UNSET,
        result: Optional[JobResult] = None,
        error: Optional[str] = None,
    ) -> JobStatus:
        """Update a job's status record. Raises ``JobNotFound`` for unknown ids."""

    @abstractmethod
    def expire(self, job_id: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    def position(self, job_id: str) -> Optional[int]:
        """0-based dispatch position of a queued job, ``None`` if not queued."""

    @abstractmethod
    def stale_processing(self, older_than_seconds: float) -> list[str]:
        """Ids of jobs that have been ``processing`` for longer than the given age."""

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

class RedisStatusStore(StatusStore):
    """Redis backend.

    Queued ids live in a sorted set scored by ``-priority * SEQ_SPAN + seq``.
    Every read-modify-write runs as a WATCH/MULTI transaction and is retried
    when a watched key changes underneath it. ``claim`` watches the queue, so
    removing the head, marking it ``processing`` and registering it for the
    stale sweep land in one EXEC for exactly one caller. ``write`` watches the
    status key, so a sweep that fails a job between a worker's read and its
    write forces the worker to re-read and hit ``InvalidTransition``.
    """

    backend = "redis"

    def __init__(
        self,
        client: Any,
        prefix: str = "readermesh",
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(ttl_seconds)
        self._client = client
        self._prefix = prefix
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisStatusStore":
        return cls(redis_lib.from_url(url, decode_responses=True), **kwargs)

    # keys
    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _status_key(self, job_id: str) -> str:
        return f"{self._prefix}:status:{job_id}"

    @property
    def _queue_key(self) -> str:
        return f"{self._prefix}:queue"

    @property
    def _processing_key(self) -> str:
        return f"{self._prefix}:processing"

    @property
    def _seq_key(self) -> str:
        return f"{self._prefix}:seq"

    def create(self, job: Job) -> JobStatus:
        status = JobStatus(job_id=job.job_id, status=JobState.QUEUED, created_at=job.created_at)
        seq = int(self._client.incr(self._seq_key))
        pipe = self._client.pipeline()
        pipe.set(self._job_key(job.job_id), job.model_dump_json(by_alias=True), ex=self.ttl_seconds)
        pipe.set(self._status_key(job.job_id), status.model_dump_json(by_alias=True), ex=self.ttl_seconds)
        pipe.zadd(self._queue_key, {job.job_id: -job.priority * SEQ_SPAN + seq})
        pipe.execute()
        return status

    def claim(self) -> Optional[Job]:
        while True:
            job_id, job = self._client.transaction(
                self._claim_head, self._queue_key, value_from_callable=True
            )
            if job_id is None:
                return None
            if job is not None:
                return job
            logger.info("claim_skipped", job_id=job_id)

    def _claim_head(self, pipe: Any) -> tuple[Optional[str], Optional[Job]]:
        head = pipe.zrange(self._queue_key, 0, 0)
        if not head:
            return None, None
        job_id = head[0]
        status_key = self._status_key(job_id)
        pipe.watch(status_key)
        raw_job = pipe.get(self._job_key(job_id))
        raw_status = pipe.get(status_key)
        current = JobStatus.model_validate_json(raw_status) if raw_status else None

        pipe.multi()
        pipe.zrem(self._queue_key, job_id)
        if not raw_job or current is None or current.status != JobState.QUEUED:
            # expired or already handled; the member was stale
            return job_id, None
        claimed = apply_update(current, status=JobState.PROCESSING)
        pipe.set(status_key, claimed.model_dump_json(by_alias=True), ex=self.ttl_seconds)
        pipe.zadd(self._processing_key, {job_id: self._clock()})
        return job_id, Job.model_validate_json(raw_job)

    def read(self, job_id: str) -> Optional[JobStatus]:
        raw = self._client.get(self._status_key(job_id))
        if not raw:
            return None
        return JobStatus.model_validate_json(raw)

    def read_job(self, job_id: str) -> Optional[Job]:
        raw = self._client.get(self._job_key(job_id))
        if not raw:
            return None
        return Job.model_validate_json(raw)

    def write(
        self,
        job_id: str,
        *,
        status: Optional[JobState] = None,
        progress: Any = _UNSET,
        result: Optional[JobResult] = None,
        error: Optional[str] = None,
    ) -> JobStatus:
        status_key = self._status_key(job_id)

        def update(pipe: Any) -> JobStatus:
            raw = pipe.get(status_key)
            if not raw:
                raise JobNotFound(job_id)
            current = JobStatus.model_validate_json(raw)
            updated = apply_update(current, status=status, progress=progress, result=result, error=error)
            pipe.multi()
            pipe.set(status_key, updated.model_dump_json(by_alias=True), ex=self.ttl_seconds)
            if updated.status.terminal:
                pipe.zrem(self._processing_key, job_id)
            return updated

        return self._client.transaction(update, status_key, value_from_callable=True)

    def expire(self, job_id: str, ttl_seconds: int) -> None:
        self._client.expire(self._job_key(job_id), ttl_seconds)
        self._client.expire(self._status_key(job_id), ttl_seconds)

    def position(self, job_id: str) -> Optional[int]:
        rank = self._client.zrank(self._queue_key, job_id)
        return None if rank is None else int(rank)

    def stale_processing(self, older_than_seconds: float) -> list[str]:
        cutoff = self._clock() - older_than_seconds
        stale: list[str] = []
        for job_id in self._client.zrangebyscore(self._processing_key, "-inf", cutoff):
            if self._client.exists(self._status_key(job_id)):
                stale.append(job_id)
            else:
                # the record expired mid-flight; nothing left to fail
                self._client.zrem(self._processing_key, job_id)
                logger.info("processing_entry_dropped", job_id=job_id)
        return stale

    def ping(self) -> bool:
        return bool(self._client.ping())

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryStatusStore(StatusStore):
    """Process-local backend guarded by a single lock."""

    backend = "memory"

    def __init__(self, ttl_seconds: int = 3600, clock: Callable[[], float] = time.time) -> None:
        super().__init__(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._statuses: dict[str, JobStatus] = {}
        self._expires_at: dict[str, float] = {}
        self._queue: list[tuple[int, int, str]] = []
        self._processing: dict[str, float] = {}
        self._seq = 0

    def _alive(self, job_id: str) -> bool:
        deadline = self._expires_at.get(job_id)
        if deadline is None:
            return False
        if deadline <= self._clock():
            self._jobs.pop(job_id, None)
            self._statuses.pop(job_id, None)
            self._expires_at.pop(job_id, None)
            self._processing.pop(job_id, None)
            return False
        return True

    def create(self, job: Job) -> JobStatus:
        status = JobStatus(job_id=job.job_id, status=JobState.QUEUED, created_at=job.created_at)
        with self._lock:
            self._seq += 1
            self._jobs[job.job_id] = job
            self._statuses[job.job_id] = status
            self._expires_at[job.job_id] = self._clock() + self.ttl_seconds
            heapq.heappush(self._queue, (-job.priority, self._seq, job.job_id))
        return status

    def claim(self) -> Optional[Job]:
        with self._lock:
            while self._queue:
                _, _, job_id = heapq.heappop(self._queue)
                if not self._alive(job_id):
                    continue
                current = self._statuses[job_id]
                if current.status != JobState.QUEUED:
                    continue
                self._statuses[job_id] = apply_update(current, status=JobState.PROCESSING)
                self._processing[job_id] = self._clock()
                self._expires_at[job_id] = self._clock() + self.ttl_seconds
                return self._jobs[job_id]
        return None

    def read(self, job_id: str) -> Optional[JobStatus]:
        with self._lock:
            if not self._alive(job_id):
                return None
            return self._statuses[job_id]

    def read_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            if not self._alive(job_id):
                return None
            return self._jobs[job_id]

    def write(
        self,
        job_id: str,
        *,
        status: Optional[JobState] = None,
        progress: Any = _UNSET,
        result: Optional[JobResult] = None,
        error: Optional[str] = None,
    ) -> JobStatus:
        with self._lock:
            if not self._alive(job_id):
                raise JobNotFound(job_id)
            updated = apply_update(
                self._statuses[job_id], status=status, progress=progress, result=result, error=error
            )
            self._statuses[job_id] = updated
            self._expires_at[job_id] = self._clock() + self.ttl_seconds
            if updated.status.terminal:
                self._processing.pop(job_id, None)
            return updated

    def expire(self, job_id: str, ttl_seconds: int) -> None:
        with self._lock:
            if job_id in self._expires_at:
                self._expires_at[job_id] = self._clock() + ttl_seconds

    def position(self, job_id: str) -> Optional[int]:
        with self._lock:
            queued = sorted(
                entry for entry in self._queue
                if self._alive(entry[2]) and self._statuses[entry[2]].status == JobState.QUEUED
            )
            for index, entry in enumerate(queued):
                if entry[2] == job_id:
                    return index
        return None

    def stale_processing(self, older_than_seconds: float) -> list[str]:
        cutoff = self._clock() - older_than_seconds
        with self._lock:
            return [
                job_id for job_id, started in list(self._processing.items())
                if self._alive(job_id) and started <= cutoff
            ]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def open_status_store(settings: Settings = default_settings, *, fallback: bool = True) -> StatusStore:
    """Connect to Redis, or fall back to the in-memory store when it is unreachable."""
    store = RedisStatusStore.from_url(
        settings.redis_url, prefix=settings.redis_key_prefix, ttl_seconds=settings.job_ttl_seconds
    )
    try:
        store.ping()
        logger.info("redis_connected", url=settings.redis_url)
        return store
    except redis_lib.RedisError:
        store.close()
        if not fallback:
            raise
        logger.warning("redis_unavailable", msg="Falling back to in-memory job store")
        return InMemoryStatusStore(ttl_seconds=settings.job_ttl_seconds)


@contextmanager
def status_store(settings: Settings = default_settings, *, fallback: bool = True) -> Iterator[StatusStore]:
    store = open_status_store(settings, fallback=fallback)
    try:
        yield store
    finally:
        store.close()
