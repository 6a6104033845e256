"""Tests for the stale-job reclaim sweep and worker dispatch."""

from __future__ import annotations

import pytest

from conftest import FakeProviders
from readermesh.schemas.common import JobResult, JobState, JobType, Provider
from readermesh.storage.job_queue import JobQueue
from readermesh.storage.status_store import InMemoryStatusStore
from readermesh.sweeper import STALE_JOB_ERROR, reclaim_stale
from readermesh.workers.dispatch import TICK_TASK, Dispatcher
from readermesh.workers.tasks import process_job


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStatusStore(ttl_seconds=3600, clock=clock)


def test_reclaims_only_stale_processing_jobs(store, clock):
    queue = JobQueue(store)
    stale = queue.submit(JobType.EXPLAIN, {"term": "old"})
    queue.claim_next()
    clock.now += 700
    fresh = queue.submit(JobType.EXPLAIN, {"term": "new"})
    queue.claim_next()
    queued = queue.submit(JobType.SUMMARIZE, {"pageNumber": 1, "pageText": "waiting page"})

    reclaimed = reclaim_stale(store, 600)

    assert reclaimed == [stale]
    status = queue.get_status(stale)
    assert status.status == JobState.FAILED
    assert status.error == STALE_JOB_ERROR
    assert queue.get_status(fresh).status == JobState.PROCESSING
    assert queue.get_status(queued).status == JobState.QUEUED


def test_finished_jobs_are_not_reclaimed(store, clock):
    queue = JobQueue(store)
    job_id = queue.submit(JobType.EXPLAIN, {"term": "x"})
    queue.claim_next()
    queue.complete(job_id, JobResult(success=True, data="done"))
    clock.now += 10000

    assert reclaim_stale(store, 600) == []


def test_reclaimed_job_ignores_late_worker_result(store, clock, settings):
    queue = JobQueue(store)
    job_id = queue.submit(JobType.EXPLAIN, {"term": "x"})
    job = queue.claim_next()
    clock.now += 700
    reclaim_stale(store, 600)

    status = process_job(job, queue, settings, FakeProviders({Provider.GROQ: ["late"]}))

    assert status.status == JobState.FAILED
    assert status.error == STALE_JOB_ERROR


class FakeRQQueue:
    name = "readermesh"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.enqueued: list[str] = []

    def enqueue(self, func, **kwargs):
        if self.fail:
            raise ConnectionError("redis down")
        self.enqueued.append(func)


def test_dispatch_uses_rq_when_available(store, settings):
    rq_queue = FakeRQQueue()
    dispatcher = Dispatcher(store, settings, rq_queue=rq_queue)

    assert dispatcher.dispatch() == "rq"
    assert rq_queue.enqueued == [TICK_TASK]


def test_dispatch_falls_back_to_thread(store, settings):
    queue = JobQueue(store)
    job_id = queue.submit(JobType.EXPLAIN, {"term": "x"})
    dispatcher = Dispatcher(
        store, settings, rq_queue=FakeRQQueue(fail=True), factory=FakeProviders({Provider.GROQ: ["threaded"]})
    )

    assert dispatcher.dispatch() == "thread"
    dispatcher.last_thread.join(timeout=5)

    assert queue.get_status(job_id).result.data == "threaded"


def test_memory_store_has_no_rq(store, settings):
    assert Dispatcher.for_store(store, settings).rq_queue is None
