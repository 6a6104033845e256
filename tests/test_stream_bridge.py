"""Tests for the server-sent event stream bridge."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from readermesh.errors import RateLimited
from readermesh.schemas.common import JobResult, JobState, JobStatus, JobType, ModelSelection, Provider
from readermesh.services.stream_bridge import DONE, inline_events, job_events
from readermesh.storage.job_queue import build_job

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


def status(state, **kwargs):
    return JobStatus(job_id="j1", status=state, created_at=CREATED, **kwargs)


class ScriptedStatus:
    """Returns the scripted statuses in turn, repeating the last one."""

    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.reads = 0

    def __call__(self, job_id):
        index = min(self.reads, len(self.statuses) - 1)
        self.reads += 1
        return self.statuses[index]


def decode(frames):
    events = []
    for frame in frames:
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        body = frame[len("data: "):-2]
        events.append(body if body == "[DONE]" else json.loads(body))
    return events


async def collect(read_status, **kwargs):
    return [frame async for frame in job_events(read_status, "j1", poll_interval=0, **kwargs)]


@pytest.mark.asyncio
async def test_completed_job_emits_result_then_done():
    read = ScriptedStatus(
        status(JobState.QUEUED, position=2),
        status(JobState.QUEUED, position=2),
        status(JobState.PROCESSING),
        status(JobState.PROCESSING, progress="Once"),
        status(JobState.PROCESSING, progress="Once upon"),
        status(JobState.COMPLETED, result=JobResult(success=True, data="Once upon a time")),
    )

    events = decode(await collect(read))

    assert events == [
        {"type": "status", "data": {"status": "queued", "position": 2}},
        {"type": "status", "data": {"status": "processing", "position": None}},
        {"type": "progress", "data": {"content": "Once"}},
        {"type": "progress", "data": {"content": "Once upon"}},
        {"type": "result", "data": {"content": "Once upon a time"}},
        "[DONE]",
    ]


@pytest.mark.asyncio
async def test_batch_result_carries_summaries():
    read = ScriptedStatus(status(JobState.COMPLETED, result=JobResult(success=True, data={"1": "one"})))

    events = decode(await collect(read))

    assert events == [{"type": "result", "data": {"summaries": {"1": "one"}}}, "[DONE]"]


@pytest.mark.asyncio
async def test_failed_job_emits_one_error_then_done():
    read = ScriptedStatus(status(JobState.PROCESSING), status(JobState.FAILED, error="All providers failed"))

    frames = await collect(read)
    events = decode(frames)

    assert events[-2:] == [{"type": "error", "data": {"message": "All providers failed"}}, "[DONE]"]
    assert frames.count(DONE) == 1
    assert sum(1 for e in events if isinstance(e, dict) and e["type"] == "error") == 1


@pytest.mark.asyncio
async def test_unknown_job_errors_without_done():
    events = decode(await collect(lambda job_id: None))

    assert events == [{"type": "error", "data": {"message": "Job not found"}}]


@pytest.mark.asyncio
async def test_poll_failure_emits_error_and_closes():
    def broken(job_id):
        raise ConnectionError("redis went away")

    events = decode(await collect(broken))

    assert events == [{"type": "error", "data": {"message": "redis went away"}}]


@pytest.mark.asyncio
async def test_disconnect_stops_quietly():
    read = ScriptedStatus(status(JobState.PROCESSING))
    checks = []

    async def is_disconnected():
        checks.append(True)
        return len(checks) > 2

    events = decode(await collect(read, is_disconnected=is_disconnected))

    assert events == [{"type": "status", "data": {"status": "processing", "position": None}}]
    assert read.reads == 2


def test_inline_events_stream_deltas_then_result():
    job = build_job(JobType.EXPLAIN, {"term": "x"})
    groq = ModelSelection(provider=Provider.GROQ, model_id="llama", reason="test")

    events = decode(inline_events(job, iter([(groq, "Hi "), (groq, "there")]), lambda text: (text, None)))

    assert events == [
        {"type": "progress", "data": {"delta": "Hi "}},
        {"type": "progress", "data": {"delta": "there"}},
        {"type": "result", "data": {"content": "Hi there", "provider": "groq", "model": "llama"}},
        "[DONE]",
    ]


def test_inline_events_error_mid_stream():
    job = build_job(JobType.EXPLAIN, {"term": "x"})
    groq = ModelSelection(provider=Provider.GROQ, model_id="llama", reason="test")

    def deltas():
        yield groq, "par"
        raise RateLimited("slow down", provider="groq")

    events = decode(inline_events(job, deltas(), lambda text: (text, None)))

    assert events[0] == {"type": "progress", "data": {"delta": "par"}}
    assert events[1] == {"type": "error", "data": {"message": "groq: slow down"}}
    assert events[2:] == ["[DONE]"]
