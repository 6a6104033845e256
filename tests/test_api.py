"""HTTP surface tests against an in-memory store."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

import openai
import pytest

pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from conftest import FakeProviders, make_settings, status_error
from readermesh.main import create_app
from readermesh.schemas.common import Provider
from readermesh.storage.status_store import InMemoryStatusStore
from readermesh.workers.tasks import drain


class FakeClock:
    def __init__(self) -> None:
        self.now = 5000.0

    def __call__(self) -> float:
        return self.now


class FakeDispatcher:
    """Counts ticks; optionally runs the queue to completion on each one."""

    def __init__(self, store, settings, run: bool = False) -> None:
        self.store = store
        self.settings = settings
        self.run = run
        self.factory = None
        self.ticks = 0

    def dispatch(self) -> str:
        self.ticks += 1
        if self.run:
            drain(self.store, self.settings, self.factory)
        return "thread"


@contextmanager
def api(
    settings=None,
    run: bool = False,
    factory: Optional[FakeProviders] = None,
    store: Optional[InMemoryStatusStore] = None,
) -> Iterator[tuple[TestClient, InMemoryStatusStore, FakeDispatcher]]:
    settings = settings or make_settings(groq_api_key="gk", siliconflow_api_key="sk")
    store = store or InMemoryStatusStore()
    factory = factory or FakeProviders({Provider.GROQ: ["An ", "answer."]})
    dispatcher = FakeDispatcher(store, settings, run=run)
    app = create_app(settings=settings, store=store, dispatcher=dispatcher, provider_factory=factory)
    with TestClient(app) as client:
        yield client, store, dispatcher


class TestSubmit:
    def test_explain_is_accepted(self):
        with api() as (client, store, dispatcher):
            response = client.post("/v1/explain", json={"term": "photosynthesis"})

            assert response.status_code == 202
            body = response.json()
            assert body["status"] == "queued"
            assert body["priority"] == 10
            assert body["type"] == "explain"
            assert body["statusUrl"] == f"/v1/jobs/{body['jobId']}"
            assert body["streamUrl"] == f"/v1/jobs/{body['jobId']}/stream"
            assert dispatcher.ticks == 1

            status = client.get(body["statusUrl"]).json()
            assert status["status"] == "queued"
            assert status["position"] == 0

    def test_job_runs_to_completion(self):
        with api(run=True) as (client, store, dispatcher):
            job_id = client.post("/v1/explain", json={"term": "osmosis", "context": "cell biology"}).json()["jobId"]

            status = client.get(f"/v1/jobs/{job_id}").json()

            assert status["status"] == "completed"
            assert status["result"]["data"] == "An answer."
            assert status["result"]["provider"] == "groq"
            assert "startedAt" in status and "completedAt" in status

    def test_batch_priorities(self):
        with api() as (client, store, dispatcher):
            summarize = client.post("/v1/summarize", json={"pageNumber": 1, "pageText": "Page one text."})
            batch = client.post(
                "/v1/summarize-batch",
                json={"pages": [{"pageNumber": 1, "pageText": "one"}, {"pageNumber": 2, "pageText": "two"}]},
            )

            assert summarize.json()["priority"] == 1
            assert batch.json()["priority"] == 5
            assert store.claim().job_id == batch.json()["jobId"]

    def test_no_credentials_is_503(self):
        with api(settings=make_settings()) as (client, store, dispatcher):
            response = client.post("/v1/explain", json={"term": "entropy"})

            assert response.status_code == 503
            assert "GROQ_API_KEY" in response.json()["detail"]
            assert "GOOGLE_GENERATIVE_AI_API_KEY" in response.json()["missing"]
            assert dispatcher.ticks == 0

    @pytest.mark.parametrize(
        "path, payload",
        [
            ("/v1/explain", {"term": ""}),
            ("/v1/summarize", {"pageNumber": 0, "pageText": "x"}),
            ("/v1/summarize-batch", {"pages": []}),
        ],
    )
    def test_validation_errors(self, path, payload):
        with api() as (client, store, dispatcher):
            assert client.post(path, json=payload).status_code == 422

    def test_client_id_from_header_then_cookie(self):
        with api() as (client, store, dispatcher):
            by_header = client.post("/v1/explain", json={"term": "a"}, headers={"X-Client-Id": "reader-1"})
            by_cookie = client.post("/v1/explain", json={"term": "b"}, headers={"Cookie": "visitorId=visitor-9"})

            assert store.read_job(by_header.json()["jobId"]).client_id == "reader-1"
            assert store.read_job(by_cookie.json()["jobId"]).client_id == "visitor-9"


class TestInline:
    def test_streams_answer(self):
        with api() as (client, store, dispatcher):
            response = client.post("/v1/explain?inline=true", json={"term": "gravity"})

            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            assert response.headers["x-provider"] == "groq"
            assert response.headers["x-model"] == "llama-3.1-8b-instant"
            text = response.text
            assert '"delta": "An "' in text
            assert '"type": "result"' in text
            assert text.endswith("data: [DONE]\n\n")
            assert dispatcher.ticks == 0

    def test_all_providers_failing_is_error_event(self):
        factory = FakeProviders({
            Provider.GROQ: status_error(openai.RateLimitError, 429),
            Provider.SILICONFLOW: status_error(openai.RateLimitError, 429),
        })
        with api(factory=factory) as (client, store, dispatcher):
            response = client.post("/v1/explain?inline=true", json={"term": "gravity"})

            assert response.status_code == 200
            assert '"type": "error"' in response.text
            assert "All providers failed" in response.text
            assert response.text.endswith("data: [DONE]\n\n")


class TestJobs:
    def test_unknown_job_is_404(self):
        with api() as (client, store, dispatcher):
            response = client.get("/v1/jobs/nope")
            assert response.status_code == 404
            assert response.json() == {"detail": "Job not found"}

    def test_stream_completed_job(self):
        with api(run=True) as (client, store, dispatcher):
            job_id = client.post("/v1/explain", json={"term": "x"}).json()["jobId"]

            response = client.get(f"/v1/jobs/{job_id}/stream")

            assert response.headers["content-type"].startswith("text/event-stream")
            assert response.text == (
                'data: {"type": "result", "data": {"content": "An answer."}}\n\n'
                "data: [DONE]\n\n"
            )

    def test_stream_unknown_job(self):
        with api() as (client, store, dispatcher):
            response = client.get("/v1/jobs/nope/stream")
            assert response.text == 'data: {"type": "error", "data": {"message": "Job not found"}}\n\n'


def test_providers_listing():
    with api(settings=make_settings(github_token="t")) as (client, store, dispatcher):
        body = client.get("/v1/providers").json()

        assert body["fallbackOrder"] == ["groq", "siliconflow", "github", "gemini", "huggingface"]
        configured = {p["provider"]: p["configured"] for p in body["providers"]}
        assert configured == {
            "groq": False,
            "siliconflow": False,
            "github": True,
            "gemini": False,
            "huggingface": False,
        }
        groq = body["providers"][0]
        assert groq["missing"] == ["GROQ_API_KEY"]
        assert groq["modelId"] == "llama-3.1-8b-instant"


def test_admin_reclaim_fails_stale_jobs():
    clock = FakeClock()
    store = InMemoryStatusStore(clock=clock)
    with api(store=store) as (client, _, dispatcher):
        job_id = client.post("/v1/explain", json={"term": "x"}).json()["jobId"]
        store.claim()
        clock.now += 120

        response = client.post("/v1/admin/reclaim?timeoutSeconds=60")

        assert response.json() == {"reclaimed": [job_id], "timeoutSeconds": 60}
        status = client.get(f"/v1/jobs/{job_id}").json()
        assert status["status"] == "failed"
        assert status["error"] == "Job timed out while processing"


def test_health_reports_store():
    with api() as (client, store, dispatcher):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["store"] == "memory"
