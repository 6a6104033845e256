"""Shared fixtures: settings without credentials and a fake chat client."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Optional

import httpx
import pytest

from readermesh.config import Settings
from readermesh.schemas.common import Provider
from readermesh.services.providers import PROVIDER_REGISTRY, ChatProvider

NO_KEYS = {
    "groq_api_key": "",
    "siliconflow_api_key": "",
    "gemini_api_key": "",
    "github_token": "",
    "huggingface_api_key": "",
}

REQUEST = httpx.Request("POST", "https://llm.example/v1/chat/completions")


def make_settings(**overrides: Any) -> Settings:
    """Settings with every provider key blank unless overridden."""
    values = {**NO_KEYS, "batch_pacing_ms": 0, "status_poll_interval_ms": 1, **overrides}
    return Settings(**values)


def status_error(cls, code: int):
    """An ``openai`` status error as the SDK would raise it."""
    return cls("upstream said no", response=httpx.Response(code, request=REQUEST), body=None)


def chunk(content: Optional[str]) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeCompletions:
    def __init__(self, script: Any) -> None:
        self.script = script
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any):
        self.calls.append(kwargs)
        if isinstance(self.script, Exception):
            raise self.script
        return iter(self._chunks())

    def _chunks(self):
        for item in self.script:
            if isinstance(item, Exception):
                raise item
            yield chunk(item)


class FakeChatClient:
    """Stands in for ``openai.OpenAI``: ``client.chat.completions.create``."""

    def __init__(self, script: Any) -> None:
        self.completions = FakeCompletions(script)
        self.chat = SimpleNamespace(completions=self.completions)

    @property
    def calls(self) -> list[dict[str, Any]]:
        return self.completions.calls


class FakeProviders:
    """Provider factory returning registry classes wired to fake clients.

    ``scripts`` maps a provider to either a list of text deltas (an exception
    in the list is raised mid-stream) or an exception raised on ``create``.
    """

    def __init__(self, scripts: dict[Provider, Any], api_key: str = "test-key") -> None:
        self.clients = {p: FakeChatClient(s) for p, s in scripts.items()}
        self.api_key = api_key
        self.invoked: list[Provider] = []

    def __call__(self, provider: Provider) -> ChatProvider:
        self.invoked.append(provider)
        client = self.clients.get(provider) or FakeChatClient(["unused"])
        return PROVIDER_REGISTRY[provider](api_key=self.api_key, client=client)


@pytest.fixture
def settings() -> Settings:
    return make_settings(groq_api_key="gk", siliconflow_api_key="sk")


@pytest.fixture
def bare_settings() -> Settings:
    return make_settings()
