"""Provider adapter: one streaming contract over OpenAI-compatible chat APIs.

Every upstream speaks the Chat Completions protocol, so a single client
implementation is parameterised per provider (history window, default
output budget) and looked up through ``PROVIDER_REGISTRY``. SDK exceptions
are translated to the ``readermesh.errors`` taxonomy here and nowhere else.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import openai
import structlog
from openai import OpenAI

from readermesh.config import Settings, settings as default_settings
from readermesh.errors import (
    MalformedResponse,
    MissingCredentials,
    ProviderError,
    ProviderTimeout,
    RateLimited,
    UpstreamError,
)
from readermesh.schemas.common import ChatMessage, ModelSelection, Provider
from readermesh.services.model_router import CREDENTIAL_ENV, credential_field
from readermesh.services.prompts import COMPRESSED_SYSTEM_PROMPT

logger = structlog.get_logger(__name__)


@dataclass
class ProviderRequest:
    """Everything a provider needs for one chat completion."""
    prompt: str
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    history: list[ChatMessage] = field(default_factory=list)


class ChatProvider:
    """OpenAI-compatible streaming chat provider."""

    name: Provider
    # None keeps the full history
    history_window: Optional[int] = 6
    default_max_tokens: int = 500

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[Any] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[Any] = None) -> "ChatProvider":
        prefix = cls.name.value
        return cls(
            api_key=getattr(settings, credential_field(cls.name)),
            base_url=getattr(settings, f"{prefix}_base_url") or None,
            timeout=settings.provider_timeout_seconds,
            client=client,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self, base_url: Optional[str]) -> Any:
        if self._client is None:
            # Retries are handled by walking the fallback chain
            self._client = OpenAI(
                api_key=self._api_key,
                base_url=base_url or self._base_url,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    def optimize_history(self, history: list[ChatMessage]) -> list[ChatMessage]:
        if self.history_window is None:
            return list(history)
        return list(history[-self.history_window:]) if history else []

    def build_messages(self, request: ProviderRequest) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": request.system_prompt or COMPRESSED_SYSTEM_PROMPT}]
        messages.extend(
            {"role": m.role, "content": m.content} for m in self.optimize_history(request.history)
        )
        messages.append({"role": "user", "content": request.prompt})
        return messages

    def invoke(self, selection: ModelSelection, request: ProviderRequest) -> Iterator[str]:
        """Stream text deltas for ``request``.

        Raises one of the ``ProviderError`` kinds; nothing provider-specific
        escapes this generator.
        """
        if not self.configured:
            raise MissingCredentials(
                f"{CREDENTIAL_ENV[self.name]} is not set", provider=self.name.value
            )

        produced = False
        try:
            client = self._get_client(selection.base_url)
            stream = client.chat.completions.create(
                model=selection.model_id,
                messages=self.build_messages(request),
                max_tokens=request.max_tokens or self.default_max_tokens,
                stream=True,
            )
            for chunk in stream:
                delta = _delta_text(chunk, self.name)
                if delta:
                    produced = True
                    yield delta
        except ProviderError:
            raise
        except openai.APIError as exc:
            raise translate_error(exc, self.name) from exc

        if not produced:
            raise MalformedResponse("empty completion", provider=self.name.value)


def _delta_text(chunk: Any, provider: Provider) -> str:
    choices = getattr(chunk, "choices", None)
    if choices is None:
        raise MalformedResponse("stream chunk without choices", provider=provider.value)
    if not choices:
        # usage-only chunk
        return ""
    try:
        content = choices[0].delta.content
    except (AttributeError, IndexError) as exc:
        raise MalformedResponse(f"unexpected chunk shape: {exc}", provider=provider.value) from exc
    if content is not None and not isinstance(content, str):
        raise MalformedResponse("non-text delta content", provider=provider.value)
    return content or ""


def translate_error(exc: Exception, provider: Provider) -> ProviderError:
    """Map an ``openai`` SDK exception to the error taxonomy."""
    name = provider.value
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeout("request timed out", provider=name)
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return MissingCredentials(f"credentials rejected: {exc}", provider=name)
    if isinstance(exc, openai.RateLimitError):
        return RateLimited("rate limit exceeded", provider=name)
    if isinstance(exc, openai.APIStatusError):
        return UpstreamError(f"HTTP {exc.status_code}: {exc}", provider=name, status_code=exc.status_code)
    if isinstance(exc, openai.APIConnectionError):
        return UpstreamError(f"connection failed: {exc}", provider=name)
    return UpstreamError(str(exc), provider=name)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PROVIDER_REGISTRY: dict[Provider, type[ChatProvider]] = {}


def register_provider(cls: type[ChatProvider]) -> type[ChatProvider]:
    PROVIDER_REGISTRY[cls.name] = cls
    return cls


@register_provider
class GroqProvider(ChatProvider):
    name = Provider.GROQ
    history_window = 6
    default_max_tokens = 200


@register_provider
class SiliconFlowProvider(ChatProvider):
    name = Provider.SILICONFLOW
    history_window = 6


@register_provider
class GitHubModelsProvider(ChatProvider):
    name = Provider.GITHUB
    history_window = 10


@register_provider
class GeminiProvider(ChatProvider):
    name = Provider.GEMINI
    history_window = None


@register_provider
class HuggingFaceProvider(ChatProvider):
    name = Provider.HUGGINGFACE
    history_window = 6


ProviderFactory = Callable[[Provider], ChatProvider]


def build_provider(provider: Provider, settings: Settings = default_settings) -> ChatProvider:
    try:
        cls = PROVIDER_REGISTRY[provider]
    except KeyError:
        raise UpstreamError(f"Unsupported provider: {provider}") from None
    return cls.from_settings(settings)


def invoke(
    selection: ModelSelection,
    request: ProviderRequest,
    factory: Optional[ProviderFactory] = None,
    settings: Settings = default_settings,
) -> Iterator[str]:
    """Stream deltas from the provider named in ``selection``."""
    provider = factory(selection.provider) if factory else build_provider(selection.provider, settings)
    logger.info(
        "provider_invoke",
        provider=selection.provider.value,
        model=selection.model_id,
        history=len(request.history),
    )
    return provider.invoke(selection, request)
