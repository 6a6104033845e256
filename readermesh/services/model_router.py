"""Provider routing: pick a model for a request and the fallback chain behind it.

Rules are evaluated in order and the first match wins:

1. Image input or very long text  -> gemini (1M token window, vision)
2. Complex reasoning              -> huggingface (reasoning tier)
3. Long conversation history      -> siliconflow (high TPM)
4. Anything else                  -> groq (lowest latency)

The fallback order is fixed and is the only place it is defined.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from readermesh.config import Settings, settings as default_settings
from readermesh.errors import ProviderUnavailable
from readermesh.schemas.common import ModelSelection, Provider, TaskType

logger = structlog.get_logger(__name__)

LONG_WORD_COUNT = 10000
LONG_TEXT_CHARS = 50000
LONG_HISTORY = 10

# fast, high-volume, alternative-reasoning, vision, reasoning-tier
FALLBACK_PRIORITY: tuple[Provider, ...] = (
    Provider.GROQ,
    Provider.SILICONFLOW,
    Provider.GITHUB,
    Provider.GEMINI,
    Provider.HUGGINGFACE,
)

CREDENTIAL_ENV: dict[Provider, str] = {
    Provider.GROQ: "GROQ_API_KEY",
    Provider.SILICONFLOW: "SILICONFLOW_API_KEY",
    Provider.GITHUB: "GITHUB_TOKEN",
    Provider.GEMINI: "GOOGLE_GENERATIVE_AI_API_KEY",
    Provider.HUGGINGFACE: "HUGGINGFACE_API_KEY",
}

_CREDENTIAL_FIELD: dict[Provider, str] = {
    Provider.GROQ: "groq_api_key",
    Provider.SILICONFLOW: "siliconflow_api_key",
    Provider.GITHUB: "github_token",
    Provider.GEMINI: "gemini_api_key",
    Provider.HUGGINGFACE: "huggingface_api_key",
}


class RouterInput(BaseModel):
    """Shape of a request as far as routing is concerned."""
    text: str = ""
    has_image: bool = False
    history_length: int = Field(0, ge=0)
    task_type: TaskType = TaskType.SIMPLE
    word_count: Optional[int] = Field(None, ge=0)


@dataclass
class CredentialCheck:
    available: bool
    missing: list[str] = field(default_factory=list)


def count_words(text: str) -> int:
    return len(text.split())


def provider_selection(provider: Provider, reason: str, settings: Settings = default_settings) -> ModelSelection:
    """Build the selection for ``provider`` from its configured model and endpoint."""
    return ModelSelection(
        provider=provider,
        model_id=getattr(settings, f"{provider.value}_model"),
        base_url=getattr(settings, f"{provider.value}_base_url") or None,
        reason=reason,
    )


def select_model(inp: RouterInput, settings: Settings = default_settings) -> ModelSelection:
    """Select the optimal model for a request. Deterministic, no I/O."""
    word_count = inp.word_count if inp.word_count is not None else count_words(inp.text)

    if inp.has_image or word_count > LONG_WORD_COUNT or len(inp.text) > LONG_TEXT_CHARS:
        return provider_selection(
            Provider.GEMINI,
            "Large context or image input - Gemini handles 1M tokens and vision",
            settings,
        )

    if inp.task_type == TaskType.COMPLEX_REASONING:
        return provider_selection(
            Provider.HUGGINGFACE,
            "Complex reasoning task - using the HuggingFace Llama model",
            settings,
        )

    if inp.history_length > LONG_HISTORY:
        return provider_selection(
            Provider.SILICONFLOW,
            "Long conversation history - SiliconFlow has high TPM capacity",
            settings,
        )

    return provider_selection(
        Provider.GROQ,
        "Short interaction - Groq provides the lowest latency",
        settings,
    )


def fallback_order(excluding: Optional[Provider] = None) -> list[Provider]:
    """Fixed fallback priority minus ``excluding``."""
    return [p for p in FALLBACK_PRIORITY if p != excluding]


def credential_field(provider: Provider) -> str:
    """Name of the ``Settings`` attribute holding the provider's key."""
    return _CREDENTIAL_FIELD[provider]


def check_credentials(provider: Provider, settings: Settings = default_settings) -> CredentialCheck:
    key = getattr(settings, credential_field(provider), "")
    if key:
        return CredentialCheck(available=True)
    return CredentialCheck(available=False, missing=[CREDENTIAL_ENV[provider]])


def provider_chain(selection: ModelSelection, settings: Settings = default_settings) -> list[ModelSelection]:
    """Primary selection followed by every fallback provider, skipping those without credentials.

    Raises:
        ProviderUnavailable: when no provider in the chain has credentials.
    """
    chain: list[ModelSelection] = []
    missing: list[str] = []

    check = check_credentials(selection.provider, settings)
    if check.available:
        chain.append(selection)
    else:
        missing.extend(check.missing)
        logger.info("primary_provider_unavailable", provider=selection.provider.value)

    for provider in fallback_order(selection.provider):
        check = check_credentials(provider, settings)
        if not check.available:
            missing.extend(check.missing)
            continue
        chain.append(
            provider_selection(
                provider, f"Primary provider unavailable, using {provider.value} as fallback", settings
            )
        )

    if not chain:
        raise ProviderUnavailable(
            "No API keys configured. Configure at least one provider "
            f"({', '.join(missing)}) in your environment variables.",
            missing=missing,
        )
    return chain
