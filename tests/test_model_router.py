"""Tests for provider routing and the fallback chain."""

import pytest

from conftest import make_settings
from readermesh.errors import ProviderUnavailable
from readermesh.schemas.common import Provider, TaskType
from readermesh.services.model_router import (
    FALLBACK_PRIORITY,
    RouterInput,
    check_credentials,
    fallback_order,
    provider_chain,
    select_model,
)


class TestSelectModel:
    """Rule order: long context/image, reasoning, long history, default."""

    def test_long_word_count_goes_to_gemini(self):
        selection = select_model(RouterInput(word_count=15000))
        assert selection.provider == Provider.GEMINI

    def test_long_context_wins_over_other_fields(self):
        inp = RouterInput(word_count=15000, task_type=TaskType.COMPLEX_REASONING, history_length=50)
        assert select_model(inp).provider == Provider.GEMINI

    def test_long_text_by_characters(self):
        assert select_model(RouterInput(text="x" * 50001)).provider == Provider.GEMINI

    def test_image_goes_to_gemini(self):
        assert select_model(RouterInput(text="what is this", has_image=True)).provider == Provider.GEMINI

    def test_complex_reasoning(self):
        inp = RouterInput(text="prove it", task_type=TaskType.COMPLEX_REASONING)
        assert select_model(inp).provider == Provider.HUGGINGFACE

    def test_long_history(self):
        assert select_model(RouterInput(text="hi", history_length=11)).provider == Provider.SILICONFLOW

    def test_history_at_threshold_stays_default(self):
        assert select_model(RouterInput(text="hi", history_length=10)).provider == Provider.GROQ

    def test_short_simple_goes_to_groq(self):
        selection = select_model(RouterInput(word_count=50, task_type=TaskType.SIMPLE))
        assert selection.provider == Provider.GROQ
        assert selection.model_id == "llama-3.1-8b-instant"
        assert selection.reason

    def test_word_count_derived_from_text(self):
        text = "word " * 10001
        assert select_model(RouterInput(text=text)).provider == Provider.GEMINI

    def test_model_comes_from_settings(self):
        custom = make_settings(groq_model="llama-custom")
        assert select_model(RouterInput(text="hi"), custom).model_id == "llama-custom"


def test_fallback_order_is_fixed():
    assert FALLBACK_PRIORITY == (
        Provider.GROQ,
        Provider.SILICONFLOW,
        Provider.GITHUB,
        Provider.GEMINI,
        Provider.HUGGINGFACE,
    )
    assert fallback_order(Provider.GITHUB) == [
        Provider.GROQ,
        Provider.SILICONFLOW,
        Provider.GEMINI,
        Provider.HUGGINGFACE,
    ]


def test_check_credentials_reports_env_var():
    check = check_credentials(Provider.GEMINI, make_settings())
    assert not check.available
    assert check.missing == ["GOOGLE_GENERATIVE_AI_API_KEY"]

    assert check_credentials(Provider.GROQ, make_settings(groq_api_key="k")).available


class TestProviderChain:
    def test_primary_first_then_configured_fallbacks(self):
        settings = make_settings(groq_api_key="g", github_token="t", huggingface_api_key="h")
        primary = select_model(RouterInput(text="hi", task_type=TaskType.COMPLEX_REASONING), settings)

        chain = provider_chain(primary, settings)

        assert [s.provider for s in chain] == [Provider.HUGGINGFACE, Provider.GROQ, Provider.GITHUB]
        assert chain[1].reason == "Primary provider unavailable, using groq as fallback"

    def test_primary_without_key_is_skipped(self):
        settings = make_settings(siliconflow_api_key="s")
        primary = select_model(RouterInput(text="hi"), settings)

        chain = provider_chain(primary, settings)

        assert [s.provider for s in chain] == [Provider.SILICONFLOW]

    def test_no_credentials_raises_unavailable(self):
        settings = make_settings()
        primary = select_model(RouterInput(text="hi"), settings)

        with pytest.raises(ProviderUnavailable) as excinfo:
            provider_chain(primary, settings)

        assert "GROQ_API_KEY" in excinfo.value.missing
        assert "GITHUB_TOKEN" in str(excinfo.value)
