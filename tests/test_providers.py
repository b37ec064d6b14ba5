"""Tests for provider config resolution and adapter selection."""

import pytest

from agent_engine.core.config import Settings
from agent_engine.core.llm import AnthropicAdapter, GeminiAdapter, XAIAdapter, get_llm_adapter
from agent_engine.core.providers import ApiFamily, ProviderConfig, resolve_provider_config


def make_settings(**overrides) -> Settings:
    values = {
        "SUPABASE_URL": "https://test.supabase.co",
        "SUPABASE_SERVICE_ROLE_KEY": "test-key",
        "GEMINI_API_KEY": "g",
        "ANTHROPIC_API_KEY": "a",
        "XAI_API_KEY": "x",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.mark.parametrize(
    "model,family",
    [
        ("claude-sonnet-4-5", ApiFamily.ANTHROPIC),
        ("Claude-Opus", ApiFamily.ANTHROPIC),
        ("gemini-2.5-pro", ApiFamily.GEMINI),
        ("grok-4", ApiFamily.XAI),
    ],
)
def test_resolve_by_prefix(model, family):
    """Test that the model-name prefix selects the API family."""
    config = resolve_provider_config(model, 4096, settings=make_settings())
    assert config.api_family == family
    assert config.model_name == model
    assert config.max_tokens == 4096


@pytest.mark.parametrize("model", [None, "", "mistral-large"])
def test_unknown_model_falls_back_to_default(model):
    """Test that a missing or unrecognized model uses the configured default."""
    settings = make_settings(DEFAULT_MODEL="gemini-2.5-flash")
    config = resolve_provider_config(model, None, settings=settings)
    assert config.api_family == ApiFamily.GEMINI
    assert config.model_name == "gemini-2.5-flash"
    assert config.max_tokens == settings.DEFAULT_MAX_TOKENS


def test_max_tokens_clamped():
    """Test that the budget is clamped to the configured ceiling and to at least 1."""
    settings = make_settings(MAX_OUTPUT_TOKENS=1000)
    assert resolve_provider_config("claude-x", 50000, settings=settings).max_tokens == 1000
    assert resolve_provider_config("claude-x", -5, settings=settings).max_tokens == 1


def test_with_max_tokens_only_lowers():
    """Test that a workflow cap never raises the project budget."""
    config = ProviderConfig(ApiFamily.GEMINI, "gemini-2.5-flash", 4096)
    assert config.with_max_tokens(2048).max_tokens == 2048
    assert config.with_max_tokens(8192).max_tokens == 4096


def test_get_llm_adapter_by_family():
    """Test that each family gets its adapter."""
    settings = make_settings()
    assert isinstance(
        get_llm_adapter(ProviderConfig(ApiFamily.GEMINI, "gemini-x", 10), settings), GeminiAdapter
    )
    assert isinstance(
        get_llm_adapter(ProviderConfig(ApiFamily.ANTHROPIC, "claude-x", 10), settings),
        AnthropicAdapter,
    )
    assert isinstance(
        get_llm_adapter(ProviderConfig(ApiFamily.XAI, "grok-x", 10), settings), XAIAdapter
    )


def test_get_llm_adapter_missing_key():
    """Test that a missing API key is reported before any call is made."""
    settings = make_settings(XAI_API_KEY="")
    with pytest.raises(ValueError, match="XAI_API_KEY"):
        get_llm_adapter(ProviderConfig(ApiFamily.XAI, "grok-x", 10), settings)
