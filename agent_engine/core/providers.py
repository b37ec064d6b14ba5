"""Resolution of a project's stored model setting into a provider config.

This is the only place that inspects model-name prefixes. Everything
downstream switches on ``ProviderConfig.api_family``.
"""

from dataclasses import dataclass, replace
from enum import Enum

from agent_engine.core.config import Settings, get_settings


class ApiFamily(str, Enum):
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    XAI = "xai"


_PREFIXES: tuple[tuple[str, ApiFamily], ...] = (
    ("claude", ApiFamily.ANTHROPIC),
    ("gemini", ApiFamily.GEMINI),
    ("grok", ApiFamily.XAI),
)


@dataclass(frozen=True)
class ProviderConfig:
    """Resolved LLM backend selection for one request."""

    api_family: ApiFamily
    model_name: str
    max_tokens: int

    def with_max_tokens(self, max_tokens: int) -> "ProviderConfig":
        """Return a copy whose budget is lowered to ``max_tokens`` when smaller."""
        return replace(self, max_tokens=max(1, min(self.max_tokens, max_tokens)))


def resolve_provider_config(
    selected_model: str | None,
    max_tokens: int | None = None,
    settings: Settings | None = None,
) -> ProviderConfig:
    """
    Map a stored model setting to a ProviderConfig.

    Args:
        selected_model: Project's ``selected_model`` value (may be None)
        max_tokens: Project's ``max_tokens`` value (may be None)
        settings: Settings override (defaults to cached settings)

    Returns:
        ProviderConfig with the budget clamped into [1, MAX_OUTPUT_TOKENS]
    """
    settings = settings or get_settings()

    budget = max_tokens or settings.DEFAULT_MAX_TOKENS
    budget = max(1, min(int(budget), settings.MAX_OUTPUT_TOKENS))

    model = (selected_model or "").strip()
    lowered = model.lower()
    for prefix, family in _PREFIXES:
        if lowered.startswith(prefix):
            return ProviderConfig(api_family=family, model_name=model, max_tokens=budget)

    default_model = settings.DEFAULT_MODEL
    default_family = ApiFamily.GEMINI
    for prefix, family in _PREFIXES:
        if default_model.lower().startswith(prefix):
            default_family = family
            break
    return ProviderConfig(api_family=default_family, model_name=default_model, max_tokens=budget)
