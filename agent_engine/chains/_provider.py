"""Shared helpers for chains: provider selection and best-effort RPC writes."""

import asyncio
from collections.abc import Callable
from typing import Any

from agent_engine.core.config import get_settings
from agent_engine.core.llm import LLMAdapter, get_llm_adapter
from agent_engine.core.logging import get_logger
from agent_engine.core.providers import ProviderConfig, resolve_provider_config
from agent_engine.db.projects import get_project_settings

logger = get_logger(__name__)


async def load_provider(
    project_id: str,
    share_token: str,
    *,
    default_max_tokens: int | None = None,
    max_tokens_cap: int | None = None,
) -> tuple[ProviderConfig, LLMAdapter]:
    """
    Resolve the project's model setting and build its adapter.

    Args:
        project_id: Project UUID
        share_token: Caller's share token
        default_max_tokens: Budget to use when the project stores none
        max_tokens_cap: Optional lower ceiling for this workflow

    Returns:
        (ProviderConfig, adapter)
    """
    project = await asyncio.to_thread(get_project_settings, project_id, share_token)
    config = resolve_provider_config(
        project.get("selected_model"),
        project.get("max_tokens") or default_max_tokens,
    )
    if max_tokens_cap is not None:
        config = config.with_max_tokens(max_tokens_cap)

    logger.info(
        f"Using model {config.model_name} ({config.api_family.value}), "
        f"max_tokens={config.max_tokens}"
    )
    return config, get_llm_adapter(config, get_settings())


async def best_effort(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
    """Run a sync RPC wrapper off the event loop; log and swallow failures."""
    try:
        await asyncio.to_thread(fn, *args, **kwargs)
        return True
    except Exception as e:
        logger.warning(f"Failed to {label}: {e}")
        return False
