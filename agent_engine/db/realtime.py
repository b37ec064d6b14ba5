"""Realtime broadcast notifications through Supabase's REST broadcast endpoint."""

from typing import Any

import httpx

from agent_engine.core.config import get_settings
from agent_engine.core.logging import get_logger

logger = get_logger(__name__)


async def broadcast(topic: str, event: str, payload: dict[str, Any], timeout: int = 10) -> bool:
    """
    Send one broadcast message to subscribers of ``topic``.

    Best effort: failures are logged and reported as False.

    Args:
        topic: Channel name (e.g. ``collaboration-<id>``)
        event: Broadcast event name
        payload: JSON payload
        timeout: Request timeout in seconds

    Returns:
        True if the message was accepted
    """
    settings = get_settings()
    if not settings.BROADCAST_ENABLED:
        return False

    url = f"{settings.SUPABASE_URL.rstrip('/')}/realtime/v1/api/broadcast"
    headers = {
        "apikey": settings.SUPABASE_SERVICE_ROLE_KEY,
        "Authorization": f"Bearer {settings.SUPABASE_SERVICE_ROLE_KEY}",
    }
    body = {"messages": [{"topic": topic, "event": event, "payload": payload}]}

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(url, headers=headers, json=body)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Failed to broadcast {event} on {topic}: {e}")
        return False
    return True
