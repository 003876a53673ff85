from typing import Any, Dict, Optional

import httpx
import structlog

from chatrelay.core.config import settings
from chatrelay.streaming.events import Usage

logger = structlog.get_logger()


def usage_payload(
    *,
    message_id: str,
    conversation_id: str,
    provider: Optional[str],
    model: Optional[str],
    usage: Optional[Usage],
    elapsed_ms: Optional[int],
    identity: Optional[str] = None,
    request_id: Optional[str] = None,
    stream: bool = True,
) -> Dict[str, Any]:
    return {
        "request_id": request_id,
        "api_key_hash": identity,
        "message_id": message_id,
        "conversation_id": conversation_id,
        "provider": provider,
        "model": model,
        "stream": stream,
        "usage": usage.model_dump() if usage else None,
        "elapsed_ms": elapsed_ms,
    }


async def send_usage(payload: Dict[str, Any], client: Optional[httpx.AsyncClient] = None) -> None:
    """
    Optionally POST usage to an accounting service after a completed generation.
    Configure USAGE_CALLBACK_URL and USAGE_CALLBACK_AUTH.
    Failures are logged and ignored.
    """
    if not settings.USAGE_CALLBACK_URL:
        return
    headers = {"Content-Type": "application/json"}
    if settings.USAGE_CALLBACK_AUTH:
        headers["Authorization"] = settings.USAGE_CALLBACK_AUTH
    try:
        if client is not None:
            await client.post(settings.USAGE_CALLBACK_URL, json=payload, headers=headers, timeout=5.0)
        else:
            async with httpx.AsyncClient(timeout=5.0) as c:
                await c.post(settings.USAGE_CALLBACK_URL, json=payload, headers=headers)
    except httpx.HTTPError as e:
        logger.warning("usage_callback_failed", err=str(e), message_id=payload.get("message_id"))
