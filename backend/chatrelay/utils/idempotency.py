import json
from typing import Optional

import redis.asyncio as redis
import structlog
from cachetools import TTLCache

from chatrelay.core.config import settings

logger = structlog.get_logger()

# Fallback in-memory cache (not multi-instance safe)
_memory_cache: TTLCache = TTLCache(maxsize=5000, ttl=settings.IDEMPOTENCY_TTL_SECONDS)
_redis: Optional[redis.Redis] = None


async def init_idempotency() -> None:
    global _redis
    if settings.REDIS_URL:
        _redis = redis.from_url(settings.REDIS_URL, decode_responses=True)
        logger.info("idempotency_backend", backend="redis")
    else:
        logger.info("idempotency_backend", backend="memory")


async def close_idempotency() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def _get(key: str) -> Optional[str]:
    if _redis:
        return await _redis.get(key)
    return _memory_cache.get(key)


async def _set(key: str, value: str) -> None:
    if _redis:
        await _redis.setex(key, settings.IDEMPOTENCY_TTL_SECONDS, value)
    else:
        _memory_cache[key] = value


def _key(identity: Optional[str], key: str) -> str:
    # Scoped per caller so two callers cannot read each other's responses
    return f"idemp:{identity or 'guest'}:{key}"


async def get_cached_response(key: str, identity: Optional[str] = None) -> Optional[dict]:
    raw = await _get(_key(identity, key))
    if raw:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("idempotency_cache_corrupt", key=key)
            return None
    return None


async def set_cached_response(key: str, value: dict, identity: Optional[str] = None) -> None:
    await _set(_key(identity, key), json.dumps(value))
