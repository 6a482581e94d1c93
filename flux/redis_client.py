import redis.asyncio as redis
from flux.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def claim_once(r: redis.Redis, key: str, ttl_seconds: int = 86400) -> bool:
    """
    True if this caller is the first to claim `key` (SET NX), False if it was already claimed.
    """
    was_set = await r.set(key, "1", nx=True, ex=ttl_seconds)
    return bool(was_set)


async def release(r: redis.Redis, key: str) -> None:
    await r.delete(key)
