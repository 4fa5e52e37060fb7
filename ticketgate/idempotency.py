import json
from functools import lru_cache

from redis.asyncio import Redis

from .config import get_settings


@lru_cache
def get_redis() -> Redis:
    # from_url does not connect; the pool opens on first command
    return Redis.from_url(get_settings().redis_url, decode_responses=True)


async def get_cached_response(redis, idem_key: str):
    raw = await redis.get(f"idem:{idem_key}")
    return json.loads(raw) if raw else None


async def set_cached_response(redis, idem_key: str, response: dict, ttl_seconds: int = 300):
    await redis.setex(f"idem:{idem_key}", ttl_seconds, json.dumps(response, default=str))
