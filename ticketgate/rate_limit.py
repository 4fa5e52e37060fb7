import time

from redis.exceptions import WatchError

from .config import Settings


async def token_bucket(redis, key: str, capacity: int, refill_per_sec: float) -> bool:
    bucket_key = f"rl:{key}"

    async with redis.pipeline(transaction=True) as pipe:
        while True:
            try:
                # WATCH/MULTI: a concurrent attempt that touched the bucket forces a re-read
                await pipe.watch(bucket_key)
                now = time.time()
                data = await pipe.hgetall(bucket_key)
                tokens = float(data.get("tokens", capacity))
                last = float(data.get("last", now))

                # Refill
                tokens = min(capacity, tokens + (now - last) * refill_per_sec)
                allowed = tokens >= 1.0
                if allowed:
                    tokens -= 1.0

                pipe.multi()
                pipe.hset(bucket_key, mapping={"tokens": tokens, "last": now})
                pipe.expire(bucket_key, 3600)
                await pipe.execute()
                return allowed
            except WatchError:
                continue


async def reset_bucket(redis, key: str) -> None:
    await redis.delete(f"rl:{key}")


async def login_allowed(redis, ip: str, settings: Settings) -> bool:
    """N login attempts per window per IP; a successful login resets the bucket."""
    return await token_bucket(
        redis,
        key=f"login:{ip}",
        capacity=settings.login_max_attempts,
        refill_per_sec=settings.login_max_attempts / settings.login_window_seconds,
    )


async def login_succeeded(redis, ip: str) -> None:
    await reset_bucket(redis, f"login:{ip}")
