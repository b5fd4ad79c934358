import json

IDEM_TTL_SECONDS = 300


async def get_cached_response(redis, idem_key: str):
    raw = await redis.get(f"idem:{idem_key}")
    return json.loads(raw) if raw else None


async def set_cached_response(redis, idem_key: str, response: dict, ttl_seconds: int = IDEM_TTL_SECONDS):
    """Cache a decision body together with its HTTP status."""
    await redis.setex(f"idem:{idem_key}", ttl_seconds, json.dumps(response))


async def acquire_lock(redis, key: str, ttl_seconds: int = 60) -> bool:
    return bool(await redis.set(key, "1", nx=True, ex=ttl_seconds))


async def release_lock(redis, key: str) -> None:
    await redis.delete(key)
