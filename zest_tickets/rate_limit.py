import time


async def token_bucket(redis, key: str, capacity: int, refill_per_sec: float) -> bool:
    """Take one token from ``rl:<key>``; False when the bucket is empty."""
    now = time.time()
    bucket_key = f"rl:{key}"

    data = await redis.hgetall(bucket_key)
    tokens = float(data.get(b"tokens", capacity))
    last = float(data.get(b"last", now))

    tokens = min(capacity, tokens + (now - last) * refill_per_sec)
    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0

    await redis.hset(bucket_key, mapping={"tokens": tokens, "last": now})
    await redis.expire(bucket_key, 3600)
    return allowed


async def per_minute(redis, key: str, limit: int) -> bool:
    return await token_bucket(redis, key=key, capacity=limit, refill_per_sec=limit / 60)
