"""Redis token bucket guarding the payment endpoints."""

from time import time

import redis
from fastapi import HTTPException

from learnpay.common.config import settings
from learnpay.common.logging import logger


_rdb: redis.Redis | None = None


def redis_client() -> redis.Redis:
    global _rdb
    if _rdb is None:
        _rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _rdb


def enforce_token_bucket(subject: str, limit_per_minute: int | None = None) -> None:
    """Consume one token for `subject` or reject with 429.

    Capacity equals the per-minute refill. A limit of 0 disables the check, and
    Redis outages let the request through so payments keep flowing.
    """

    capacity = float(settings.rate_limit_per_minute if limit_per_minute is None else limit_per_minute)
    if capacity <= 0:
        return
    key = f"tokenbucket:payments:{subject}"
    now = time()
    refill_per_sec = capacity / 60.0
    try:
        rdb = redis_client()
        values = rdb.hmget(key, "tokens", "updated_at")
        tokens = float(values[0]) if values[0] is not None else capacity
        updated_at = float(values[1]) if values[1] is not None else now
        elapsed = max(0.0, now - updated_at)
        tokens = min(capacity, tokens + elapsed * refill_per_sec)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        rdb.expire(key, 120)
    except redis.RedisError as exc:
        logger.warning("rate_limit_unavailable subject=%s error=%s", subject, exc)
        return
    if not allowed:
        raise HTTPException(status_code=429, detail="rate limit exceeded")
