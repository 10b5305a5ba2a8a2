from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import HTTPException, status
from redis.exceptions import RedisError

from ..redis_client import get_redis_client

logger = logging.getLogger(__name__)


def _window(window_seconds: int) -> tuple[int, int]:
    """Return the current window index and the seconds left in it."""
    now = int(datetime.now(UTC).timestamp())
    return now // window_seconds, window_seconds - now % window_seconds


def rate_limit_key(bucket_name: str, *scope: object, window: int) -> str:
    parts = ":".join(str(part) for part in scope) or "global"
    return f"ratelimit:{bucket_name}:{parts}:{window}"


def enforce_rate_limit(
    bucket_name: str,
    max_requests: int,
    *scope: object,
    window_seconds: int = 60,
) -> None:
    """Fixed-window counter per bucket and scope parts (account, client, token)."""
    if max_requests <= 0:
        return
    window_seconds = max(1, window_seconds)
    window, remaining = _window(window_seconds)
    key = rate_limit_key(bucket_name, *scope, window=window)
    try:
        redis = get_redis_client()
        current = int(redis.incr(key))
        if current == 1:
            redis.expire(key, window_seconds)
    except RedisError:
        # Degrade open if Redis is unavailable.
        logger.warning("rate_limit.redis_unavailable", extra={"bucket": bucket_name})
        return
    if current > max_requests:
        logger.warning("rate_limit.exceeded", extra={"bucket": bucket_name, "count": current})
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"rate limit exceeded for {bucket_name}",
            headers={"Retry-After": str(remaining)},
        )
