from __future__ import annotations

from redis import Redis

from .settings import settings


def get_redis_client() -> Redis:
    # Short socket timeouts: rate limiting must never stall a request.
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_timeout_seconds,
        socket_connect_timeout=settings.redis_timeout_seconds,
    )
