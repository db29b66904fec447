"""Async Redis client for the conversation-history store."""

from __future__ import annotations

from redis.asyncio import ConnectionPool, Redis

from .config import settings

_pools: dict[str, ConnectionPool] = {}


def get_redis_client(url: str | None = None) -> Redis:
    """Get an async Redis client from a pool shared per URL."""
    redis_url = url or settings.redis_url
    pool = _pools.get(redis_url)
    if pool is None:
        pool = ConnectionPool.from_url(redis_url, max_connections=20, decode_responses=True)
        _pools[redis_url] = pool
    return Redis(connection_pool=pool)
