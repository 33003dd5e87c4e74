"""Redis connection pool and key naming for the sync engine.

The sync queue, the dead-letter set and the webhook event-id cache live in
Redis so they survive restarts and are shared by every worker process.
All keys are namespaced under a configurable prefix: {prefix}:{name}.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.delivery_sync.config import get_settings

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.close()
        _redis_pool = None


def redis_key(prefix: str, *parts: str) -> str:
    """Build a namespaced key: {prefix}:{part}:{part}..."""
    return ":".join((prefix, *parts))
