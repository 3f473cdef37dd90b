"""Shared Redis connection for build records and build output.

Every key the runner writes lives under ``REDIS_PREFIX`` so several runners
can share one Redis database.
"""

from __future__ import annotations

import redis.asyncio as redis

from ci_runner.settings import Settings, get_settings

_client: redis.Redis | None = None


def connect(settings: Settings) -> redis.Redis:
    if not settings.use_fake_redis:
        return redis.from_url(settings.redis_url, decode_responses=True)
    try:
        from fakeredis import aioredis as fakeredis
    except ImportError as exc:
        raise RuntimeError("FAKE_REDIS is set but fakeredis is not installed") from exc
    return fakeredis.FakeRedis(decode_responses=True)


def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = connect(get_settings())
    return _client


async def close_redis() -> None:
    """Close the shared client; the next ``get_redis`` reconnects."""
    global _client
    client, _client = _client, None
    if client is not None:
        await client.aclose()


def reset_redis() -> None:
    global _client
    _client = None


def redis_key(*parts: str) -> str:
    prefix = get_settings().redis_prefix.rstrip(":")
    return ":".join((prefix, *parts)) if prefix else ":".join(parts)
