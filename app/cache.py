"""
Vettly — Shared Redis client

Opened once in the application lifespan and handed to services that cache
(currently the active weekly tip).
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
import structlog

from app.config import get_settings

logger = structlog.get_logger("vettly.cache")

_redis_client: Any | None = None


async def connect_redis() -> None:
    global _redis_client

    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis_connected", url=settings.REDIS_URL)


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("redis_closed")


def get_redis() -> Any | None:
    """Return the shared Redis client, or ``None`` before startup."""
    return _redis_client
