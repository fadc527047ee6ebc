"""Redis connection management.

Mirrors engine.py: when REDIS_URL is configured we create a real
connection pool; when it's None (local dev, tests) the task queue falls
back to its in-memory implementation and no Redis server is needed.

Redis only carries fire-and-forget collaborator events here
(notifications, certificate follow-ups).  Course and progress documents
never live in Redis: they need the durable, revision-checked store.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from courseflow.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,  # return str instead of bytes
        max_connections=20,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for Redis; mirrors lifespan_db()."""
    if redis_pool is None:
        logger.info("No REDIS_URL configured; task queue is in-memory")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
        logger.info("Redis connected: %s", SETTINGS.redis_url)
    except Exception:
        # Keep serving: a missed notification must not take the API down.
        logger.exception("Redis connection failed on startup")
        yield
        return

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
