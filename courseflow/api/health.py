"""Health and readiness endpoints.

  /health  liveness plus dependency status.  Always 200; the ``status``
           field says "degraded" when a backing service is unreachable.
  /ready   readiness.  503 only when the database is configured but
           unreachable: without it no document can be read or written.
           Redis is not critical, notifications are fire-and-forget.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response, status
from sqlalchemy import text

from courseflow.db.engine import engine
from courseflow.db.redis import redis_pool
from courseflow.services.task_queue import NOTIFICATIONS_QUEUE, task_queue

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _check_database() -> str:
    if engine is None:
        return "not_configured"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database health check failed")
        return "degraded"
    return "ok"


async def _check_redis() -> str:
    if redis_pool is None:
        return "not_configured"
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except Exception:
        logger.exception("Redis health check failed")
        return "degraded"
    return "ok"


@router.get("/health")
async def health() -> dict:
    checks = {
        "database": await _check_database(),
        "redis": await _check_redis(),
    }
    overall = "degraded" if "degraded" in checks.values() else "ok"

    queues: dict[str, int] = {}
    if checks["redis"] != "degraded":
        queues[NOTIFICATIONS_QUEUE] = await task_queue.queue_length(NOTIFICATIONS_QUEUE)

    return {"status": overall, "checks": checks, "queues": queues}


@router.get("/ready")
async def ready() -> Response:
    if await _check_database() == "degraded":
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)
