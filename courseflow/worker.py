"""Background worker process.

RUN:  python -m courseflow.worker

Consumes collaborator events that the engines enqueue but never wait
for.  Today that is the ``notifications`` queue: workflow events for
instructors (review started, approved, rejected) and for the admin
review pool (course submitted).  Delivery itself (email, in-app inbox)
belongs to the notification service; the worker hands each event over
and logs the outcome.

Same image, different command:
  api:    uvicorn courseflow.main:app --host 0.0.0.0 --port 8000
  worker: python -m courseflow.worker
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from courseflow.core.config import SETTINGS
from courseflow.core.logging import setup_logging
from courseflow.services.notifications import ADMINS
from courseflow.services.task_queue import NOTIFICATIONS_QUEUE, Task, task_queue

TaskHandler = Callable[[dict], Coroutine[Any, Any, None]]

logger = logging.getLogger("courseflow.worker")


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


# ---------------------------------------------------------------------------
# Task handlers
# ---------------------------------------------------------------------------


@register_handler(NOTIFICATIONS_QUEUE)
async def handle_notification(payload: dict) -> None:
    recipient = payload.get("recipient")
    kind = payload.get("kind")
    if not recipient or not kind:
        raise ValueError(f"malformed notification payload: {payload!r}")

    audience = "admin pool" if recipient == ADMINS else f"user={recipient}"
    logger.info(
        "Delivering notification kind=%s to %s course=%s",
        kind,
        audience,
        payload.get("payload", {}).get("course_id"),
    )


# ---------------------------------------------------------------------------
# Main worker loop
# ---------------------------------------------------------------------------


async def process_task(queue_name: str, task: Task) -> bool:
    """Run one task through its handler; False when the handler failed."""
    handler = HANDLERS[queue_name]
    try:
        await handler(task.payload)
    except Exception:
        # No dead-letter queue yet: the failure is logged and the task dropped.
        logger.exception("Task %s on [%s] failed", task.id, queue_name)
        return False
    logger.info("Task %s on [%s] completed", task.id, queue_name)
    return True


async def run_worker() -> None:
    """Poll all registered queues and dispatch tasks to handlers."""
    queues = list(HANDLERS.keys())
    logger.info("Worker started, listening on queues: %s", queues)

    while True:
        for queue_name in queues:
            task = await task_queue.dequeue(queue_name, timeout=1)
            if task is None:
                continue
            await process_task(queue_name, task)


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(run_worker())
