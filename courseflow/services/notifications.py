"""Fire-and-forget notification collaborator.

The lifecycle and progress engines call ``notify`` after their write has
already been stored.  A failure here must never roll that write back, so
enqueue errors are logged and swallowed.  Rendering and delivery of the
message (email, in-app) is the worker's concern.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from courseflow.services.task_queue import NOTIFICATIONS_QUEUE, TaskQueue

logger = logging.getLogger(__name__)

ADMINS = "role:admin"


class Notifier:
    def __init__(self, queue: TaskQueue) -> None:
        self._queue = queue

    async def notify(self, recipient: str, kind: str, payload: dict) -> None:
        message = {
            "recipient": recipient,
            "kind": kind,
            "payload": payload,
            "created_at": datetime.now(UTC).isoformat(),
        }
        try:
            task = await self._queue.enqueue(NOTIFICATIONS_QUEUE, message)
        except Exception:
            logger.exception(
                "Failed to enqueue notification kind=%s recipient=%s",
                kind,
                recipient,
            )
            return
        logger.debug(
            "Notification queued task=%s kind=%s recipient=%s",
            task.id,
            kind,
            recipient,
        )

    async def notify_admins(self, kind: str, payload: dict) -> None:
        """Broadcast to the admin group; the worker fans it out."""
        await self.notify(ADMINS, kind, payload)
