from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4


@dataclass(frozen=True, slots=True)
class Enrollment:
    """Learner ↔ course relationship.

    Owned by the enrollment subsystem; the progress engine only writes
    ``progress``, ``status``, ``completed_at`` and ``last_accessed_at``.
    """

    id: str
    user_id: str
    course_id: str
    enrolled_at: datetime
    status: str = "active"  # active|completed|suspended|refunded
    progress: int = 0  # denormalized 0-100, used for listings
    completed_at: datetime | None = None
    last_accessed_at: datetime | None = None
    revision: int = 0

    @staticmethod
    def new(*, user_id: str, course_id: str, enrolled_at: datetime) -> Enrollment:
        return Enrollment(
            id=str(uuid4()),
            user_id=user_id,
            course_id=course_id,
            enrolled_at=enrolled_at,
        )
