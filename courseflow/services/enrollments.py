"""Enrollment creation.

Enrollment records belong to the enrollment subsystem; this module only
opens them.  Progress figures on the record are written exclusively by
ProgressConsistency.sync_enrollment.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from courseflow.core.errors import InvalidTransition, NotFound, StaleWriteError
from courseflow.models.course import CourseStatus
from courseflow.models.enrollment import Enrollment
from courseflow.repos.course_repo import CourseRepo
from courseflow.repos.enrollment_repo import EnrollmentRepo

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EnrollmentService:
    def __init__(
        self,
        enrollments: EnrollmentRepo,
        courses: CourseRepo,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._enrollments = enrollments
        self._courses = courses
        self._clock = clock

    async def get(self, user_id: str, course_id: str) -> Enrollment:
        enrollment = await self._enrollments.get_by_user_and_course(user_id, course_id)
        if enrollment is None:
            raise NotFound(f"user {user_id} is not enrolled in course {course_id}")
        return enrollment

    async def enroll(self, user_id: str, course_id: str) -> tuple[Enrollment, bool]:
        """Return ``(enrollment, created)``; an existing enrollment is reused."""
        course = await self._courses.get(course_id)
        if course is None:
            raise NotFound(f"course {course_id} not found")
        if course.status != CourseStatus.PUBLISHED:
            raise InvalidTransition(
                course.status.value,
                "enrolled",
                f"Course {course_id} is {course.status.value}; only published "
                "courses accept enrollments",
            )

        existing = await self._enrollments.get_by_user_and_course(user_id, course_id)
        if existing is not None:
            return existing, False
        try:
            created = await self._enrollments.add(
                Enrollment.new(user_id=user_id, course_id=course_id, enrolled_at=self._clock())
            )
        except StaleWriteError:
            return await self.get(user_id, course_id), False
        logger.info("Enrolled user=%s course=%s", user_id, course_id)
        return created, True
