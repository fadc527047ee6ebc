from __future__ import annotations

from dataclasses import replace
from typing import Protocol

from courseflow.core.errors import StaleWriteError
from courseflow.models.enrollment import Enrollment


class EnrollmentRepo(Protocol):
    async def get(self, enrollment_id: str) -> Enrollment | None: ...
    async def get_by_user_and_course(
        self, user_id: str, course_id: str
    ) -> Enrollment | None: ...
    async def add(self, enrollment: Enrollment) -> Enrollment: ...
    async def save(self, enrollment: Enrollment) -> Enrollment: ...
    async def list_by_course(self, course_id: str) -> list[Enrollment]: ...


class InMemoryEnrollmentRepo:
    def __init__(self) -> None:
        self._store: dict[str, Enrollment] = {}
        self._by_pair: dict[tuple[str, str], str] = {}

    async def get(self, enrollment_id: str) -> Enrollment | None:
        return self._store.get(enrollment_id)

    async def get_by_user_and_course(
        self, user_id: str, course_id: str
    ) -> Enrollment | None:
        enrollment_id = self._by_pair.get((user_id, course_id))
        if enrollment_id is None:
            return None
        return self._store.get(enrollment_id)

    async def add(self, enrollment: Enrollment) -> Enrollment:
        pair = (enrollment.user_id, enrollment.course_id)
        if pair in self._by_pair:
            raise StaleWriteError(
                f"user={enrollment.user_id} already enrolled in "
                f"course={enrollment.course_id}"
            )
        stored = replace(enrollment, revision=1)
        self._store[stored.id] = stored
        self._by_pair[pair] = stored.id
        return stored

    async def save(self, enrollment: Enrollment) -> Enrollment:
        current = self._store.get(enrollment.id)
        if current is None or current.revision != enrollment.revision:
            raise StaleWriteError(
                f"enrollment {enrollment.id} changed since it was read"
            )
        stored = replace(enrollment, revision=enrollment.revision + 1)
        self._store[stored.id] = stored
        return stored

    async def list_by_course(self, course_id: str) -> list[Enrollment]:
        return [e for e in self._store.values() if e.course_id == course_id]
