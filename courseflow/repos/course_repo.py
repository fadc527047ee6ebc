from __future__ import annotations

from dataclasses import replace
from typing import Protocol

from courseflow.core.errors import StaleWriteError
from courseflow.models.course import Course, CourseStatus, CourseVersion


class CourseRepo(Protocol):
    """Course documents plus their published-version snapshots.

    Doubles as the course-structure provider for the progress engine.
    """

    async def get(self, course_id: str) -> Course | None: ...
    async def add(self, course: Course) -> Course: ...
    async def save(self, course: Course) -> Course: ...
    async def list_by_status(self, status: CourseStatus) -> list[Course]: ...
    async def add_version(self, version: CourseVersion) -> None: ...
    async def list_versions(self, course_id: str) -> list[CourseVersion]: ...


class InMemoryCourseRepo:
    def __init__(self) -> None:
        self._store: dict[str, Course] = {}
        self._versions: dict[str, list[CourseVersion]] = {}

    async def get(self, course_id: str) -> Course | None:
        return self._store.get(course_id)

    async def add(self, course: Course) -> Course:
        if course.id in self._store:
            raise StaleWriteError(f"course {course.id} already exists")
        stored = replace(course, revision=1)
        self._store[course.id] = stored
        return stored

    async def save(self, course: Course) -> Course:
        current = self._store.get(course.id)
        if current is None or current.revision != course.revision:
            raise StaleWriteError(f"course {course.id} changed since it was read")
        stored = replace(course, revision=course.revision + 1)
        self._store[course.id] = stored
        return stored

    async def list_by_status(self, status: CourseStatus) -> list[Course]:
        return [c for c in self._store.values() if c.status == status]

    async def add_version(self, version: CourseVersion) -> None:
        self._versions.setdefault(version.course_id, []).append(version)

    async def list_versions(self, course_id: str) -> list[CourseVersion]:
        return list(self._versions.get(course_id, []))
