"""PostgreSQL implementation of CourseRepo."""

from __future__ import annotations

from dataclasses import replace

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseflow.core.errors import StaleWriteError
from courseflow.db.documents import (
    COURSE,
    COURSE_VERSION,
    compare_and_swap,
    from_document,
    to_document,
)
from courseflow.db.tables import CourseRow, CourseVersionRow
from courseflow.models.course import Course, CourseStatus, CourseVersion


class PgCourseRepo:
    """Satisfies the CourseRepo Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def get(self, course_id: str) -> Course | None:
        async with self._sessions() as session:
            row = await session.get(CourseRow, course_id)
        if row is None:
            return None
        return _row_to_course(row)

    async def add(self, course: Course) -> Course:
        stored = replace(course, revision=1)
        async with self._sessions() as session:
            session.add(
                CourseRow(
                    id=stored.id,
                    instructor_id=stored.instructor_id,
                    status=stored.status.value,
                    revision=1,
                    doc=to_document(COURSE, stored),
                )
            )
            try:
                await session.commit()
            except IntegrityError as e:
                raise StaleWriteError(f"course {course.id} already exists") from e
        return stored

    async def save(self, course: Course) -> Course:
        stored = replace(course, revision=course.revision + 1)
        async with self._sessions() as session:
            await compare_and_swap(
                session,
                CourseRow,
                course.id,
                course.revision,
                status=stored.status.value,
                doc=to_document(COURSE, stored),
            )
        return stored

    async def list_by_status(self, status: CourseStatus) -> list[Course]:
        stmt = select(CourseRow).where(CourseRow.status == status.value)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_course(row) for row in rows]

    async def add_version(self, version: CourseVersion) -> None:
        async with self._sessions() as session:
            session.add(
                CourseVersionRow(
                    id=version.id,
                    course_id=version.course_id,
                    version=version.version,
                    doc=to_document(COURSE_VERSION, version),
                )
            )
            await session.commit()

    async def list_versions(self, course_id: str) -> list[CourseVersion]:
        stmt = select(CourseVersionRow).where(CourseVersionRow.course_id == course_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        versions = [from_document(COURSE_VERSION, row.doc) for row in rows]
        return sorted(versions, key=lambda v: v.created_at)


def _row_to_course(row: CourseRow) -> Course:
    return replace(from_document(COURSE, row.doc), revision=row.revision)
