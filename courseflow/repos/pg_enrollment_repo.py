"""PostgreSQL implementation of EnrollmentRepo."""

from __future__ import annotations

from dataclasses import replace

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseflow.core.errors import StaleWriteError
from courseflow.db.documents import ENROLLMENT, compare_and_swap, from_document, to_document
from courseflow.db.tables import EnrollmentRow
from courseflow.models.enrollment import Enrollment


class PgEnrollmentRepo:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def get(self, enrollment_id: str) -> Enrollment | None:
        async with self._sessions() as session:
            row = await session.get(EnrollmentRow, enrollment_id)
        if row is None:
            return None
        return _row_to_enrollment(row)

    async def get_by_user_and_course(
        self, user_id: str, course_id: str
    ) -> Enrollment | None:
        stmt = select(EnrollmentRow).where(
            EnrollmentRow.user_id == user_id, EnrollmentRow.course_id == course_id
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_enrollment(row)

    async def add(self, enrollment: Enrollment) -> Enrollment:
        stored = replace(enrollment, revision=1)
        async with self._sessions() as session:
            session.add(
                EnrollmentRow(
                    id=stored.id,
                    user_id=stored.user_id,
                    course_id=stored.course_id,
                    revision=1,
                    doc=to_document(ENROLLMENT, stored),
                )
            )
            try:
                await session.commit()
            except IntegrityError as e:
                raise StaleWriteError(
                    f"user={enrollment.user_id} already enrolled in "
                    f"course={enrollment.course_id}"
                ) from e
        return stored

    async def save(self, enrollment: Enrollment) -> Enrollment:
        stored = replace(enrollment, revision=enrollment.revision + 1)
        async with self._sessions() as session:
            await compare_and_swap(
                session,
                EnrollmentRow,
                enrollment.id,
                enrollment.revision,
                doc=to_document(ENROLLMENT, stored),
            )
        return stored

    async def list_by_course(self, course_id: str) -> list[Enrollment]:
        stmt = select(EnrollmentRow).where(EnrollmentRow.course_id == course_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_enrollment(row) for row in rows]


def _row_to_enrollment(row: EnrollmentRow) -> Enrollment:
    return replace(from_document(ENROLLMENT, row.doc), revision=row.revision)
