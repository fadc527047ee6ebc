"""PostgreSQL implementation of ProgressRepo."""

from __future__ import annotations

from dataclasses import replace

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseflow.core.errors import StaleWriteError
from courseflow.db.documents import PROGRESS, compare_and_swap, from_document, to_document
from courseflow.db.tables import ProgressRow
from courseflow.models.progress import Progress


class PgProgressRepo:
    """Satisfies the ProgressRepo Protocol using PostgreSQL via SQLAlchemy.

    The (user_id, course_id) unique constraint turns a concurrent
    first write into an IntegrityError, surfaced as StaleWriteError.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def get(self, user_id: str, course_id: str) -> Progress | None:
        stmt = select(ProgressRow).where(
            ProgressRow.user_id == user_id, ProgressRow.course_id == course_id
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_progress(row)

    async def add(self, progress: Progress) -> Progress:
        stored = replace(progress, revision=1)
        async with self._sessions() as session:
            session.add(
                ProgressRow(
                    id=stored.id,
                    user_id=stored.user_id,
                    course_id=stored.course_id,
                    revision=1,
                    doc=to_document(PROGRESS, stored),
                )
            )
            try:
                await session.commit()
            except IntegrityError as e:
                raise StaleWriteError(
                    f"progress for user={progress.user_id} "
                    f"course={progress.course_id} already exists"
                ) from e
        return stored

    async def save(self, progress: Progress) -> Progress:
        stored = replace(progress, revision=progress.revision + 1)
        async with self._sessions() as session:
            await compare_and_swap(
                session,
                ProgressRow,
                progress.id,
                progress.revision,
                doc=to_document(PROGRESS, stored),
            )
        return stored

    async def list_by_course(self, course_id: str) -> list[Progress]:
        stmt = select(ProgressRow).where(ProgressRow.course_id == course_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_progress(row) for row in rows]

    async def list_by_user(self, user_id: str) -> list[Progress]:
        stmt = select(ProgressRow).where(ProgressRow.user_id == user_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_progress(row) for row in rows]


def _row_to_progress(row: ProgressRow) -> Progress:
    return replace(from_document(PROGRESS, row.doc), revision=row.revision)
