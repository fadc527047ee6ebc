"""JSON document codecs for the domain dataclasses.

pydantic's TypeAdapter validates and serializes the frozen dataclasses
directly (nested records, tuples, frozensets, enums, datetimes), so the
persistence layer needs no hand-written to_dict/from_dict pairs.

The revision lives in its own column; the copy inside the JSON document
is ignored on load.
"""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import TypeAdapter
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from courseflow.core.errors import StaleWriteError
from courseflow.models.certificate import Certificate
from courseflow.models.course import Course, CourseVersion
from courseflow.models.enrollment import Enrollment
from courseflow.models.progress import Progress

T = TypeVar("T")

COURSE = TypeAdapter(Course)
COURSE_VERSION = TypeAdapter(CourseVersion)
PROGRESS = TypeAdapter(Progress)
ENROLLMENT = TypeAdapter(Enrollment)
CERTIFICATE = TypeAdapter(Certificate)


def to_document(adapter: TypeAdapter[T], value: T) -> dict[str, Any]:
    return adapter.dump_python(value, mode="json")


def from_document(adapter: TypeAdapter[T], doc: dict[str, Any]) -> T:
    return adapter.validate_python(doc)


async def compare_and_swap(
    session: AsyncSession,
    table: type[Any],
    row_id: str,
    expected_revision: int,
    **values: Any,
) -> None:
    """UPDATE ... WHERE id = :id AND revision = :expected, then commit.

    Zero matched rows means another writer got there first.
    """
    stmt = (
        update(table)
        .where(table.id == row_id, table.revision == expected_revision)
        .values(revision=expected_revision + 1, **values)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        await session.rollback()
        raise StaleWriteError(
            f"{table.__tablename__} {row_id} changed since revision {expected_revision}"
        )
    await session.commit()
