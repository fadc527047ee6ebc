"""Revision semantics shared by the in-memory and PostgreSQL repositories."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from courseflow.core.errors import StaleWriteError
from courseflow.models.enrollment import Enrollment
from courseflow.models.progress import Progress
from courseflow.repos.course_repo import InMemoryCourseRepo
from courseflow.repos.enrollment_repo import InMemoryEnrollmentRepo
from courseflow.repos.progress_repo import InMemoryProgressRepo
from tests.conftest import T0, make_course


def test_add_assigns_first_revision() -> None:
    repo = InMemoryCourseRepo()
    stored = asyncio.run(repo.add(make_course()))
    assert stored.revision == 1


def test_save_bumps_revision() -> None:
    repo = InMemoryCourseRepo()
    stored = asyncio.run(repo.add(make_course()))
    saved = asyncio.run(repo.save(replace(stored, title="Intro to Networking, 2nd ed.")))
    assert saved.revision == 2
    assert asyncio.run(repo.get("course-1")).title == "Intro to Networking, 2nd ed."


def test_save_from_stale_copy_is_rejected() -> None:
    repo = InMemoryCourseRepo()
    stale = asyncio.run(repo.add(make_course()))
    asyncio.run(repo.save(replace(stale, title="First writer wins")))

    with pytest.raises(StaleWriteError):
        asyncio.run(repo.save(replace(stale, title="Second writer loses")))
    assert asyncio.run(repo.get("course-1")).title == "First writer wins"


def test_duplicate_course_is_rejected() -> None:
    repo = InMemoryCourseRepo()
    asyncio.run(repo.add(make_course()))
    with pytest.raises(StaleWriteError):
        asyncio.run(repo.add(make_course()))


def test_one_progress_document_per_learner_and_course() -> None:
    repo = InMemoryProgressRepo()
    asyncio.run(repo.add(Progress.new(user_id="u1", course_id="c1", now=T0)))
    with pytest.raises(StaleWriteError):
        asyncio.run(repo.add(Progress.new(user_id="u1", course_id="c1", now=T0)))

    asyncio.run(repo.add(Progress.new(user_id="u1", course_id="c2", now=T0)))
    assert len(asyncio.run(repo.list_by_user("u1"))) == 2
    assert len(asyncio.run(repo.list_by_course("c1"))) == 1


def test_one_enrollment_per_learner_and_course() -> None:
    repo = InMemoryEnrollmentRepo()
    first = asyncio.run(
        repo.add(Enrollment.new(user_id="u1", course_id="c1", enrolled_at=T0))
    )
    with pytest.raises(StaleWriteError):
        asyncio.run(repo.add(Enrollment.new(user_id="u1", course_id="c1", enrolled_at=T0)))
    assert asyncio.run(repo.get_by_user_and_course("u1", "c1")) == first
