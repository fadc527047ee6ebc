from __future__ import annotations

import asyncio
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure repo root is on sys.path so `import courseflow` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from courseflow.main import app  # noqa: E402
from courseflow.models.course import Course, CourseStatus, Lesson, Section  # noqa: E402
from courseflow.models.principal import Principal  # noqa: E402
from courseflow.services import container, token_service  # noqa: E402
from courseflow.services.task_queue import task_queue  # noqa: E402

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def reset_repos() -> None:
    """Clear the in-memory repositories behind the API between tests."""
    for repo in (
        container.course_repo,
        container.progress_repo,
        container.enrollment_repo,
        container.certificate_repo,
    ):
        for attr in ("_store", "_versions", "_by_pair", "_by_enrollment"):
            if hasattr(repo, attr):
                getattr(repo, attr).clear()


@pytest.fixture(autouse=True)
def reset_task_queue() -> None:
    """Clear task queues between tests."""
    if hasattr(task_queue, "_queues"):
        task_queue._queues.clear()  # type: ignore[union-attr]


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(
    username: str = "test-user",
    roles: list[str] | None = None,
    name: str = "",
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles, name=name)


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def token() -> str:
    """Token with default role (learner)."""
    return mint_token()


@pytest.fixture
def admin_token() -> str:
    return mint_token(username="test-admin", roles=["admin"], name="Ada Admin")


@pytest.fixture
def instructor_token() -> str:
    return mint_token(username="test-instructor", roles=["instructor"], name="Ian Instructor")


# ---------------------------------------------------------------------------
# Domain helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic clock; advance() moves it forward."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def principal(user_id: str, *roles: str, name: str = "") -> Principal:
    return Principal(user_id=user_id, roles=frozenset(roles or ("learner",)), name=name)


def make_sections() -> tuple[Section, ...]:
    """Two sections, five lessons: one captioned video, one quiz."""
    return (
        Section(
            id="s1",
            title="Getting started",
            lessons=(
                Lesson(
                    id="l1",
                    title="Welcome",
                    type="video",
                    video_url="https://cdn.example.com/l1.mp4",
                    has_captions=True,
                ),
                Lesson(id="l2", title="Setup", type="text"),
            ),
        ),
        Section(
            id="s2",
            title="Core ideas",
            lessons=(
                Lesson(id="l3", title="Concepts", type="text"),
                Lesson(id="l4", title="Practice", type="text"),
                Lesson(id="l5", title="Check yourself", type="quiz"),
            ),
        ),
    )


def make_course(
    course_id: str = "course-1",
    *,
    status: CourseStatus = CourseStatus.DRAFT,
    instructor_id: str = "test-instructor",
    sections: tuple[Section, ...] | None = None,
    **overrides: object,
) -> Course:
    fields: dict[str, object] = {
        "id": course_id,
        "title": "Intro to Networking",
        "description": "Subnets, routing and what happens when you type a URL.",
        "instructor_id": instructor_id,
        "category": "networking",
        "level": "beginner",
        "sections": make_sections() if sections is None else sections,
        "status": status,
        "created_at": T0,
        "updated_at": T0,
    }
    fields.update(overrides)
    return Course(**fields)  # type: ignore[arg-type]


def seed_course(course: Course) -> Course:
    """Store a course in the container's repository (used by API tests)."""
    return asyncio.run(container.course_repo.add(course))
