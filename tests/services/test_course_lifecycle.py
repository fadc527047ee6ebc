"""CourseLifecycle tests: transitions, role checks, history and notifications."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import replace

import pytest

from courseflow.core.config import SETTINGS
from courseflow.core.errors import (
    ConflictingWrite,
    InvalidTransition,
    NotFound,
    StaleWriteError,
    Unauthorized,
    ValidationFailed,
)
from courseflow.models.course import CourseStatus, ReviewCriteria
from courseflow.repos.course_repo import InMemoryCourseRepo
from courseflow.services.course_lifecycle import (
    VALID_TRANSITIONS,
    CourseDraft,
    CourseLifecycle,
    CourseUpdate,
    ReviewInput,
    is_valid_transition,
)
from courseflow.services.notifications import ADMINS, Notifier
from courseflow.services.task_queue import NOTIFICATIONS_QUEUE, InMemoryTaskQueue
from tests.conftest import FakeClock, make_course, make_sections, principal

S = CourseStatus

INSTRUCTOR = principal("test-instructor", "instructor", name="Ian Instructor")
OTHER_INSTRUCTOR = principal("someone-else", "instructor")
ADMIN = principal("test-admin", "admin", name="Ada Admin")
LEARNER = principal("learner-1")


class Harness:
    def __init__(self) -> None:
        self.repo = InMemoryCourseRepo()
        self.queue = InMemoryTaskQueue()
        self.clock = FakeClock()
        self.lifecycle = CourseLifecycle(self.repo, Notifier(self.queue), clock=self.clock)

    def run(self, coro):
        return asyncio.run(coro)

    def seed(self, **kwargs):
        return self.run(self.repo.add(make_course(**kwargs)))

    def notifications(self) -> list[dict]:
        return [t.payload for t in self.queue._queues.get(NOTIFICATIONS_QUEUE, [])]


@pytest.fixture
def h() -> Harness:
    return Harness()


# ---- transition table ----


def test_transition_table_matches_workflow() -> None:
    assert is_valid_transition(S.DRAFT, S.SUBMITTED)
    assert is_valid_transition(S.UNDER_REVIEW, S.APPROVED)
    assert is_valid_transition(S.SUSPENDED, S.ARCHIVED)
    assert not is_valid_transition(S.DRAFT, S.PUBLISHED)
    assert not is_valid_transition(S.PUBLISHED, S.DRAFT)
    assert not is_valid_transition(S.ARCHIVED, S.SUSPENDED)
    assert set(VALID_TRANSITIONS) == set(CourseStatus)


_ILLEGAL = [
    (a, b)
    for a, b in itertools.product(CourseStatus, CourseStatus)
    if b not in VALID_TRANSITIONS[a]
]
_LEGAL = [
    (a, b)
    for a, b in itertools.product(CourseStatus, CourseStatus)
    if b in VALID_TRANSITIONS[a]
]


def _pair_id(pair: tuple[CourseStatus, CourseStatus]) -> str:
    return f"{pair[0].value}->{pair[1].value}"


@pytest.mark.parametrize(
    "from_status,to_status", _ILLEGAL, ids=[_pair_id(p) for p in _ILLEGAL]
)
def test_illegal_transition_leaves_course_untouched(
    h: Harness, from_status: CourseStatus, to_status: CourseStatus
) -> None:
    stored = h.seed(status=from_status)

    def build(course, now):
        return h.lifecycle._transition(course, to_status, "move", ADMIN, now, None)

    with pytest.raises(InvalidTransition) as exc_info:
        h.run(h.lifecycle._mutate("course-1", build))

    assert exc_info.value.from_status == from_status.value
    assert exc_info.value.to_status == to_status.value
    after = h.run(h.lifecycle.get("course-1"))
    assert after.status == from_status
    assert after.workflow_history == stored.workflow_history
    assert after.revision == stored.revision


@pytest.mark.parametrize(
    "from_status,to_status", _LEGAL, ids=[_pair_id(p) for p in _LEGAL]
)
def test_legal_transition_appends_one_history_entry(
    h: Harness, from_status: CourseStatus, to_status: CourseStatus
) -> None:
    stored = h.seed(status=from_status)

    def build(course, now):
        return h.lifecycle._transition(course, to_status, "move", ADMIN, now, None)

    after = h.run(h.lifecycle._mutate("course-1", build))

    assert after.status == to_status
    assert after.workflow_history[:-1] == stored.workflow_history
    last = after.workflow_history[-1]
    assert (last.from_status, last.to_status) == (from_status, to_status)


# ---- create ----


def test_create_starts_in_draft_with_history(h: Harness) -> None:
    course = h.run(
        h.lifecycle.create(
            CourseDraft(title="Intro", description="short", sections=make_sections()),
            INSTRUCTOR,
        )
    )
    assert course.status == S.DRAFT
    assert course.instructor_id == "test-instructor"
    assert course.instructor_name == "Ian Instructor"
    assert course.category == "general-it"
    assert course.level == "beginner"
    assert course.version == "1.0.0"
    assert len(course.workflow_history) == 1
    entry = course.workflow_history[0]
    assert (entry.action, entry.from_status, entry.to_status) == ("create", S.DRAFT, S.DRAFT)
    # Invalid drafts are stored; the validation result is only recorded.
    assert course.validation_result is not None
    assert not course.validation_result.is_valid


# ---- submit ----


def test_submit_valid_course(h: Harness) -> None:
    h.seed()
    course = h.run(h.lifecycle.submit("course-1", INSTRUCTOR))

    assert course.status == S.SUBMITTED
    assert course.submitted_at == h.clock.now
    assert course.validation_result is not None and course.validation_result.is_valid
    assert course.quality_score == 100
    last = course.workflow_history[-1]
    assert (last.action, last.from_status, last.to_status) == ("submit", S.DRAFT, S.SUBMITTED)
    assert last.performed_by == "test-instructor"
    assert last.performed_by_role == "instructor"

    [note] = h.notifications()
    assert note["recipient"] == ADMINS
    assert note["kind"] == "course_submitted"
    assert note["payload"]["course_id"] == "course-1"


def test_submit_invalid_course_reports_every_error(h: Harness) -> None:
    h.seed(title="", description="", sections=())
    with pytest.raises(ValidationFailed) as exc_info:
        h.run(h.lifecycle.submit("course-1", INSTRUCTOR))

    assert exc_info.value.errors == [
        "Title must be at least 3 characters long",
        "Description must be at least 20 characters long",
        "Course must have at least one section",
    ]
    stored = h.run(h.lifecycle.get("course-1"))
    assert stored.status == S.DRAFT
    assert h.notifications() == []


def test_submit_someone_elses_course_is_unauthorized(h: Harness) -> None:
    h.seed()
    with pytest.raises(Unauthorized):
        h.run(h.lifecycle.submit("course-1", OTHER_INSTRUCTOR))


def test_admin_may_submit_any_course(h: Harness) -> None:
    h.seed()
    course = h.run(h.lifecycle.submit("course-1", ADMIN))
    assert course.workflow_history[-1].performed_by_role == "admin"


def test_submit_published_course_is_invalid_transition(h: Harness) -> None:
    h.seed(status=S.PUBLISHED)
    with pytest.raises(InvalidTransition) as exc_info:
        h.run(h.lifecycle.submit("course-1", INSTRUCTOR))
    assert exc_info.value.from_status == "published"
    assert exc_info.value.to_status == "submitted"
    assert str(exc_info.value) == "Invalid state transition from published to submitted"


def test_unknown_course_is_not_found(h: Harness) -> None:
    with pytest.raises(NotFound):
        h.run(h.lifecycle.submit("missing", INSTRUCTOR))


# ---- review ----


def test_only_admins_start_reviews(h: Harness) -> None:
    h.seed(status=S.SUBMITTED)
    with pytest.raises(Unauthorized):
        h.run(h.lifecycle.start_review("course-1", INSTRUCTOR))

    course = h.run(h.lifecycle.start_review("course-1", ADMIN))
    assert course.status == S.UNDER_REVIEW
    assert course.review_started_at == h.clock.now
    [note] = h.notifications()
    assert note["recipient"] == "test-instructor"
    assert note["kind"] == "course_review_started"


def test_approve_publishes_and_records_both_steps(h: Harness) -> None:
    h.seed(status=S.UNDER_REVIEW)
    before = len(h.run(h.lifecycle.history("course-1")))

    course = h.run(h.lifecycle.approve("course-1", ADMIN))

    assert course.status == S.PUBLISHED
    assert course.approved_at == h.clock.now
    assert course.published_at == h.clock.now
    assert course.quality_score == 85
    history = course.workflow_history
    assert len(history) == before + 2
    assert [(e.action, e.from_status, e.to_status) for e in history[-2:]] == [
        ("approve", S.UNDER_REVIEW, S.APPROVED),
        ("publish", S.APPROVED, S.PUBLISHED),
    ]
    feedback = course.approval_feedback
    assert feedback is not None
    assert feedback.status == "approved"
    assert feedback.reviewer_name == "Ada Admin"
    assert feedback.strengths == ("Well-structured content",)
    assert feedback.criteria == ReviewCriteria.uniform(85)
    assert h.notifications()[-1]["kind"] == "course_approved"


def test_approve_uses_reviewer_scores(h: Harness) -> None:
    h.seed(status=S.SUBMITTED)
    course = h.run(
        h.lifecycle.approve(
            "course-1",
            ADMIN,
            ReviewInput(overall_score=92, strengths=("Clear examples",)),
        )
    )
    assert course.quality_score == 92
    assert course.approval_feedback is not None
    assert course.approval_feedback.strengths == ("Clear examples",)


def test_approve_draft_is_invalid_transition(h: Harness) -> None:
    h.seed()
    with pytest.raises(InvalidTransition):
        h.run(h.lifecycle.approve("course-1", ADMIN))


def test_non_admin_cannot_approve(h: Harness) -> None:
    h.seed(status=S.UNDER_REVIEW)
    with pytest.raises(Unauthorized):
        h.run(h.lifecycle.approve("course-1", INSTRUCTOR))


def test_reject_records_reason_and_default_feedback(h: Harness) -> None:
    h.seed(status=S.UNDER_REVIEW)
    course = h.run(h.lifecycle.reject("course-1", ADMIN, "Needs more depth"))

    assert course.status == S.REJECTED
    assert course.rejection_reason == "Needs more depth"
    assert course.rejected_at == h.clock.now
    assert course.quality_score == 40
    assert course.approval_feedback is not None
    assert course.approval_feedback.improvements == ("Needs significant improvement",)
    assert course.workflow_history[-1].reason == "Needs more depth"
    note = h.notifications()[-1]
    assert note["kind"] == "course_rejected"
    assert note["payload"]["reason"] == "Needs more depth"


# ---- rework after rejection ----


def test_rejected_course_can_be_edited_withdrawn_and_resubmitted(h: Harness) -> None:
    h.seed(status=S.REJECTED)

    edited = h.run(
        h.lifecycle.update_content(
            "course-1", INSTRUCTOR, CourseUpdate(title="Intro to Networking, revised")
        )
    )
    assert edited.title == "Intro to Networking, revised"
    assert edited.status == S.REJECTED
    assert edited.workflow_history[-1].action == "update"

    drafted = h.run(h.lifecycle.withdraw("course-1", INSTRUCTOR))
    assert drafted.status == S.DRAFT

    submitted = h.run(h.lifecycle.submit("course-1", INSTRUCTOR))
    assert submitted.status == S.SUBMITTED


def test_content_is_locked_while_under_review(h: Harness) -> None:
    h.seed(status=S.UNDER_REVIEW)
    with pytest.raises(InvalidTransition):
        h.run(h.lifecycle.update_content("course-1", INSTRUCTOR, CourseUpdate(title="New")))


def test_update_revalidates_content(h: Harness) -> None:
    h.seed()
    course = h.run(
        h.lifecycle.update_content("course-1", INSTRUCTOR, CourseUpdate(description="tiny"))
    )
    assert course.validation_result is not None
    assert not course.validation_result.is_valid
    assert course.quality_score == 85


# ---- publishing and after ----


def test_publish_from_approved_snapshots_version(h: Harness) -> None:
    h.seed(status=S.APPROVED)
    course = h.run(h.lifecycle.publish("course-1", ADMIN))

    assert course.status == S.PUBLISHED
    [version] = h.run(h.lifecycle.versions("course-1"))
    assert version.version == "1.0.0"
    assert version.snapshot.status == S.APPROVED
    assert version.created_by == "test-admin"


def test_publish_from_draft_is_invalid_transition(h: Harness) -> None:
    h.seed()
    with pytest.raises(InvalidTransition):
        h.run(h.lifecycle.publish("course-1", ADMIN))
    assert h.run(h.lifecycle.versions("course-1")) == []


class _BrokenVersionRepo(InMemoryCourseRepo):
    async def add_version(self, version):
        raise RuntimeError("version store down")


def test_failed_snapshot_leaves_course_approved() -> None:
    repo = _BrokenVersionRepo()
    stored = asyncio.run(repo.add(make_course(status=S.APPROVED)))
    lifecycle = CourseLifecycle(repo, Notifier(InMemoryTaskQueue()))

    with pytest.raises(RuntimeError):
        asyncio.run(lifecycle.publish("course-1", ADMIN))

    course = asyncio.run(repo.get("course-1"))
    assert course.status == S.APPROVED
    assert course.published_at is None
    assert course.revision == stored.revision


def test_owner_archives_and_admin_reinstates(h: Harness) -> None:
    h.seed(status=S.PUBLISHED)
    archived = h.run(h.lifecycle.archive("course-1", INSTRUCTOR, "Outdated"))
    assert archived.status == S.ARCHIVED
    assert archived.archived_at == h.clock.now

    with pytest.raises(Unauthorized):
        h.run(h.lifecycle.reinstate("course-1", INSTRUCTOR))
    reinstated = h.run(h.lifecycle.reinstate("course-1", ADMIN))
    assert reinstated.status == S.PUBLISHED


def test_suspend_is_admin_only(h: Harness) -> None:
    h.seed(status=S.PUBLISHED)
    with pytest.raises(Unauthorized):
        h.run(h.lifecycle.suspend("course-1", INSTRUCTOR, "Policy"))
    course = h.run(h.lifecycle.suspend("course-1", ADMIN, "Policy"))
    assert course.status == S.SUSPENDED
    assert course.suspended_at == h.clock.now


def test_archive_draft_is_invalid_transition(h: Harness) -> None:
    h.seed()
    with pytest.raises(InvalidTransition):
        h.run(h.lifecycle.archive("course-1", INSTRUCTOR, "Never mind"))


# ---- history ----


def test_history_is_append_only(h: Harness) -> None:
    h.seed()
    first = h.run(h.lifecycle.submit("course-1", INSTRUCTOR)).workflow_history
    h.clock.advance(minutes=5)
    second = h.run(h.lifecycle.start_review("course-1", ADMIN)).workflow_history

    assert second[: len(first)] == first
    assert len(second) == len(first) + 1


def test_failed_transition_leaves_history_untouched(h: Harness) -> None:
    h.seed()
    with pytest.raises(InvalidTransition):
        h.run(h.lifecycle.approve("course-1", ADMIN))
    assert h.run(h.lifecycle.history("course-1")) == ()


# ---- queries ----


def test_review_queue_orders_by_submission_time(h: Harness) -> None:
    h.seed(course_id="a")
    h.seed(course_id="b")
    h.run(h.lifecycle.submit("a", INSTRUCTOR))
    h.clock.advance(hours=1)
    h.run(h.lifecycle.submit("b", INSTRUCTOR))

    queue = h.run(h.lifecycle.list_by_status(S.SUBMITTED))
    assert [c.id for c in queue] == ["b", "a"]


# ---- concurrency ----


class _AlwaysStaleRepo(InMemoryCourseRepo):
    def __init__(self) -> None:
        super().__init__()
        self.saves = 0

    async def save(self, course):
        self.saves += 1
        raise StaleWriteError("lost the race")


def test_lost_races_surface_as_conflicting_write() -> None:
    repo = _AlwaysStaleRepo()
    asyncio.run(repo.add(make_course()))
    lifecycle = CourseLifecycle(
        repo,
        Notifier(InMemoryTaskQueue()),
        settings=replace(SETTINGS, write_retry_attempts=2),
    )
    with pytest.raises(ConflictingWrite):
        asyncio.run(lifecycle.submit("course-1", INSTRUCTOR))
    assert repo.saves == 2


def test_stale_write_is_retried_against_fresh_copy(h: Harness) -> None:
    stored = h.seed()
    original_save = h.repo.save
    calls = {"n": 0}

    async def flaky_save(course):
        calls["n"] += 1
        if calls["n"] == 1:
            # Another writer bumps the revision first.
            await original_save(replace(stored, short_description="edited elsewhere"))
        return await original_save(course)

    h.repo.save = flaky_save  # type: ignore[method-assign]
    course = h.run(h.lifecycle.submit("course-1", INSTRUCTOR))

    assert course.status == S.SUBMITTED
    assert course.short_description == "edited elsewhere"
    assert calls["n"] == 2
