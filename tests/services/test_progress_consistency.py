"""ProgressConsistency tests: monotonic updates, repair, merge and enrollment sync."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from courseflow.core.errors import NotFound
from courseflow.models.course import CourseStatus, Lesson, Section
from courseflow.models.enrollment import Enrollment
from courseflow.models.progress import LessonProgress, Progress
from courseflow.repos.certificate_repo import InMemoryCertificateRepo
from courseflow.repos.course_repo import InMemoryCourseRepo
from courseflow.repos.enrollment_repo import InMemoryEnrollmentRepo
from courseflow.repos.progress_repo import InMemoryProgressRepo
from courseflow.services.certificate_service import CertificateService
from courseflow.services.notifications import Notifier
from courseflow.services.progress_consistency import (
    MERGED,
    SERVER_WINS,
    ClientProgressSnapshot,
    LessonUpdate,
    ProgressConsistency,
    merge_lesson_progress,
)
from courseflow.services.progress_store import ProgressStore, QuizSubmission
from courseflow.services.task_queue import NOTIFICATIONS_QUEUE, InMemoryTaskQueue
from tests.conftest import T0, FakeClock, make_course

USER = "learner-1"
COURSE = "course-1"

THREE_LESSONS = (
    Section(
        id="s1",
        title="Only section",
        lessons=(
            Lesson(id="l1", title="One"),
            Lesson(id="l2", title="Two"),
            Lesson(id="l3", title="Three"),
        ),
    ),
)


class Harness:
    def __init__(self, sections=None) -> None:
        self.clock = FakeClock()
        self.courses = InMemoryCourseRepo()
        self.progress = InMemoryProgressRepo()
        self.enrollments = InMemoryEnrollmentRepo()
        self.certificates = InMemoryCertificateRepo()
        self.certificate_service = CertificateService(
            self.certificates, self.enrollments, self.progress, clock=self.clock
        )
        self.queue = InMemoryTaskQueue()
        self.consistency = ProgressConsistency(
            self.progress,
            self.courses,
            self.enrollments,
            self.certificate_service,
            Notifier(self.queue),
            clock=self.clock,
        )
        self.store = ProgressStore(self.progress, self.courses, clock=self.clock)
        self.run(
            self.courses.add(
                make_course(status=CourseStatus.PUBLISHED, sections=sections)
            )
        )

    def run(self, coro):
        return asyncio.run(coro)

    def enroll(self) -> Enrollment:
        return self.run(
            self.enrollments.add(
                Enrollment.new(user_id=USER, course_id=COURSE, enrolled_at=T0)
            )
        )

    def seed_progress(self, **fields) -> Progress:
        progress = replace(Progress.new(user_id=USER, course_id=COURSE, now=T0), **fields)
        return self.run(self.progress.add(progress))

    def enrollment(self) -> Enrollment:
        return self.run(self.enrollments.get_by_user_and_course(USER, COURSE))

    def notifications(self) -> list[dict]:
        messages = []
        while (task := self.run(self.queue.dequeue(NOTIFICATIONS_QUEUE))) is not None:
            messages.append(task.payload)
        return messages


@pytest.fixture
def h() -> Harness:
    return Harness()


def _update(**kwargs) -> LessonUpdate:
    fields = {
        "time_spent": 0.0,
        "current_position": 0.0,
        "percentage_watched": 0.0,
        "is_completed": False,
    }
    fields.update(kwargs)
    return LessonUpdate(**fields)


# ---- update_lesson_progress ----


def test_update_accumulates_time_without_completing(h: Harness) -> None:
    h.run(h.consistency.update_lesson_progress(USER, COURSE, "l1", _update(time_spent=30)))
    result = h.run(
        h.consistency.update_lesson_progress(
            USER, COURSE, "l1", _update(time_spent=45, percentage_watched=50)
        )
    )
    entry = result.progress.lesson_progress["l1"]
    assert not result.preserved
    assert not result.was_completed
    assert entry.time_spent == 75
    assert entry.completed_at is None
    assert result.progress.time_spent == 75
    assert [i.type for i in entry.interactions] == ["progress_update", "progress_update"]


def test_update_completes_at_threshold(h: Harness) -> None:
    result = h.run(
        h.consistency.update_lesson_progress(
            USER, COURSE, "l1", _update(percentage_watched=80)
        )
    )
    assert "l1" in result.progress.completed_lessons
    assert result.progress.overall_progress == 20


def test_completion_is_never_downgraded(h: Harness) -> None:
    done = h.run(
        h.consistency.update_lesson_progress(USER, COURSE, "l1", _update(is_completed=True))
    )
    h.clock.advance(minutes=1)

    result = h.run(
        h.consistency.update_lesson_progress(
            USER, COURSE, "l1", _update(percentage_watched=10, time_spent=5)
        )
    )

    assert result.preserved
    assert result.was_completed
    assert result.progress.revision == done.progress.revision
    assert "l1" in result.progress.completed_lessons
    assert result.progress.lesson_progress["l1"].completed_at == T0


def test_update_unknown_lesson_is_not_found(h: Harness) -> None:
    with pytest.raises(NotFound):
        h.run(h.consistency.update_lesson_progress(USER, COURSE, "ghost", _update()))


def test_update_syncs_enrollment(h: Harness) -> None:
    h.enroll()
    h.run(h.consistency.update_lesson_progress(USER, COURSE, "l1", _update(is_completed=True)))
    assert h.enrollment().progress == 20


# ---- ensure_course_progress_consistency ----


def test_orphans_are_pruned_before_recomputing() -> None:
    h = Harness(sections=THREE_LESSONS)
    h.seed_progress(
        completed_lessons=frozenset({"l1", "l2", "deleted-lesson"}),
        completed_sections=frozenset({"gone"}),
        overall_progress=100,
    )

    report = h.run(h.consistency.ensure_course_progress_consistency(USER, COURSE))

    assert report.was_inconsistent
    assert report.progress.completed_lessons == {"l1", "l2"}
    assert report.progress.completed_sections == frozenset()
    assert report.progress.overall_progress == 67
    assert report.fixes == (
        "Progress percentage corrected: 100% → 67%",
        "Removed 1 orphaned completed lessons",
        "Removed 1 orphaned completed sections",
    )


def test_consistency_check_is_idempotent() -> None:
    h = Harness(sections=THREE_LESSONS)
    h.seed_progress(completed_lessons=frozenset({"l1", "x"}), overall_progress=10)

    first = h.run(h.consistency.ensure_course_progress_consistency(USER, COURSE))
    second = h.run(h.consistency.ensure_course_progress_consistency(USER, COURSE))

    assert first.was_inconsistent
    assert not second.was_inconsistent
    assert second.fixes == ()
    assert second.progress.revision == first.progress.revision


def test_drift_within_tolerance_is_left_alone() -> None:
    h = Harness(sections=THREE_LESSONS)
    # 1 of 3 is 33%; 30% is within the 5-point tolerance.
    h.seed_progress(completed_lessons=frozenset({"l1"}), overall_progress=30)

    report = h.run(h.consistency.ensure_course_progress_consistency(USER, COURSE))

    assert not report.was_inconsistent
    assert report.progress.overall_progress == 30


def test_consistency_creates_missing_progress(h: Harness) -> None:
    report = h.run(h.consistency.ensure_course_progress_consistency(USER, COURSE))
    assert not report.was_inconsistent
    assert report.progress.overall_progress == 0


def test_sweep_checks_every_learner(h: Harness) -> None:
    h.seed_progress(overall_progress=90)
    other = replace(
        Progress.new(user_id="learner-2", course_id=COURSE, now=T0), overall_progress=0
    )
    h.run(h.progress.add(other))

    reports = h.run(h.consistency.sweep_course(COURSE))

    assert len(reports) == 2
    assert sum(r.was_inconsistent for r in reports) == 1


# ---- sync_progress_state ----


def _snapshot(offset: timedelta, **fields) -> ClientProgressSnapshot:
    return ClientProgressSnapshot(last_updated=T0 + offset, **fields)


def test_newer_client_state_is_merged(h: Harness) -> None:
    h.seed_progress(completed_lessons=frozenset({"l1"}), time_spent=100, overall_progress=20)
    h.clock.advance(hours=2)

    result = h.run(
        h.consistency.sync_progress_state(
            USER,
            COURSE,
            _snapshot(
                timedelta(hours=1),
                completed_lessons=frozenset({"l2"}),
                time_spent=60,
            ),
        )
    )

    assert result.resolution == MERGED
    assert result.progress.completed_lessons == {"l1", "l2"}
    assert result.progress.time_spent == 100
    assert result.progress.last_updated == h.clock.now
    assert result.progress.overall_progress == 40


def test_merged_overall_progress_comes_from_course_structure(h: Harness) -> None:
    h.enroll()
    h.seed_progress(completed_lessons=frozenset({"l1"}), overall_progress=20)

    result = h.run(
        h.consistency.sync_progress_state(
            USER,
            COURSE,
            _snapshot(timedelta(hours=1), completed_lessons=frozenset({"l2", "l3"})),
        )
    )

    assert result.resolution == MERGED
    assert result.progress.overall_progress == 60
    assert h.run(h.progress.get(USER, COURSE)).overall_progress == 60
    assert h.enrollment().progress == 60


def test_client_snapshot_cannot_complete_enrollment(h: Harness) -> None:
    h.enroll()
    h.seed_progress(overall_progress=100)

    result = h.run(
        h.consistency.sync_progress_state(
            USER, COURSE, _snapshot(timedelta(hours=1), time_spent=30)
        )
    )

    assert result.resolution == MERGED
    assert result.progress.completed_lessons == frozenset()
    assert result.progress.overall_progress == 0
    assert h.enrollment().status == "active"
    assert h.enrollment().progress == 0
    assert h.run(h.certificate_service.list_for_user(USER)) == []


def test_older_client_state_loses(h: Harness) -> None:
    stored = h.seed_progress(completed_lessons=frozenset({"l1"}), overall_progress=20)

    result = h.run(
        h.consistency.sync_progress_state(
            USER,
            COURSE,
            _snapshot(-timedelta(hours=1), completed_lessons=frozenset({"l2"})),
        )
    )

    assert result.resolution == SERVER_WINS
    assert result.progress == stored
    assert result.conflicts == ()


def test_equal_timestamps_report_conflicts(h: Harness) -> None:
    h.seed_progress(completed_lessons=frozenset({"l1", "l3"}))

    result = h.run(
        h.consistency.sync_progress_state(
            USER,
            COURSE,
            _snapshot(timedelta(0), completed_lessons=frozenset({"l1", "l2"})),
        )
    )

    assert result.resolution == SERVER_WINS
    [conflict] = result.conflicts
    assert conflict.type == "lesson_completion"
    assert conflict.server_only == ("l3",)
    assert conflict.client_only == ("l2",)


def test_naive_client_timestamp_is_treated_as_utc(h: Harness) -> None:
    h.seed_progress()
    h.clock.advance(hours=2)
    naive = (T0 + timedelta(hours=1)).replace(tzinfo=None)

    result = h.run(
        h.consistency.sync_progress_state(
            USER, COURSE, ClientProgressSnapshot(last_updated=naive, time_spent=10)
        )
    )
    assert result.resolution == MERGED


def test_merge_lesson_keeps_most_complete_values() -> None:
    server = LessonProgress(
        started_at=T0,
        completed_at=T0 + timedelta(minutes=5),
        percentage_watched=90,
        time_spent=300,
        last_position=500,
    )
    client = LessonProgress(
        started_at=T0 - timedelta(minutes=1),
        percentage_watched=40,
        time_spent=100,
        last_position=120,
    )

    merged = merge_lesson_progress(server, client)

    assert merged.started_at == T0 - timedelta(minutes=1)
    assert merged.completed_at == T0 + timedelta(minutes=5)
    assert merged.percentage_watched == 90
    assert merged.time_spent == 300
    assert merged.last_position == 120


# ---- recalculate ----


def test_recalculate_without_progress_is_not_found(h: Harness) -> None:
    with pytest.raises(NotFound):
        h.run(h.consistency.recalculate(USER, COURSE))


def test_recalculate_fixes_overall_and_reports_counts(h: Harness) -> None:
    h.seed_progress(completed_lessons=frozenset({"l1", "l2"}), overall_progress=0)

    result = h.run(h.consistency.recalculate(USER, COURSE))

    assert result.progress.overall_progress == 40
    assert result.completed_lessons == 2
    assert result.total_lessons == 5
    assert not result.is_completed


# ---- enrollment sync and certificates ----


def test_small_drift_does_not_touch_enrollment(h: Harness) -> None:
    enrollment = h.enroll()
    h.seed_progress(overall_progress=4)

    result = h.run(h.consistency.sync_enrollment(USER, COURSE))

    assert not result.updated
    assert h.enrollment().revision == enrollment.revision


def test_large_drift_updates_enrollment(h: Harness) -> None:
    h.enroll()
    h.seed_progress(overall_progress=60)

    result = h.run(h.consistency.sync_enrollment(USER, COURSE))

    assert result.updated
    assert h.enrollment().progress == 60
    assert h.enrollment().status == "active"
    assert result.certificate is None


def test_completion_within_tolerance_still_completes_enrollment(h: Harness) -> None:
    h.run(
        h.enrollments.add(
            replace(
                Enrollment.new(user_id=USER, course_id=COURSE, enrolled_at=T0),
                progress=97,
            )
        )
    )
    h.seed_progress(overall_progress=100)

    result = h.run(h.consistency.sync_enrollment(USER, COURSE))

    assert result.updated
    enrollment = h.enrollment()
    assert enrollment.status == "completed"
    assert enrollment.completed_at == h.clock.now
    assert result.certificate is not None


def test_finishing_course_issues_one_certificate(h: Harness) -> None:
    h.enroll()
    h.run(
        h.store.record_quiz_attempt(
            USER,
            COURSE,
            "l5",
            QuizSubmission(score=9, max_score=10, percentage=90, passed=True),
        )
    )
    for lesson in ("l1", "l2", "l3", "l4", "l5"):
        h.run(
            h.consistency.update_lesson_progress(
                USER, COURSE, lesson, _update(is_completed=True)
            )
        )

    enrollment = h.enrollment()
    assert enrollment.status == "completed"
    assert enrollment.progress == 100
    certificate = h.run(h.certificates.get_by_enrollment(enrollment.id))
    assert certificate is not None
    # 90 * 0.7 + 100 * 0.3
    assert certificate.final_grade == 93

    h.run(h.consistency.recalculate(USER, COURSE))
    assert h.run(h.certificate_service.list_for_user(USER)) == [certificate]


def test_certificate_failure_does_not_fail_sync(h: Harness) -> None:
    h.enroll()
    h.seed_progress(overall_progress=100)

    async def broken(*_args, **_kwargs):
        raise RuntimeError("certificate store down")

    h.certificate_service.issue_for_enrollment = broken  # type: ignore[method-assign]
    result = h.run(h.consistency.sync_enrollment(USER, COURSE))

    assert result.updated
    assert result.certificate is None
    assert h.enrollment().status == "completed"


def test_sync_without_enrollment_is_a_no_op(h: Harness) -> None:
    h.seed_progress(overall_progress=50)
    result = h.run(h.consistency.sync_enrollment(USER, COURSE))
    assert result.enrollment is None
    assert not result.updated


# ---- notifications ----


def test_progress_milestones_and_completion_are_queued(h: Harness) -> None:
    h.enroll()
    for lesson in ("l1", "l2", "l3", "l4", "l5"):
        h.run(
            h.consistency.update_lesson_progress(
                USER, COURSE, lesson, _update(is_completed=True)
            )
        )

    messages = h.notifications()

    assert [m["kind"] for m in messages] == [
        "progress_milestone",
        "progress_milestone",
        "progress_milestone",
        "course_completed",
    ]
    assert [m["payload"].get("milestone") for m in messages[:3]] == [25, 50, 75]
    assert all(m["recipient"] == USER for m in messages)
    certificate = h.run(h.certificates.get_by_enrollment(h.enrollment().id))
    assert messages[-1]["payload"]["certificate_id"] == certificate.id


def test_jump_past_several_milestones_sends_one(h: Harness) -> None:
    h.enroll()
    h.seed_progress(completed_lessons=frozenset({"l1", "l2", "l3"}), overall_progress=60)

    h.run(h.consistency.sync_enrollment(USER, COURSE))

    [message] = h.notifications()
    assert message["kind"] == "progress_milestone"
    assert message["payload"]["milestone"] == 50


def test_drift_below_first_milestone_sends_nothing(h: Harness) -> None:
    h.enroll()
    h.seed_progress(overall_progress=20)

    h.run(h.consistency.sync_enrollment(USER, COURSE))

    assert h.enrollment().progress == 20
    assert h.notifications() == []


def test_completion_is_announced_when_certificate_fails(h: Harness) -> None:
    h.enroll()
    h.seed_progress(overall_progress=100)

    async def broken(*_args, **_kwargs):
        raise RuntimeError("certificate store down")

    h.certificate_service.issue_for_enrollment = broken  # type: ignore[method-assign]
    h.run(h.consistency.sync_enrollment(USER, COURSE))

    [message] = h.notifications()
    assert message["kind"] == "course_completed"
    assert "certificate_id" not in message["payload"]
