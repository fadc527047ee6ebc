"""Reconciliation of progress documents.

Progress is written from several directions: lesson and video updates,
offline clients pushing their snapshot back, and derived
recomputation.  This service keeps the result coherent:

- regression guard: a completed lesson is never downgraded; the write
  is accepted as a no-op and the caller is told ``preserved=True``
- idempotent lesson update with read-back verification
- consistency sweep: recompute overall progress from the course
  structure and prune completions that point at lessons or sections
  that no longer exist
- client/server merge keyed on ``last_updated``; conflicts are
  reported, never resolved by deleting data
- enrollment sync: the only place that writes ``Enrollment.progress``

Every write re-reads its document inside the retry loop, so a sweep
running next to ordinary learner writes never saves a stale copy.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from courseflow.core.config import SETTINGS, Settings
from courseflow.core.errors import (
    ConflictDetected,
    NotFound,
    PersistenceVerificationFailed,
)
from courseflow.core.metrics import (
    CONSISTENCY_FIXES,
    ENROLLMENT_SYNCS,
    PROGRESS_PRESERVED,
    PROGRESS_WRITES,
)
from courseflow.models.certificate import Certificate
from courseflow.models.course import Course
from courseflow.models.enrollment import Enrollment
from courseflow.models.progress import (
    Interaction,
    LessonProgress,
    Progress,
    calculate_overall_progress,
)
from courseflow.repos.course_repo import CourseRepo
from courseflow.repos.enrollment_repo import EnrollmentRepo
from courseflow.repos.progress_repo import ProgressRepo
from courseflow.services.certificate_service import CertificateService
from courseflow.services.notifications import Notifier
from courseflow.services.progress_store import (
    get_or_create_progress,
    load_course,
    overall_progress_for,
    require_lesson,
)
from courseflow.services.retry import retry_on_stale_write

logger = logging.getLogger(__name__)

MERGED = "merged"
SERVER_WINS = "server_wins"

PROGRESS_MILESTONES = (25, 50, 75)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


@dataclass(frozen=True, slots=True)
class LessonUpdate:
    time_spent: float
    current_position: float
    percentage_watched: float
    is_completed: bool
    interactions: tuple[Interaction, ...] = ()


@dataclass(frozen=True, slots=True)
class LessonUpdateResult:
    progress: Progress
    was_completed: bool
    preserved: bool


@dataclass(frozen=True, slots=True)
class ConsistencyReport:
    progress: Progress
    was_inconsistent: bool
    fixes: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ClientProgressSnapshot:
    """What an offline client believes the progress document looks like."""

    last_updated: datetime
    completed_lessons: frozenset[str] = frozenset()
    completed_sections: frozenset[str] = frozenset()
    time_spent: float = 0.0
    lesson_progress: dict[str, LessonProgress] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SyncResult:
    progress: Progress
    resolution: str  # merged|server_wins
    conflicts: tuple[ConflictDetected, ...] = ()


@dataclass(frozen=True, slots=True)
class EnrollmentSync:
    enrollment: Enrollment | None
    updated: bool
    certificate: Certificate | None = None


@dataclass(frozen=True, slots=True)
class Recalculation:
    progress: Progress
    completed_lessons: int
    total_lessons: int
    is_completed: bool
    enrollment: EnrollmentSync


# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------


def _union(first: Iterable, second: Iterable) -> tuple:
    """Ordered union; items need only support ==."""
    merged = list(first)
    for item in second:
        if item not in merged:
            merged.append(item)
    return tuple(merged)


def _union_by_id(first: tuple, second: tuple) -> tuple:
    seen = {item.id for item in first}
    return first + tuple(item for item in second if item.id not in seen)


def _earliest(*values: datetime | None) -> datetime | None:
    present = [v for v in values if v is not None]
    return min(present) if present else None


def _latest(*values: datetime | None) -> datetime | None:
    present = [v for v in values if v is not None]
    return max(present) if present else None


def merge_lesson_progress(server: LessonProgress, client: LessonProgress) -> LessonProgress:
    """Field-by-field merge that keeps the most complete value of each."""
    return LessonProgress(
        started_at=min(server.started_at, client.started_at),
        completed_at=_earliest(server.completed_at, client.completed_at),
        last_position=client.last_position,
        percentage_watched=max(server.percentage_watched, client.percentage_watched),
        watched_segments=_union(server.watched_segments, client.watched_segments),
        interactions=_union(server.interactions, client.interactions),
        notes=_union_by_id(server.notes, client.notes),
        bookmarks=_union_by_id(server.bookmarks, client.bookmarks),
        time_spent=max(server.time_spent, client.time_spent),
        duration=client.duration if client.duration is not None else server.duration,
        playback_speed=client.playback_speed,
        updated_at=_latest(server.updated_at, client.updated_at),
    )


def merge_progress(
    server: Progress, client: ClientProgressSnapshot, course: Course, now: datetime
) -> Progress:
    """Union of both snapshots; overall progress is recomputed from the course."""
    lessons = dict(server.lesson_progress)
    for lesson_id, client_entry in client.lesson_progress.items():
        server_entry = lessons.get(lesson_id)
        lessons[lesson_id] = (
            client_entry
            if server_entry is None
            else merge_lesson_progress(server_entry, client_entry)
        )
    completed = server.completed_lessons | client.completed_lessons
    return replace(
        server,
        completed_lessons=completed,
        completed_sections=server.completed_sections | client.completed_sections,
        time_spent=max(server.time_spent, client.time_spent),
        overall_progress=overall_progress_for(completed, course),
        lesson_progress=lessons,
        last_updated=now,
    )


def detect_conflicts(
    server: Progress, client: ClientProgressSnapshot
) -> tuple[ConflictDetected, ...]:
    server_only = server.completed_lessons - client.completed_lessons
    client_only = client.completed_lessons - server.completed_lessons
    if not server_only and not client_only:
        return ()
    return (
        ConflictDetected(
            type="lesson_completion",
            server_only=tuple(sorted(server_only)),
            client_only=tuple(sorted(client_only)),
        ),
    )


# ---------------------------------------------------------------------------
# ProgressConsistency
# ---------------------------------------------------------------------------


class ProgressConsistency:
    def __init__(
        self,
        progress: ProgressRepo,
        courses: CourseRepo,
        enrollments: EnrollmentRepo,
        certificates: CertificateService,
        notifier: Notifier,
        *,
        settings: Settings = SETTINGS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._progress = progress
        self._courses = courses
        self._enrollments = enrollments
        self._certificates = certificates
        self._notifier = notifier
        self._settings = settings
        self._clock = clock

    async def update_lesson_progress(
        self, user_id: str, course_id: str, lesson_id: str, update: LessonUpdate
    ) -> LessonUpdateResult:
        course = await load_course(self._courses, course_id)
        require_lesson(course, lesson_id)
        threshold = self._settings.video_completion_threshold

        async def attempt() -> LessonUpdateResult:
            now = self._clock()
            progress = await get_or_create_progress(
                self._progress, user_id, course_id, now
            )
            was_completed = progress.is_lesson_completed(lesson_id)
            if was_completed and not update.is_completed:
                PROGRESS_PRESERVED.inc()
                logger.warning(
                    "Preserved completion of lesson=%s user=%s course=%s",
                    lesson_id,
                    user_id,
                    course_id,
                    extra={
                        "user_id": user_id,
                        "course_id": course_id,
                        "lesson_id": lesson_id,
                    },
                )
                return LessonUpdateResult(progress, was_completed=True, preserved=True)

            entry = progress.lesson_progress.get(lesson_id) or LessonProgress(started_at=now)
            marker = Interaction(
                type="progress_update",
                timestamp=now,
                data={
                    "percentage_watched": update.percentage_watched,
                    "time_spent": update.time_spent,
                    "current_position": update.current_position,
                    "is_completed": update.is_completed,
                },
            )
            entry = replace(
                entry,
                time_spent=entry.time_spent + update.time_spent,
                last_position=update.current_position,
                percentage_watched=update.percentage_watched,
                interactions=entry.interactions + update.interactions + (marker,),
                updated_at=now,
            )
            completed = progress.completed_lessons
            if update.is_completed or update.percentage_watched >= threshold:
                if not entry.is_completed:
                    entry = replace(entry, completed_at=now)
                completed = completed | {lesson_id}

            saved = await self._progress.save(
                replace(
                    progress,
                    lesson_progress={**progress.lesson_progress, lesson_id: entry},
                    completed_lessons=completed,
                    time_spent=progress.time_spent + update.time_spent,
                    current_lesson=lesson_id,
                    overall_progress=overall_progress_for(completed, course),
                    last_updated=now,
                )
            )
            PROGRESS_WRITES.labels(operation="lesson_update").inc()
            return LessonUpdateResult(saved, was_completed=was_completed, preserved=False)

        result = await self._retry(attempt, "progress")
        if result.preserved:
            return result

        stored = await self._progress.get(user_id, course_id)
        if stored is None or lesson_id not in stored.lesson_progress:
            logger.error(
                "Lesson progress verification failed user=%s course=%s lesson=%s",
                user_id,
                course_id,
                lesson_id,
                extra={
                    "user_id": user_id,
                    "course_id": course_id,
                    "lesson_id": lesson_id,
                },
            )
            raise PersistenceVerificationFailed(
                f"lesson {lesson_id} progress not found after write"
            )

        logger.info(
            "Lesson progress updated user=%s course=%s lesson=%s overall=%d",
            user_id,
            course_id,
            lesson_id,
            stored.overall_progress,
        )
        await self.sync_enrollment(user_id, course_id)
        return LessonUpdateResult(stored, was_completed=result.was_completed, preserved=False)

    async def ensure_course_progress_consistency(
        self, user_id: str, course_id: str
    ) -> ConsistencyReport:
        """Recompute derived figures and prune orphaned completions.

        Running it twice with no writes in between returns
        ``was_inconsistent=False`` the second time.
        """
        course = await load_course(self._courses, course_id)
        tolerance = self._settings.progress_tolerance
        valid_lessons = course.lesson_ids()
        valid_sections = frozenset(course.section_ids())

        async def attempt() -> ConsistencyReport:
            progress = await self._progress.get(user_id, course_id)
            if progress is None:
                created = await get_or_create_progress(
                    self._progress, user_id, course_id, self._clock()
                )
                return ConsistencyReport(created, was_inconsistent=False)

            lessons = progress.completed_lessons & valid_lessons
            sections = progress.completed_sections & valid_sections
            orphan_lessons = progress.completed_lessons - lessons
            orphan_sections = progress.completed_sections - sections
            calculated = calculate_overall_progress(len(lessons), course.total_lessons)
            stored = progress.overall_progress

            fixes: list[str] = []
            kinds: list[str] = []
            if abs(calculated - stored) > tolerance:
                fixes.append(f"Progress percentage corrected: {stored}% → {calculated}%")
                kinds.append("percentage")
            if orphan_lessons:
                fixes.append(f"Removed {len(orphan_lessons)} orphaned completed lessons")
                kinds.append("orphan_lessons")
            if orphan_sections:
                fixes.append(f"Removed {len(orphan_sections)} orphaned completed sections")
                kinds.append("orphan_sections")
            if not fixes:
                return ConsistencyReport(progress, was_inconsistent=False)

            saved = await self._progress.save(
                replace(
                    progress,
                    completed_lessons=lessons,
                    completed_sections=sections,
                    overall_progress=calculated,
                    last_updated=self._clock(),
                )
            )
            for kind in kinds:
                CONSISTENCY_FIXES.labels(kind=kind).inc()
            PROGRESS_WRITES.labels(operation="consistency").inc()
            return ConsistencyReport(saved, was_inconsistent=True, fixes=tuple(fixes))

        report = await self._retry(attempt, "progress")
        if report.was_inconsistent:
            logger.info(
                "Consistency fixes applied user=%s course=%s fixes=%s",
                user_id,
                course_id,
                list(report.fixes),
            )
            await self.sync_enrollment(user_id, course_id)
        else:
            logger.debug("Progress consistent user=%s course=%s", user_id, course_id)
        return report

    async def sweep_course(self, course_id: str) -> list[ConsistencyReport]:
        """Best-effort sweep over every learner of a course.

        A failure for one learner is logged and the sweep moves on.
        """
        reports: list[ConsistencyReport] = []
        for progress in await self._progress.list_by_course(course_id):
            try:
                reports.append(
                    await self.ensure_course_progress_consistency(
                        progress.user_id, course_id
                    )
                )
            except Exception:
                logger.exception(
                    "Consistency sweep failed user=%s course=%s",
                    progress.user_id,
                    course_id,
                )
        fixed = sum(1 for report in reports if report.was_inconsistent)
        logger.info(
            "Consistency sweep finished course=%s checked=%d fixed=%d",
            course_id,
            len(reports),
            fixed,
        )
        return reports

    async def sync_progress_state(
        self, user_id: str, course_id: str, client: ClientProgressSnapshot
    ) -> SyncResult:
        course = await load_course(self._courses, course_id)
        client_time = _aware(client.last_updated)

        async def attempt() -> SyncResult:
            now = self._clock()
            server = await get_or_create_progress(self._progress, user_id, course_id, now)
            server_time = _aware(server.last_updated)
            if client_time > server_time:
                saved = await self._progress.save(merge_progress(server, client, course, now))
                PROGRESS_WRITES.labels(operation="merge").inc()
                return SyncResult(saved, resolution=MERGED)
            if client_time < server_time:
                return SyncResult(server, resolution=SERVER_WINS)
            return SyncResult(
                server,
                resolution=SERVER_WINS,
                conflicts=detect_conflicts(server, client),
            )

        result = await self._retry(attempt, "progress")
        logger.info(
            "Progress sync user=%s course=%s resolution=%s conflicts=%d",
            user_id,
            course_id,
            result.resolution,
            len(result.conflicts),
        )
        if result.resolution == MERGED:
            await self.sync_enrollment(user_id, course_id)
        return result

    async def recalculate(self, user_id: str, course_id: str) -> Recalculation:
        """Recompute overall progress from structure, then sync the enrollment."""
        course = await load_course(self._courses, course_id)

        async def attempt() -> Progress:
            progress = await self._progress.get(user_id, course_id)
            if progress is None:
                raise NotFound(f"no progress for user={user_id} course={course_id}")
            calculated = overall_progress_for(progress.completed_lessons, course)
            if calculated == progress.overall_progress:
                return progress
            saved = await self._progress.save(
                replace(progress, overall_progress=calculated, last_updated=self._clock())
            )
            PROGRESS_WRITES.labels(operation="recalculate").inc()
            return saved

        progress = await self._retry(attempt, "progress")
        completed = len(progress.completed_lessons & course.lesson_ids())
        enrollment = await self.sync_enrollment(user_id, course_id)
        return Recalculation(
            progress=progress,
            completed_lessons=completed,
            total_lessons=course.total_lessons,
            is_completed=progress.overall_progress >= 100,
            enrollment=enrollment,
        )

    async def sync_enrollment(self, user_id: str, course_id: str) -> EnrollmentSync:
        """Copy overall progress onto the enrollment when they drift apart.

        Writes only when the gap exceeds the tolerance, or when progress
        hit 100 and the enrollment is not completed yet.  A newly
        completed enrollment triggers certificate issuance and a
        ``course_completed`` notification; crossing 25/50/75 sends a
        ``progress_milestone`` one.  Failures there are logged, never
        raised.
        """
        tolerance = self._settings.progress_tolerance
        newly_completed: list[bool] = [False]
        previous_progress: list[int] = [0]

        async def attempt() -> EnrollmentSync:
            progress = await self._progress.get(user_id, course_id)
            enrollment = await self._enrollments.get_by_user_and_course(user_id, course_id)
            if progress is None or enrollment is None:
                return EnrollmentSync(enrollment, updated=False)

            target = min(100, max(0, progress.overall_progress))
            completing = target >= 100 and enrollment.status == "active"
            if abs(target - enrollment.progress) <= tolerance and not completing:
                return EnrollmentSync(enrollment, updated=False)

            now = self._clock()
            changes: dict[str, object] = {"progress": target, "last_accessed_at": now}
            if completing:
                changes["status"] = "completed"
                changes["completed_at"] = now
            saved = await self._enrollments.save(replace(enrollment, **changes))
            newly_completed[0] = completing
            previous_progress[0] = enrollment.progress
            return EnrollmentSync(saved, updated=True)

        result = await self._retry(attempt, "enrollment")
        if not result.updated:
            return result

        ENROLLMENT_SYNCS.inc()
        enrollment = result.enrollment
        logger.info(
            "Enrollment progress synced user=%s course=%s progress=%d status=%s",
            user_id,
            course_id,
            enrollment.progress,
            enrollment.status,
        )
        if not newly_completed[0]:
            await self._notify_milestone(enrollment, previous_progress[0])
            return result

        try:
            certificate = await self._certificates.issue_for_enrollment(enrollment)
        except Exception:
            logger.exception("Certificate issuance failed enrollment=%s", enrollment.id)
            certificate = None
        else:
            result = replace(result, certificate=certificate)

        payload = {"course_id": course_id, "enrollment_id": enrollment.id}
        if certificate is not None:
            payload["certificate_id"] = certificate.id
        await self._notifier.notify(user_id, "course_completed", payload)
        return result

    async def _notify_milestone(self, enrollment: Enrollment, previous: int) -> None:
        crossed = [m for m in PROGRESS_MILESTONES if previous < m <= enrollment.progress]
        if not crossed:
            return
        await self._notifier.notify(
            enrollment.user_id,
            "progress_milestone",
            {
                "course_id": enrollment.course_id,
                "enrollment_id": enrollment.id,
                "milestone": crossed[-1],
            },
        )

    async def _retry(self, attempt, document: str):
        return await retry_on_stale_write(
            attempt, attempts=self._settings.write_retry_attempts, document=document
        )
