"""Mutators on a learner's progress document.

One progress document exists per (user, course).  It is created lazily
by the first learning write and every mutator here is a read-modify-write
on that single document:

  1. load the course structure (NotFound if the course is gone)
  2. read (or create) the progress document
  3. build the new document with dataclasses.replace
  4. save with the revision that was read; a concurrent writer makes
     the save fail with StaleWriteError and the whole step re-runs

Completion only ratchets forward.  Completed lessons are never removed
here, a quiz's ``passed`` never goes back to False and best scores only
grow.  Repeating a completion is a no-op, not an error.

Overall progress is always recomputed from the course structure:
round(100 * completed / total lessons), counting only lesson ids that
still exist in the course.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from courseflow.core.config import SETTINGS, Settings
from courseflow.core.errors import NotFound, PersistenceVerificationFailed, StaleWriteError
from courseflow.core.metrics import PROGRESS_WRITES
from courseflow.models.course import Course, Lesson
from courseflow.models.progress import (
    AssignmentSubmission,
    Bookmark,
    Interaction,
    LessonProgress,
    Note,
    Progress,
    QuizAttempt,
    QuizScore,
    SectionProgress,
    WatchedSegment,
    calculate_overall_progress,
)
from courseflow.repos.course_repo import CourseRepo
from courseflow.repos.progress_repo import ProgressRepo
from courseflow.services.retry import retry_on_stale_write

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Inputs and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class QuizSubmission:
    score: float
    max_score: float
    percentage: float
    passed: bool
    answers: tuple[Any, ...] = ()
    started_at: datetime | None = None
    submitted_at: datetime | None = None
    time_spent: float = 0.0


@dataclass(frozen=True, slots=True)
class VideoTelemetry:
    """One player heartbeat.

    ``time_delta`` is the wall-clock seconds since the previous heartbeat.
    """

    current_time: float
    percentage_watched: float
    duration: float | None = None
    watched_segments: tuple[WatchedSegment, ...] = ()
    playback_speed: float = 1.0
    interactions: tuple[Interaction, ...] = ()
    time_delta: float = 1.0


@dataclass(frozen=True, slots=True)
class LessonInteraction:
    type: str  # note|bookmark|highlight|question|pause|rewind|fast_forward
    position: float = 0.0
    content: str | None = None
    duration: float | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SectionCompletion:
    progress: Progress
    section_completed: bool
    course_completed: bool
    completion_rate: int
    next_section: str | None = None


# ---------------------------------------------------------------------------
# Shared helpers (also used by ProgressConsistency)
# ---------------------------------------------------------------------------


async def load_course(courses: CourseRepo, course_id: str) -> Course:
    course = await courses.get(course_id)
    if course is None:
        raise NotFound(f"course {course_id} not found")
    return course


def require_lesson(course: Course, lesson_id: str) -> Lesson:
    for section in course.sections:
        for lesson in section.lessons:
            if lesson.id == lesson_id:
                return lesson
    raise NotFound(f"lesson {lesson_id} not found in course {course.id}")


def overall_progress_for(completed_lessons: frozenset[str], course: Course) -> int:
    valid = completed_lessons & course.lesson_ids()
    return calculate_overall_progress(len(valid), course.total_lessons)


async def get_or_create_progress(
    repo: ProgressRepo, user_id: str, course_id: str, now: datetime
) -> Progress:
    existing = await repo.get(user_id, course_id)
    if existing is not None:
        return existing
    try:
        created = await repo.add(Progress.new(user_id=user_id, course_id=course_id, now=now))
    except StaleWriteError:
        # Another request created it between our read and our add.
        existing = await repo.get(user_id, course_id)
        if existing is None:
            raise
        return existing
    logger.info("Created progress user=%s course=%s", user_id, course_id)
    return created


def interaction_rate(lesson_progress: dict[str, LessonProgress]) -> float:
    """Mean number of recorded interactions per started lesson."""
    if not lesson_progress:
        return 0.0
    total = sum(len(entry.interactions) for entry in lesson_progress.values())
    return total / len(lesson_progress)


# ---------------------------------------------------------------------------
# ProgressStore
# ---------------------------------------------------------------------------


class ProgressStore:
    def __init__(
        self,
        progress: ProgressRepo,
        courses: CourseRepo,
        *,
        settings: Settings = SETTINGS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._progress = progress
        self._courses = courses
        self._settings = settings
        self._clock = clock

    async def get(self, user_id: str, course_id: str) -> Progress:
        progress = await self._progress.get(user_id, course_id)
        if progress is None:
            raise NotFound(f"no progress for user={user_id} course={course_id}")
        return progress

    async def get_or_create(self, user_id: str, course_id: str) -> Progress:
        await load_course(self._courses, course_id)
        return await get_or_create_progress(
            self._progress, user_id, course_id, self._clock()
        )

    # ------------------------------------------------------------------
    # Lessons
    # ------------------------------------------------------------------

    async def complete_lesson(
        self, user_id: str, course_id: str, lesson_id: str
    ) -> Progress:
        def mutate(progress: Progress, course: Course, now: datetime) -> Progress:
            require_lesson(course, lesson_id)
            entry = progress.lesson_progress.get(lesson_id)
            if lesson_id in progress.completed_lessons and entry and entry.is_completed:
                return progress

            if entry is None:
                entry = LessonProgress(started_at=now, completed_at=now, updated_at=now)
            elif not entry.is_completed:
                entry = replace(entry, completed_at=now, updated_at=now)
            completed = progress.completed_lessons | {lesson_id}
            return replace(
                progress,
                completed_lessons=completed,
                current_lesson=lesson_id,
                lesson_progress={**progress.lesson_progress, lesson_id: entry},
                overall_progress=overall_progress_for(completed, course),
                engagement=replace(progress.engagement, last_active_at=now),
                last_updated=now,
            )

        progress = await self._update(user_id, course_id, "complete_lesson", mutate)
        logger.info(
            "Lesson completed user=%s course=%s lesson=%s overall=%d",
            user_id,
            course_id,
            lesson_id,
            progress.overall_progress,
        )
        return progress

    async def update_video_progress(
        self, user_id: str, course_id: str, lesson_id: str, telemetry: VideoTelemetry
    ) -> Progress:
        threshold = self._settings.video_completion_threshold

        def mutate(progress: Progress, course: Course, now: datetime) -> Progress:
            require_lesson(course, lesson_id)
            entry = progress.lesson_progress.get(lesson_id) or LessonProgress(started_at=now)
            segments = entry.watched_segments + tuple(
                s for s in telemetry.watched_segments if s not in entry.watched_segments
            )
            entry = replace(
                entry,
                last_position=telemetry.current_time,
                percentage_watched=telemetry.percentage_watched,
                duration=telemetry.duration if telemetry.duration is not None else entry.duration,
                watched_segments=segments,
                playback_speed=telemetry.playback_speed,
                interactions=entry.interactions + telemetry.interactions,
                time_spent=entry.time_spent + telemetry.time_delta,
                updated_at=now,
            )

            completed = progress.completed_lessons
            if telemetry.percentage_watched >= threshold and not entry.is_completed:
                entry = replace(entry, completed_at=now)
                completed = completed | {lesson_id}
                logger.info(
                    "Lesson completed by video user=%s course=%s lesson=%s watched=%.1f",
                    user_id,
                    course_id,
                    lesson_id,
                    telemetry.percentage_watched,
                )

            lessons = {**progress.lesson_progress, lesson_id: entry}
            engagement = replace(
                progress.engagement,
                total_active_time=progress.engagement.total_active_time
                + telemetry.time_delta,
                last_active_at=now,
                interaction_rate=interaction_rate(lessons),
            )
            return replace(
                progress,
                lesson_progress=lessons,
                completed_lessons=completed,
                current_lesson=lesson_id,
                overall_progress=overall_progress_for(completed, course),
                engagement=engagement,
                last_updated=now,
            )

        return await self._update(user_id, course_id, "video", mutate)

    async def record_lesson_interaction(
        self,
        user_id: str,
        course_id: str,
        lesson_id: str,
        interaction: LessonInteraction,
    ) -> Progress:
        def mutate(progress: Progress, course: Course, now: datetime) -> Progress:
            require_lesson(course, lesson_id)
            entry = progress.lesson_progress.get(lesson_id) or LessonProgress(started_at=now)
            record = Interaction(
                type=interaction.type,
                timestamp=now,
                data={
                    **interaction.data,
                    "position": interaction.position,
                    "duration": interaction.duration,
                    "content": interaction.content,
                },
            )
            notes, bookmarks = entry.notes, entry.bookmarks
            if interaction.type == "note" and interaction.content:
                notes += (
                    Note(
                        id=f"note_{uuid4().hex}",
                        position=interaction.position,
                        content=interaction.content,
                        created_at=now,
                    ),
                )
            elif interaction.type == "bookmark":
                bookmarks += (
                    Bookmark(
                        id=f"bookmark_{uuid4().hex}",
                        position=interaction.position,
                        title=interaction.content
                        or f"Bookmark at {_format_position(interaction.position)}",
                        created_at=now,
                    ),
                )
            entry = replace(
                entry,
                interactions=entry.interactions + (record,),
                notes=notes,
                bookmarks=bookmarks,
                updated_at=now,
            )
            lessons = {**progress.lesson_progress, lesson_id: entry}
            return replace(
                progress,
                lesson_progress=lessons,
                engagement=replace(
                    progress.engagement,
                    last_active_at=now,
                    interaction_rate=interaction_rate(lessons),
                ),
                last_updated=now,
            )

        progress = await self._update(user_id, course_id, "interaction", mutate)
        logger.debug(
            "Lesson interaction recorded user=%s lesson=%s type=%s",
            user_id,
            lesson_id,
            interaction.type,
        )
        return progress

    async def set_current_lesson(
        self, user_id: str, course_id: str, lesson_id: str
    ) -> Progress:
        def mutate(progress: Progress, course: Course, now: datetime) -> Progress:
            require_lesson(course, lesson_id)
            return replace(progress, current_lesson=lesson_id, last_updated=now)

        return await self._update(user_id, course_id, "current_lesson", mutate)

    async def update_time_spent(
        self, user_id: str, course_id: str, seconds: float
    ) -> Progress:
        if seconds < 0:
            raise ValueError(f"seconds must be >= 0 (got {seconds})")

        def mutate(progress: Progress, course: Course, now: datetime) -> Progress:
            return replace(
                progress,
                time_spent=progress.time_spent + seconds,
                engagement=replace(progress.engagement, last_active_at=now),
                last_updated=now,
            )

        return await self._update(user_id, course_id, "time_spent", mutate)

    async def submit_assignment(
        self,
        user_id: str,
        course_id: str,
        lesson_id: str,
        *,
        grade: float | None = None,
        feedback: str | None = None,
    ) -> Progress:
        def mutate(progress: Progress, course: Course, now: datetime) -> Progress:
            require_lesson(course, lesson_id)
            submission = AssignmentSubmission(
                submitted_at=now, grade=grade, feedback=feedback
            )
            return replace(
                progress,
                assignments={**progress.assignments, lesson_id: submission},
                last_updated=now,
            )

        progress = await self._update(user_id, course_id, "assignment", mutate)
        logger.info(
            "Assignment submitted user=%s course=%s lesson=%s",
            user_id,
            course_id,
            lesson_id,
        )
        return progress

    # ------------------------------------------------------------------
    # Quizzes
    # ------------------------------------------------------------------

    async def record_quiz_attempt(
        self, user_id: str, course_id: str, quiz_id: str, submission: QuizSubmission
    ) -> Progress:
        """Append an attempt and fold it into the quiz aggregate.

        The stored document is read back afterwards; a missing or short
        aggregate raises PersistenceVerificationFailed so a quiz outcome
        is never lost silently.
        """
        eligible_at = self._settings.certification_threshold
        expected_attempts: list[int] = []

        def mutate(progress: Progress, course: Course, now: datetime) -> Progress:
            attempt = QuizAttempt(
                id=f"{quiz_id}-{uuid4()}",
                score=submission.score,
                max_score=submission.max_score,
                percentage=submission.percentage,
                passed=submission.passed,
                started_at=submission.started_at or now,
                completed_at=submission.submitted_at or now,
                time_spent=submission.time_spent,
                answers=submission.answers,
            )
            prior = progress.quiz_scores.get(quiz_id)
            if prior is None:
                aggregate = QuizScore(
                    attempts=(attempt,),
                    best_score=attempt.score,
                    best_percentage=attempt.percentage,
                    total_attempts=1,
                    passed=attempt.passed,
                    certification_eligible=(
                        attempt.passed and attempt.percentage >= eligible_at
                    ),
                )
            else:
                best_percentage = max(prior.best_percentage, attempt.percentage)
                passed = prior.passed or attempt.passed
                aggregate = QuizScore(
                    attempts=prior.attempts + (attempt,),
                    best_score=max(prior.best_score, attempt.score),
                    best_percentage=best_percentage,
                    total_attempts=prior.total_attempts + 1,
                    passed=passed,
                    certification_eligible=passed and best_percentage >= eligible_at,
                )
            expected_attempts[:] = [aggregate.total_attempts]
            return replace(
                progress,
                quiz_scores={**progress.quiz_scores, quiz_id: aggregate},
                engagement=replace(progress.engagement, last_active_at=now),
                last_updated=now,
            )

        await self._update(user_id, course_id, "quiz_attempt", mutate)

        stored = await self._progress.get(user_id, course_id)
        aggregate = stored.quiz_scores.get(quiz_id) if stored else None
        if aggregate is None or aggregate.total_attempts < expected_attempts[0]:
            logger.error(
                "Quiz score verification failed user=%s course=%s quiz=%s",
                user_id,
                course_id,
                quiz_id,
            )
            raise PersistenceVerificationFailed(
                f"quiz {quiz_id} attempt not found after write"
            )

        logger.info(
            "Quiz attempt recorded user=%s quiz=%s attempts=%d best=%.1f passed=%s",
            user_id,
            quiz_id,
            aggregate.total_attempts,
            aggregate.best_percentage,
            aggregate.passed,
        )
        return stored

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    async def complete_section(
        self,
        user_id: str,
        course_id: str,
        section_id: str,
        *,
        time_spent: float = 0.0,
    ) -> SectionCompletion:
        """Complete a section once all of its required lessons are done.

        Partial completion is not an error: the section stays open and
        the current completion rate is returned.
        """
        course = await load_course(self._courses, course_id)
        section = course.find_section(section_id)
        if section is None:
            raise NotFound(f"section {section_id} not found in course {course_id}")
        required = section.required_lesson_ids()

        def mutate(progress: Progress, course: Course, now: datetime) -> Progress:
            if not all(lesson in progress.completed_lessons for lesson in required):
                return progress
            prior = progress.section_progress.get(section_id)
            entry = SectionProgress(
                started_at=prior.started_at if prior else now,
                completed_lessons=(prior.completed_lessons if prior else frozenset())
                | frozenset(required),
                progress=100,
                time_spent=(prior.time_spent if prior else 0.0) + time_spent,
                completed_at=(prior.completed_at if prior else None) or now,
            )
            if prior == entry and section_id in progress.completed_sections:
                return progress
            return replace(
                progress,
                completed_sections=progress.completed_sections | {section_id},
                section_progress={**progress.section_progress, section_id: entry},
                overall_progress=overall_progress_for(progress.completed_lessons, course),
                engagement=replace(progress.engagement, last_active_at=now),
                last_updated=now,
            )

        progress = await self._update(user_id, course_id, "complete_section", mutate)

        if section_id not in progress.completed_sections:
            done = sum(1 for lesson in required if lesson in progress.completed_lessons)
            logger.info(
                "Section incomplete user=%s section=%s required=%d/%d",
                user_id,
                section_id,
                done,
                len(required),
            )
            return SectionCompletion(
                progress=progress,
                section_completed=False,
                course_completed=False,
                completion_rate=progress.overall_progress,
            )

        course_completed = progress.overall_progress >= 100 or all(
            sid in progress.completed_sections for sid in course.section_ids()
        )
        next_section = _next_open_section(course, section_id, progress)
        logger.info(
            "Section completed user=%s course=%s section=%s next=%s course_completed=%s",
            user_id,
            course_id,
            section_id,
            next_section,
            course_completed,
        )
        return SectionCompletion(
            progress=progress,
            section_completed=True,
            course_completed=course_completed,
            completion_rate=progress.overall_progress,
            next_section=next_section,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _update(
        self,
        user_id: str,
        course_id: str,
        operation: str,
        mutate: Callable[[Progress, Course, datetime], Progress],
    ) -> Progress:
        course = await load_course(self._courses, course_id)

        async def attempt() -> Progress:
            now = self._clock()
            progress = await get_or_create_progress(
                self._progress, user_id, course_id, now
            )
            updated = mutate(progress, course, now)
            if updated is progress:
                return progress
            saved = await self._progress.save(updated)
            PROGRESS_WRITES.labels(operation=operation).inc()
            return saved

        return await retry_on_stale_write(
            attempt,
            attempts=self._settings.write_retry_attempts,
            document="progress",
        )


def _next_open_section(course: Course, section_id: str, progress: Progress) -> str | None:
    """First section after ``section_id``, in course order, not yet completed."""
    ids = course.section_ids()
    for candidate in ids[ids.index(section_id) + 1 :]:
        if candidate not in progress.completed_sections:
            return candidate
    return None


def _format_position(seconds: float) -> str:
    minutes, rest = divmod(int(seconds), 60)
    return f"{minutes}:{rest:02d}"
