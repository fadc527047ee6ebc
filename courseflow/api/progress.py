"""Learner progress endpoints.

Every route acts on the caller's own progress document for one course:

  /v1/progress/{course_id}
      GET                              read (created on first access)
      POST lessons/{lesson_id}/complete
      PUT  lessons/{lesson_id}         idempotent update, never un-completes
      POST lessons/{lesson_id}/video   player heartbeat
      POST lessons/{lesson_id}/interactions
      POST lessons/{lesson_id}/current
      POST lessons/{lesson_id}/assignment
      POST quizzes/{quiz_id}/attempts
      POST sections/{section_id}/complete
      POST time
      POST sync                        offline client reconciliation
      POST consistency                 prune orphans, recompute totals
      POST recalculate
      GET  analytics
"""

from __future__ import annotations

import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from courseflow.api.dependencies import require_user
from courseflow.models.principal import Principal
from courseflow.models.progress import (
    Interaction,
    LessonProgress,
    Progress,
    WatchedSegment,
)
from courseflow.services.container import (
    progress_analytics,
    progress_consistency,
    progress_store,
)
from courseflow.services.progress_consistency import ClientProgressSnapshot, LessonUpdate
from courseflow.services.progress_store import (
    LessonInteraction,
    QuizSubmission,
    VideoTelemetry,
)

router = APIRouter(prefix="/v1/progress", tags=["progress"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class InteractionIn(BaseModel):
    type: str
    timestamp: datetime.datetime
    data: dict[str, Any] = {}

    def to_interaction(self) -> Interaction:
        return Interaction(type=self.type, timestamp=self.timestamp, data=self.data)


class SegmentIn(BaseModel):
    start: float = Field(ge=0)
    end: float = Field(ge=0)


class LessonUpdateIn(BaseModel):
    time_spent: float = Field(default=0.0, ge=0)
    current_position: float = Field(default=0.0, ge=0)
    percentage_watched: float = Field(default=0.0, ge=0, le=100)
    is_completed: bool = False
    interactions: list[InteractionIn] = []


class VideoTelemetryIn(BaseModel):
    current_time: float = Field(ge=0)
    percentage_watched: float = Field(ge=0, le=100)
    duration: float | None = Field(default=None, ge=0)
    watched_segments: list[SegmentIn] = []
    playback_speed: float = Field(default=1.0, gt=0)
    interactions: list[InteractionIn] = []
    time_delta: float = Field(default=1.0, ge=0)


class LessonInteractionIn(BaseModel):
    type: str
    position: float = Field(default=0.0, ge=0)
    content: str | None = None
    duration: float | None = None
    data: dict[str, Any] = {}


class AssignmentIn(BaseModel):
    grade: float | None = None
    feedback: str | None = None


class QuizAttemptIn(BaseModel):
    score: float = Field(ge=0)
    max_score: float = Field(gt=0)
    percentage: float = Field(ge=0, le=100)
    passed: bool
    answers: list[Any] = []
    started_at: datetime.datetime | None = None
    submitted_at: datetime.datetime | None = None
    time_spent: float = Field(default=0.0, ge=0)


class SectionCompleteIn(BaseModel):
    time_spent: float = Field(default=0.0, ge=0)


class TimeSpentIn(BaseModel):
    seconds: float


class ClientLessonIn(BaseModel):
    started_at: datetime.datetime
    completed_at: datetime.datetime | None = None
    last_position: float = 0.0
    percentage_watched: float = 0.0
    watched_segments: list[SegmentIn] = []
    time_spent: float = 0.0
    duration: float | None = None
    playback_speed: float = 1.0
    updated_at: datetime.datetime | None = None

    def to_lesson_progress(self) -> LessonProgress:
        return LessonProgress(
            started_at=self.started_at,
            completed_at=self.completed_at,
            last_position=self.last_position,
            percentage_watched=self.percentage_watched,
            watched_segments=tuple(
                WatchedSegment(start=s.start, end=s.end) for s in self.watched_segments
            ),
            time_spent=self.time_spent,
            duration=self.duration,
            playback_speed=self.playback_speed,
            updated_at=self.updated_at,
        )


class ClientProgressIn(BaseModel):
    last_updated: datetime.datetime
    completed_lessons: list[str] = []
    completed_sections: list[str] = []
    time_spent: float = 0.0
    lesson_progress: dict[str, ClientLessonIn] = {}


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LessonProgressOut(BaseModel):
    started_at: datetime.datetime
    completed_at: datetime.datetime | None
    last_position: float
    percentage_watched: float
    time_spent: float
    duration: float | None
    interactions: int
    notes: int
    bookmarks: int


class QuizScoreOut(BaseModel):
    best_score: float
    best_percentage: float
    total_attempts: int
    passed: bool
    certification_eligible: bool


class ProgressOut(BaseModel):
    user_id: str
    course_id: str
    overall_progress: int
    completed_lessons: list[str]
    completed_sections: list[str]
    current_lesson: str | None
    time_spent: float
    last_updated: datetime.datetime
    lesson_progress: dict[str, LessonProgressOut]
    quiz_scores: dict[str, QuizScoreOut]


class LessonUpdateOut(BaseModel):
    progress: ProgressOut
    was_completed: bool
    preserved: bool


class SectionCompletionOut(BaseModel):
    progress: ProgressOut
    section_completed: bool
    course_completed: bool
    completion_rate: int
    next_section: str | None


class ConflictOut(BaseModel):
    type: str
    server_only: list[str]
    client_only: list[str]


class SyncOut(BaseModel):
    progress: ProgressOut
    resolution: str
    conflicts: list[ConflictOut]


class ConsistencyOut(BaseModel):
    progress: ProgressOut
    was_inconsistent: bool
    fixes: list[str]


class RecalculationOut(BaseModel):
    progress: ProgressOut
    completed_lessons: int
    total_lessons: int
    is_completed: bool
    enrollment_updated: bool
    certificate_id: str | None


class PredictionsOut(BaseModel):
    estimated_completion_date: datetime.datetime
    risk_of_dropout: int
    recommended_study_minutes: int


class AnalyticsOut(BaseModel):
    overall_progress: int
    time_spent: float
    streak_days: int
    average_session_length: float
    completion_velocity: float
    engagement_score: int
    strong_areas: list[str]
    improvement_areas: list[str]
    recommended_next_steps: list[str]
    predictions: PredictionsOut


def _progress_out(progress: Progress) -> ProgressOut:
    return ProgressOut(
        user_id=progress.user_id,
        course_id=progress.course_id,
        overall_progress=progress.overall_progress,
        completed_lessons=sorted(progress.completed_lessons),
        completed_sections=sorted(progress.completed_sections),
        current_lesson=progress.current_lesson,
        time_spent=progress.time_spent,
        last_updated=progress.last_updated,
        lesson_progress={
            lesson_id: LessonProgressOut(
                started_at=entry.started_at,
                completed_at=entry.completed_at,
                last_position=entry.last_position,
                percentage_watched=entry.percentage_watched,
                time_spent=entry.time_spent,
                duration=entry.duration,
                interactions=len(entry.interactions),
                notes=len(entry.notes),
                bookmarks=len(entry.bookmarks),
            )
            for lesson_id, entry in progress.lesson_progress.items()
        },
        quiz_scores={
            quiz_id: QuizScoreOut(
                best_score=score.best_score,
                best_percentage=score.best_percentage,
                total_attempts=score.total_attempts,
                passed=score.passed,
                certification_eligible=score.certification_eligible,
            )
            for quiz_id, score in progress.quiz_scores.items()
        },
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/{course_id}", response_model=ProgressOut)
async def get_progress(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
) -> ProgressOut:
    progress = await progress_store.get_or_create(principal.user_id, course_id)
    return _progress_out(progress)


@router.get("/{course_id}/analytics", response_model=AnalyticsOut)
async def get_analytics(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
):
    analytics = await progress_analytics.for_learner(principal.user_id, course_id)
    if analytics is None:
        # No activity yet: analytics over a fresh document.
        await progress_store.get_or_create(principal.user_id, course_id)
        analytics = await progress_analytics.for_learner(principal.user_id, course_id)
    return analytics


# ---------------------------------------------------------------------------
# Lessons
# ---------------------------------------------------------------------------


@router.post("/{course_id}/lessons/{lesson_id}/complete", response_model=ProgressOut)
async def complete_lesson(
    course_id: str,
    lesson_id: str,
    principal: Annotated[Principal, Depends(require_user)],
) -> ProgressOut:
    progress = await progress_store.complete_lesson(principal.user_id, course_id, lesson_id)
    await progress_consistency.sync_enrollment(principal.user_id, course_id)
    return _progress_out(progress)


@router.put("/{course_id}/lessons/{lesson_id}", response_model=LessonUpdateOut)
async def update_lesson(
    course_id: str,
    lesson_id: str,
    body: LessonUpdateIn,
    principal: Annotated[Principal, Depends(require_user)],
) -> LessonUpdateOut:
    result = await progress_consistency.update_lesson_progress(
        principal.user_id,
        course_id,
        lesson_id,
        LessonUpdate(
            time_spent=body.time_spent,
            current_position=body.current_position,
            percentage_watched=body.percentage_watched,
            is_completed=body.is_completed,
            interactions=tuple(i.to_interaction() for i in body.interactions),
        ),
    )
    return LessonUpdateOut(
        progress=_progress_out(result.progress),
        was_completed=result.was_completed,
        preserved=result.preserved,
    )


@router.post("/{course_id}/lessons/{lesson_id}/video", response_model=ProgressOut)
async def update_video(
    course_id: str,
    lesson_id: str,
    body: VideoTelemetryIn,
    principal: Annotated[Principal, Depends(require_user)],
) -> ProgressOut:
    telemetry = VideoTelemetry(
        current_time=body.current_time,
        percentage_watched=body.percentage_watched,
        duration=body.duration,
        watched_segments=tuple(
            WatchedSegment(start=s.start, end=s.end) for s in body.watched_segments
        ),
        playback_speed=body.playback_speed,
        interactions=tuple(i.to_interaction() for i in body.interactions),
        time_delta=body.time_delta,
    )
    progress = await progress_store.update_video_progress(
        principal.user_id, course_id, lesson_id, telemetry
    )
    await progress_consistency.sync_enrollment(principal.user_id, course_id)
    return _progress_out(progress)


@router.post(
    "/{course_id}/lessons/{lesson_id}/interactions",
    response_model=ProgressOut,
    status_code=status.HTTP_201_CREATED,
)
async def record_interaction(
    course_id: str,
    lesson_id: str,
    body: LessonInteractionIn,
    principal: Annotated[Principal, Depends(require_user)],
) -> ProgressOut:
    progress = await progress_store.record_lesson_interaction(
        principal.user_id,
        course_id,
        lesson_id,
        LessonInteraction(**body.model_dump()),
    )
    return _progress_out(progress)


@router.post("/{course_id}/lessons/{lesson_id}/current", response_model=ProgressOut)
async def set_current_lesson(
    course_id: str,
    lesson_id: str,
    principal: Annotated[Principal, Depends(require_user)],
) -> ProgressOut:
    progress = await progress_store.set_current_lesson(principal.user_id, course_id, lesson_id)
    return _progress_out(progress)


@router.post("/{course_id}/lessons/{lesson_id}/assignment", response_model=ProgressOut)
async def submit_assignment(
    course_id: str,
    lesson_id: str,
    body: AssignmentIn,
    principal: Annotated[Principal, Depends(require_user)],
) -> ProgressOut:
    progress = await progress_store.submit_assignment(
        principal.user_id,
        course_id,
        lesson_id,
        grade=body.grade,
        feedback=body.feedback,
    )
    return _progress_out(progress)


@router.post("/{course_id}/time", response_model=ProgressOut)
async def add_time_spent(
    course_id: str,
    body: TimeSpentIn,
    principal: Annotated[Principal, Depends(require_user)],
) -> ProgressOut:
    progress = await progress_store.update_time_spent(
        principal.user_id, course_id, body.seconds
    )
    return _progress_out(progress)


# ---------------------------------------------------------------------------
# Quizzes and sections
# ---------------------------------------------------------------------------


@router.post(
    "/{course_id}/quizzes/{quiz_id}/attempts",
    response_model=ProgressOut,
    status_code=status.HTTP_201_CREATED,
)
async def record_quiz_attempt(
    course_id: str,
    quiz_id: str,
    body: QuizAttemptIn,
    principal: Annotated[Principal, Depends(require_user)],
) -> ProgressOut:
    submission = QuizSubmission(
        score=body.score,
        max_score=body.max_score,
        percentage=body.percentage,
        passed=body.passed,
        answers=tuple(body.answers),
        started_at=body.started_at,
        submitted_at=body.submitted_at,
        time_spent=body.time_spent,
    )
    progress = await progress_store.record_quiz_attempt(
        principal.user_id, course_id, quiz_id, submission
    )
    return _progress_out(progress)


@router.post(
    "/{course_id}/sections/{section_id}/complete",
    response_model=SectionCompletionOut,
)
async def complete_section(
    course_id: str,
    section_id: str,
    principal: Annotated[Principal, Depends(require_user)],
    body: SectionCompleteIn | None = None,
) -> SectionCompletionOut:
    result = await progress_store.complete_section(
        principal.user_id,
        course_id,
        section_id,
        time_spent=body.time_spent if body else 0.0,
    )
    if result.section_completed:
        await progress_consistency.sync_enrollment(principal.user_id, course_id)
    return SectionCompletionOut(
        progress=_progress_out(result.progress),
        section_completed=result.section_completed,
        course_completed=result.course_completed,
        completion_rate=result.completion_rate,
        next_section=result.next_section,
    )


# ---------------------------------------------------------------------------
# Consistency
# ---------------------------------------------------------------------------


@router.post("/{course_id}/sync", response_model=SyncOut)
async def sync_progress(
    course_id: str,
    body: ClientProgressIn,
    principal: Annotated[Principal, Depends(require_user)],
) -> SyncOut:
    snapshot = ClientProgressSnapshot(
        last_updated=body.last_updated,
        completed_lessons=frozenset(body.completed_lessons),
        completed_sections=frozenset(body.completed_sections),
        time_spent=body.time_spent,
        lesson_progress={
            lesson_id: entry.to_lesson_progress()
            for lesson_id, entry in body.lesson_progress.items()
        },
    )
    result = await progress_consistency.sync_progress_state(
        principal.user_id, course_id, snapshot
    )
    return SyncOut(
        progress=_progress_out(result.progress),
        resolution=result.resolution,
        conflicts=[
            ConflictOut(
                type=c.type,
                server_only=list(c.server_only),
                client_only=list(c.client_only),
            )
            for c in result.conflicts
        ],
    )


@router.post("/{course_id}/consistency", response_model=ConsistencyOut)
async def ensure_consistency(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
) -> ConsistencyOut:
    report = await progress_consistency.ensure_course_progress_consistency(
        principal.user_id, course_id
    )
    return ConsistencyOut(
        progress=_progress_out(report.progress),
        was_inconsistent=report.was_inconsistent,
        fixes=list(report.fixes),
    )


@router.post("/{course_id}/recalculate", response_model=RecalculationOut)
async def recalculate(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
) -> RecalculationOut:
    result = await progress_consistency.recalculate(principal.user_id, course_id)
    return RecalculationOut(
        progress=_progress_out(result.progress),
        completed_lessons=result.completed_lessons,
        total_lessons=result.total_lessons,
        is_completed=result.is_completed,
        enrollment_updated=result.enrollment.updated,
        certificate_id=(
            result.enrollment.certificate.id if result.enrollment.certificate else None
        ),
    )
