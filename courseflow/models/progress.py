from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4


def round_half_up(value: float) -> int:
    """Nearest integer with .5 rounded up (round() would pick the even one)."""
    return math.floor(value + 0.5)


def calculate_overall_progress(completed: int, total_lessons: int) -> int:
    """round(100 * completed / total), clamped to [0, 100]."""
    if total_lessons <= 0:
        return 0
    return min(100, max(0, round_half_up(100 * completed / total_lessons)))


@dataclass(frozen=True, slots=True)
class Interaction:
    type: str  # play|pause|seek|note|bookmark|progress_update|...
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class WatchedSegment:
    start: float
    end: float


@dataclass(frozen=True, slots=True)
class Note:
    id: str
    position: float
    content: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class Bookmark:
    id: str
    position: float
    title: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class LessonProgress:
    started_at: datetime
    completed_at: datetime | None = None
    last_position: float = 0.0
    percentage_watched: float = 0.0
    watched_segments: tuple[WatchedSegment, ...] = ()
    interactions: tuple[Interaction, ...] = ()
    notes: tuple[Note, ...] = ()
    bookmarks: tuple[Bookmark, ...] = ()
    time_spent: float = 0.0
    duration: float | None = None
    playback_speed: float = 1.0
    updated_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


@dataclass(frozen=True, slots=True)
class SectionProgress:
    started_at: datetime
    completed_lessons: frozenset[str] = frozenset()
    progress: int = 0
    time_spent: float = 0.0
    completed_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class QuizAttempt:
    id: str
    score: float
    max_score: float
    percentage: float
    passed: bool
    started_at: datetime
    completed_at: datetime
    time_spent: float = 0.0
    answers: tuple[Any, ...] = ()


@dataclass(frozen=True, slots=True)
class QuizScore:
    """Aggregate over every attempt at one quiz.

    best_score, best_percentage and passed only ever ratchet upward.
    """

    attempts: tuple[QuizAttempt, ...]
    best_score: float
    best_percentage: float
    total_attempts: int
    passed: bool
    certification_eligible: bool


@dataclass(frozen=True, slots=True)
class AssignmentSubmission:
    submitted_at: datetime
    submitted: bool = True
    grade: float | None = None
    feedback: str | None = None


@dataclass(frozen=True, slots=True)
class Engagement:
    """Analytics-only figures; never used for completion gating."""

    session_count: int = 0
    average_session_length: float = 0.0
    total_active_time: float = 0.0
    last_active_at: datetime | None = None
    streak_days: int = 0
    completion_velocity: float = 0.0
    interaction_rate: float = 0.0


@dataclass(frozen=True, slots=True)
class Progress:
    """One learner's progress through one course."""

    id: str
    user_id: str
    course_id: str
    created_at: datetime
    last_updated: datetime
    completed_lessons: frozenset[str] = frozenset()
    completed_sections: frozenset[str] = frozenset()
    current_lesson: str | None = None
    time_spent: float = 0.0
    overall_progress: int = 0
    lesson_progress: dict[str, LessonProgress] = field(default_factory=dict)
    section_progress: dict[str, SectionProgress] = field(default_factory=dict)
    quiz_scores: dict[str, QuizScore] = field(default_factory=dict)
    assignments: dict[str, AssignmentSubmission] = field(default_factory=dict)
    engagement: Engagement = field(default_factory=Engagement)
    revision: int = 0

    @staticmethod
    def new(*, user_id: str, course_id: str, now: datetime) -> Progress:
        return Progress(
            id=str(uuid4()),
            user_id=user_id,
            course_id=course_id,
            created_at=now,
            last_updated=now,
            engagement=Engagement(last_active_at=now),
        )

    def is_lesson_completed(self, lesson_id: str) -> bool:
        if lesson_id in self.completed_lessons:
            return True
        entry = self.lesson_progress.get(lesson_id)
        return entry is not None and entry.is_completed
