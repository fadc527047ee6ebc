"""Learner analytics derived from a progress document.

Read-only: nothing here writes to a document or gates completion.  The
heuristics (score caps, dropout risk weights) are product rules of
thumb and only steer recommendations.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from courseflow.models.progress import Progress, round_half_up
from courseflow.repos.course_repo import CourseRepo
from courseflow.repos.progress_repo import ProgressRepo
from courseflow.services.progress_store import load_course, overall_progress_for

logger = logging.getLogger(__name__)

_INACTIVITY = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class Predictions:
    estimated_completion_date: datetime
    risk_of_dropout: int
    recommended_study_minutes: int


@dataclass(frozen=True, slots=True)
class LearnerAnalytics:
    overall_progress: int
    time_spent: float
    streak_days: int
    average_session_length: float
    completion_velocity: float
    engagement_score: int
    strong_areas: tuple[str, ...]
    improvement_areas: tuple[str, ...]
    recommended_next_steps: tuple[str, ...]
    predictions: Predictions


@dataclass(frozen=True, slots=True)
class CourseStats:
    total_learners: int
    average_progress: int
    average_time_spent: int
    completed: int
    active_last_7_days: int


def engagement_score(progress: Progress) -> int:
    e = progress.engagement
    factors = (
        min(e.streak_days * 2, 20),
        min(e.session_count, 30),
        min(e.interaction_rate * 10, 25),
        min(e.completion_velocity * 5, 25),
    )
    return round_half_up(sum(factors))


def _quiz_average(progress: Progress) -> float | None:
    scores = [q.best_percentage for q in progress.quiz_scores.values()]
    if not scores:
        return None
    return sum(scores) / len(scores)


def performance_areas(progress: Progress) -> tuple[tuple[str, ...], tuple[str, ...]]:
    strong: list[str] = []
    improve: list[str] = []

    average = _quiz_average(progress)
    if average is not None:
        if average >= 85:
            strong.append("Assessment Performance")
        elif average < 70:
            improve.append("Assessment Performance")

    streak = progress.engagement.streak_days
    if streak >= 7:
        strong.append("Consistency")
    elif streak < 3:
        improve.append("Study Consistency")

    velocity = progress.engagement.completion_velocity
    if velocity >= 1:
        strong.append("Learning Pace")
    elif velocity < 0.5:
        improve.append("Learning Pace")

    return tuple(strong), tuple(improve)


def recommendations(progress: Progress) -> tuple[str, ...]:
    steps: list[str] = []
    if progress.engagement.streak_days < 3:
        steps.append("Try to study at least 20 minutes daily to build consistency")
    if progress.engagement.completion_velocity < 0.5:
        steps.append("Consider breaking lessons into smaller chunks")
    average = _quiz_average(progress)
    if average is not None and average < 70:
        steps.append("Review previous lessons before attempting new quizzes")
    return tuple(steps)


def predictions(progress: Progress, now: datetime) -> Predictions:
    velocity = progress.engagement.completion_velocity or 0.5
    remaining = 100 - progress.overall_progress
    estimated = now + timedelta(days=remaining / velocity)

    last_active = progress.engagement.last_active_at or progress.last_updated
    risk = 0
    if progress.engagement.streak_days < 3:
        risk += 30
    if velocity < 0.5:
        risk += 25
    if any(q.best_percentage < 60 for q in progress.quiz_scores.values()):
        risk += 20
    if now - last_active > _INACTIVITY:
        risk += 25
    risk = min(risk, 100)

    minutes = max(30, min(120, round_half_up(60 * (1 + risk / 100))))
    return Predictions(
        estimated_completion_date=estimated,
        risk_of_dropout=risk,
        recommended_study_minutes=minutes,
    )


class ProgressAnalytics:
    def __init__(
        self,
        progress: ProgressRepo,
        courses: CourseRepo,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._progress = progress
        self._courses = courses
        self._clock = clock

    async def for_learner(self, user_id: str, course_id: str) -> LearnerAnalytics | None:
        """None when the learner has no progress in the course yet."""
        await load_course(self._courses, course_id)
        progress = await self._progress.get(user_id, course_id)
        if progress is None:
            return None
        strong, improve = performance_areas(progress)
        return LearnerAnalytics(
            overall_progress=progress.overall_progress,
            time_spent=progress.time_spent,
            streak_days=progress.engagement.streak_days,
            average_session_length=progress.engagement.average_session_length,
            completion_velocity=progress.engagement.completion_velocity,
            engagement_score=engagement_score(progress),
            strong_areas=strong,
            improvement_areas=improve,
            recommended_next_steps=recommendations(progress),
            predictions=predictions(progress, self._clock()),
        )

    async def course_stats(self, course_id: str) -> CourseStats:
        course = await load_course(self._courses, course_id)
        documents = await self._progress.list_by_course(course_id)
        if not documents:
            return CourseStats(0, 0, 0, 0, 0)

        now = self._clock()
        percentages = [overall_progress_for(p.completed_lessons, course) for p in documents]
        stats = CourseStats(
            total_learners=len(documents),
            average_progress=round_half_up(sum(percentages) / len(documents)),
            average_time_spent=round_half_up(
                sum(p.time_spent for p in documents) / len(documents)
            ),
            completed=sum(1 for value in percentages if value >= 100),
            active_last_7_days=sum(
                1 for p in documents if now - p.last_updated <= _INACTIVITY
            ),
        )
        logger.debug("Course stats course=%s learners=%d", course_id, stats.total_learners)
        return stats
