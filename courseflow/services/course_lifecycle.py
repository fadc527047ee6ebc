"""Course authoring lifecycle.

  draft ─submit─▶ submitted ─start_review─▶ under_review ─approve─▶ published
                                                 └─reject─▶ rejected ─withdraw─▶ draft
  published ─archive / suspend─▶ archived | suspended ─reinstate─▶ published

Every status change goes through ``_transition``, which checks the edge
against VALID_TRANSITIONS before anything is written, appends one
workflow history entry and stamps the matching status timestamp.
Callers get InvalidTransition, Unauthorized, ValidationFailed or
NotFound straight away; none of them is retried.

Approval publishes in the same write.  The history still records two
steps (approve, then publish) so the audit trail shows both decisions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, fields, replace
from datetime import UTC, datetime
from uuid import uuid4

from courseflow.core.config import SETTINGS, Settings
from courseflow.core.errors import InvalidTransition, NotFound, Unauthorized, ValidationFailed
from courseflow.core.metrics import COURSE_TRANSITIONS
from courseflow.models.course import (
    ApprovalFeedback,
    Course,
    CourseStatus,
    CourseVersion,
    ReviewCriteria,
    Section,
    WorkflowHistoryEntry,
)
from courseflow.models.principal import Principal
from courseflow.repos.course_repo import CourseRepo
from courseflow.services.notifications import Notifier
from courseflow.services.retry import retry_on_stale_write
from courseflow.services.validation_rules import validate_course

logger = logging.getLogger(__name__)

S = CourseStatus

VALID_TRANSITIONS: dict[CourseStatus, frozenset[CourseStatus]] = {
    S.DRAFT: frozenset({S.PENDING, S.SUBMITTED}),
    S.PENDING: frozenset({S.APPROVED, S.REJECTED, S.DRAFT}),
    S.SUBMITTED: frozenset({S.UNDER_REVIEW, S.DRAFT, S.APPROVED, S.REJECTED}),
    S.UNDER_REVIEW: frozenset({S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.PUBLISHED, S.REJECTED}),
    S.REJECTED: frozenset({S.DRAFT, S.PENDING}),
    S.PUBLISHED: frozenset({S.ARCHIVED, S.SUSPENDED}),
    S.ARCHIVED: frozenset({S.PUBLISHED}),
    S.SUSPENDED: frozenset({S.PUBLISHED, S.ARCHIVED}),
}

_TIMESTAMP_FIELDS: dict[CourseStatus, str] = {
    S.PENDING: "submitted_at",
    S.SUBMITTED: "submitted_at",
    S.UNDER_REVIEW: "review_started_at",
    S.APPROVED: "approved_at",
    S.REJECTED: "rejected_at",
    S.PUBLISHED: "published_at",
    S.ARCHIVED: "archived_at",
    S.SUSPENDED: "suspended_at",
}

# Content may only change while the author holds the course.
_EDITABLE = frozenset({S.DRAFT, S.REJECTED})

_APPROVE_DEFAULT_SCORE = 85
_REJECT_DEFAULT_SCORE = 40

_EPOCH = datetime.min.replace(tzinfo=UTC)


def is_valid_transition(from_status: CourseStatus, to_status: CourseStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class CourseDraft:
    """Authoring payload for ``create``; omitted fields take course defaults."""

    title: str
    description: str = ""
    short_description: str = ""
    category: str | None = "general-it"
    level: str | None = "beginner"
    language: str = "en"
    price: float = 0.0
    tags: tuple[str, ...] = ()
    sections: tuple[Section, ...] = ()


@dataclass(frozen=True, slots=True)
class CourseUpdate:
    """Partial content update.  ``None`` means "leave this field alone"."""

    title: str | None = None
    description: str | None = None
    short_description: str | None = None
    category: str | None = None
    level: str | None = None
    language: str | None = None
    price: float | None = None
    tags: tuple[str, ...] | None = None
    sections: tuple[Section, ...] | None = None

    def changes(self) -> dict[str, object]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass(frozen=True, slots=True)
class ReviewInput:
    """Reviewer decision; anything left out falls back to the defaults."""

    overall_score: int | None = None
    criteria: ReviewCriteria | None = None
    strengths: tuple[str, ...] | None = None
    improvements: tuple[str, ...] | None = None
    requirements: tuple[str, ...] | None = None
    detailed_comments: tuple[str, ...] = ()
    estimated_revision_time: str | None = None


class CourseLifecycle:
    def __init__(
        self,
        courses: CourseRepo,
        notifier: Notifier,
        *,
        settings: Settings = SETTINGS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._courses = courses
        self._notifier = notifier
        self._retry_attempts = settings.write_retry_attempts
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, course_id: str) -> Course:
        course = await self._courses.get(course_id)
        if course is None:
            raise NotFound(f"course {course_id} not found")
        return course

    async def history(self, course_id: str) -> tuple[WorkflowHistoryEntry, ...]:
        return (await self.get(course_id)).workflow_history

    async def versions(self, course_id: str) -> list[CourseVersion]:
        await self.get(course_id)
        return await self._courses.list_versions(course_id)

    async def list_by_status(self, status: CourseStatus) -> list[Course]:
        """Review queue for ``status``, most recently submitted first."""
        courses = await self._courses.list_by_status(status)
        return sorted(courses, key=lambda c: c.submitted_at or _EPOCH, reverse=True)

    # ------------------------------------------------------------------
    # Authoring
    # ------------------------------------------------------------------

    async def create(self, draft: CourseDraft, author: Principal) -> Course:
        now = self._clock()
        course = Course(
            id=str(uuid4()),
            title=draft.title,
            description=draft.description,
            short_description=draft.short_description,
            instructor_id=author.user_id,
            instructor_name=author.name,
            category=draft.category,
            level=draft.level,
            language=draft.language,
            price=draft.price,
            tags=draft.tags,
            sections=draft.sections,
            created_at=now,
            updated_at=now,
        )
        # Drafts may be invalid; the result is only recorded.
        result = validate_course(course)
        entry = self._entry("create", S.DRAFT, S.DRAFT, author, now, "Course created")
        course = replace(
            course,
            validation_result=result,
            quality_score=result.score,
            workflow_history=(entry,),
        )
        stored = await self._courses.add(course)
        COURSE_TRANSITIONS.labels(action="create").inc()
        logger.info(
            "Created course id=%s instructor=%s score=%d",
            stored.id,
            stored.instructor_id,
            result.score,
        )
        return stored

    async def update_content(
        self, course_id: str, actor: Principal, update: CourseUpdate
    ) -> Course:
        changes = update.changes()

        def build(course: Course, now: datetime) -> Course:
            self._require_owner(course, actor, "update")
            if course.status not in _EDITABLE:
                raise InvalidTransition(
                    course.status.value,
                    course.status.value,
                    f"Course content cannot be changed while {course.status.value}",
                )
            edited = replace(course, updated_at=now, **changes)
            result = validate_course(edited)
            entry = self._entry(
                "update",
                course.status,
                course.status,
                actor,
                now,
                "Updated " + ", ".join(sorted(changes)) if changes else None,
            )
            return replace(
                edited,
                validation_result=result,
                quality_score=result.score,
                workflow_history=course.workflow_history + (entry,),
            )

        updated = await self._mutate(course_id, build)
        COURSE_TRANSITIONS.labels(action="update").inc()
        logger.info("Updated course id=%s fields=%s", course_id, sorted(changes))
        return updated

    async def submit(self, course_id: str, actor: Principal) -> Course:
        def build(course: Course, now: datetime) -> Course:
            self._require_owner(course, actor, "submit")
            self._check_edge(course, S.SUBMITTED)
            result = validate_course(course)
            if not result.is_valid:
                logger.info(
                    "Rejected submission course=%s errors=%d",
                    course.id,
                    len(result.errors),
                )
                raise ValidationFailed([issue.message for issue in result.errors])
            return self._transition(
                course,
                S.SUBMITTED,
                "submit",
                actor,
                now,
                "Course submitted for approval",
                validation_result=result,
                quality_score=result.score,
            )

        course = await self._mutate(course_id, build)
        COURSE_TRANSITIONS.labels(action="submit").inc()
        logger.info("Course submitted id=%s by=%s", course.id, actor.user_id)
        await self._notifier.notify_admins(
            "course_submitted",
            {
                "course_id": course.id,
                "title": course.title,
                "instructor_id": course.instructor_id,
                "quality_score": course.quality_score,
            },
        )
        return course

    async def withdraw(
        self, course_id: str, actor: Principal, reason: str | None = None
    ) -> Course:
        """Pull a submitted, pending or rejected course back to draft."""

        def build(course: Course, now: datetime) -> Course:
            self._require_owner(course, actor, "withdraw")
            return self._transition(
                course, S.DRAFT, "withdraw", actor, now, reason or "Returned to draft"
            )

        course = await self._mutate(course_id, build)
        COURSE_TRANSITIONS.labels(action="withdraw").inc()
        logger.info("Course withdrawn to draft id=%s by=%s", course.id, actor.user_id)
        return course

    async def archive(self, course_id: str, actor: Principal, reason: str) -> Course:
        def build(course: Course, now: datetime) -> Course:
            self._require_owner(course, actor, "archive")
            return self._transition(course, S.ARCHIVED, "archive", actor, now, reason)

        course = await self._mutate(course_id, build)
        COURSE_TRANSITIONS.labels(action="archive").inc()
        logger.info("Course archived id=%s by=%s", course.id, actor.user_id)
        return course

    # ------------------------------------------------------------------
    # Review (administrators only)
    # ------------------------------------------------------------------

    async def start_review(self, course_id: str, actor: Principal) -> Course:
        self._require_admin(actor, "start course reviews")

        def build(course: Course, now: datetime) -> Course:
            return self._transition(
                course, S.UNDER_REVIEW, "review", actor, now, "Course review started"
            )

        course = await self._mutate(course_id, build)
        COURSE_TRANSITIONS.labels(action="review").inc()
        logger.info("Course review started id=%s reviewer=%s", course.id, actor.user_id)
        await self._notifier.notify(
            course.instructor_id,
            "course_review_started",
            {"course_id": course.id, "title": course.title},
        )
        return course

    async def approve(
        self, course_id: str, actor: Principal, review: ReviewInput | None = None
    ) -> Course:
        """Approve and publish in one write, recording both steps."""
        self._require_admin(actor, "approve courses")
        review = review or ReviewInput()

        def build(course: Course, now: datetime) -> Course:
            self._check_edge(course, S.APPROVED)
            feedback = self._feedback(
                review,
                actor,
                now,
                status="approved",
                default_score=_APPROVE_DEFAULT_SCORE,
                default_strengths=("Well-structured content",),
                default_improvements=(),
                default_requirements=(),
                default_revision_time="1 week",
            )
            approve = self._entry(
                "approve",
                course.status,
                S.APPROVED,
                actor,
                now,
                "Course approved and auto-published",
            )
            publish = self._entry(
                "publish",
                S.APPROVED,
                S.PUBLISHED,
                actor,
                now,
                "Course auto-published after approval",
            )
            return replace(
                course,
                status=S.PUBLISHED,
                approved_at=now,
                published_at=now,
                updated_at=now,
                approval_feedback=feedback,
                quality_score=feedback.overall_score,
                workflow_history=course.workflow_history + (approve, publish),
            )

        course = await self._mutate(course_id, build)
        COURSE_TRANSITIONS.labels(action="approve").inc()
        COURSE_TRANSITIONS.labels(action="publish").inc()
        logger.info(
            "Course approved and published id=%s reviewer=%s score=%d",
            course.id,
            actor.user_id,
            course.quality_score,
        )
        await self._notifier.notify(
            course.instructor_id,
            "course_approved",
            {
                "course_id": course.id,
                "title": course.title,
                "overall_score": course.quality_score,
            },
        )
        return course

    async def reject(
        self,
        course_id: str,
        actor: Principal,
        reason: str,
        review: ReviewInput | None = None,
    ) -> Course:
        self._require_admin(actor, "reject courses")
        review = review or ReviewInput()

        def build(course: Course, now: datetime) -> Course:
            self._check_edge(course, S.REJECTED)
            feedback = self._feedback(
                review,
                actor,
                now,
                status="rejected",
                default_score=_REJECT_DEFAULT_SCORE,
                default_strengths=(),
                default_improvements=("Needs significant improvement",),
                default_requirements=("Address all critical issues",),
                default_revision_time="1-2 weeks",
            )
            return self._transition(
                course,
                S.REJECTED,
                "reject",
                actor,
                now,
                reason,
                rejection_reason=reason,
                approval_feedback=feedback,
                quality_score=feedback.overall_score,
            )

        course = await self._mutate(course_id, build)
        COURSE_TRANSITIONS.labels(action="reject").inc()
        logger.info("Course rejected id=%s reviewer=%s", course.id, actor.user_id)
        await self._notifier.notify(
            course.instructor_id,
            "course_rejected",
            {"course_id": course.id, "title": course.title, "reason": reason},
        )
        return course

    async def publish(self, course_id: str, actor: Principal) -> Course:
        """Publish an approved course, snapshotting it first."""
        self._require_admin(actor, "publish courses")

        async def attempt() -> Course:
            course = await self.get(course_id)
            self._check_edge(course, S.PUBLISHED)
            now = self._clock()
            # The snapshot is stored before the status change; a failed
            # snapshot leaves the course approved.
            await self._courses.add_version(
                CourseVersion.of(course, created_by=actor.user_id, created_at=now)
            )
            return await self._courses.save(
                self._transition(
                    course,
                    S.PUBLISHED,
                    "publish",
                    actor,
                    now,
                    "Course published and available to learners",
                )
            )

        course = await retry_on_stale_write(
            attempt, attempts=self._retry_attempts, document="course"
        )
        COURSE_TRANSITIONS.labels(action="publish").inc()
        logger.info(
            "Course published id=%s version=%s by=%s",
            course.id,
            course.version,
            actor.user_id,
        )
        return course

    async def suspend(self, course_id: str, actor: Principal, reason: str) -> Course:
        self._require_admin(actor, "suspend courses")

        def build(course: Course, now: datetime) -> Course:
            return self._transition(course, S.SUSPENDED, "suspend", actor, now, reason)

        course = await self._mutate(course_id, build)
        COURSE_TRANSITIONS.labels(action="suspend").inc()
        logger.warning("Course suspended id=%s by=%s", course.id, actor.user_id)
        return course

    async def reinstate(
        self, course_id: str, actor: Principal, reason: str | None = None
    ) -> Course:
        """Return an archived or suspended course to published."""
        self._require_admin(actor, "reinstate courses")

        def build(course: Course, now: datetime) -> Course:
            return self._transition(
                course, S.PUBLISHED, "reinstate", actor, now, reason
            )

        course = await self._mutate(course_id, build)
        COURSE_TRANSITIONS.labels(action="reinstate").inc()
        logger.info("Course reinstated id=%s by=%s", course.id, actor.user_id)
        return course

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _mutate(
        self, course_id: str, build: Callable[[Course, datetime], Course]
    ) -> Course:
        async def attempt() -> Course:
            course = await self.get(course_id)
            return await self._courses.save(build(course, self._clock()))

        return await retry_on_stale_write(
            attempt, attempts=self._retry_attempts, document="course"
        )

    @staticmethod
    def _require_admin(actor: Principal, what: str) -> None:
        if not actor.is_admin():
            logger.warning("Access denied: user=%s cannot %s", actor.user_id, what)
            raise Unauthorized(f"Only admins can {what}")

    @staticmethod
    def _require_owner(course: Course, actor: Principal, verb: str) -> None:
        if actor.is_admin() or course.instructor_id == actor.user_id:
            return
        logger.warning(
            "Access denied: user=%s cannot %s course=%s",
            actor.user_id,
            verb,
            course.id,
        )
        raise Unauthorized(f"You can only {verb} your own courses")

    @staticmethod
    def _check_edge(course: Course, to_status: CourseStatus) -> None:
        if not is_valid_transition(course.status, to_status):
            raise InvalidTransition(course.status.value, to_status.value)

    @staticmethod
    def _entry(
        action: str,
        from_status: CourseStatus,
        to_status: CourseStatus,
        actor: Principal,
        now: datetime,
        reason: str | None,
    ) -> WorkflowHistoryEntry:
        return WorkflowHistoryEntry.new(
            action=action,
            from_status=from_status,
            to_status=to_status,
            performed_by=actor.user_id,
            performed_by_role=actor.primary_role,
            timestamp=now,
            reason=reason,
        )

    def _transition(
        self,
        course: Course,
        to_status: CourseStatus,
        action: str,
        actor: Principal,
        now: datetime,
        reason: str | None,
        **changes: object,
    ) -> Course:
        self._check_edge(course, to_status)
        stamp = _TIMESTAMP_FIELDS.get(to_status)
        if stamp is not None:
            changes[stamp] = now
        entry = self._entry(action, course.status, to_status, actor, now, reason)
        return replace(
            course,
            status=to_status,
            updated_at=now,
            workflow_history=course.workflow_history + (entry,),
            **changes,
        )

    @staticmethod
    def _feedback(
        review: ReviewInput,
        actor: Principal,
        now: datetime,
        *,
        status: str,
        default_score: int,
        default_strengths: tuple[str, ...],
        default_improvements: tuple[str, ...],
        default_requirements: tuple[str, ...],
        default_revision_time: str,
    ) -> ApprovalFeedback:
        def _or(value, default):
            return default if value is None else value

        return ApprovalFeedback(
            id=str(uuid4()),
            reviewer_id=actor.user_id,
            reviewer_name=actor.name,
            status=status,
            overall_score=_or(review.overall_score, default_score),
            criteria=_or(review.criteria, ReviewCriteria.uniform(default_score)),
            strengths=_or(review.strengths, default_strengths),
            improvements=_or(review.improvements, default_improvements),
            requirements=_or(review.requirements, default_requirements),
            detailed_comments=review.detailed_comments,
            reviewed_at=now,
            estimated_revision_time=_or(
                review.estimated_revision_time, default_revision_time
            ),
        )
