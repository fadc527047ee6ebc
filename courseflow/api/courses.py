"""Course authoring, review and enrollment endpoints.

Authoring sequence:
  Instructor -> POST /v1/courses                  (draft, validation recorded)
             -> PATCH /v1/courses/{id}            (while draft or rejected)
             -> POST /v1/courses/{id}/submit      (422 with errors if invalid)
  Admin      -> GET  /v1/courses/review-queue
             -> POST /v1/courses/{id}/review
             -> POST /v1/courses/{id}/approve     (approved and published)
                or /reject                        (author edits, withdraws, resubmits)

Role checks that depend on the course (ownership) live in CourseLifecycle;
the router only gates on platform roles.
"""

from __future__ import annotations

import datetime
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from courseflow.api.dependencies import Admin, CourseAuthor, CurrentUser
from courseflow.models.course import (
    CourseStatus,
    Lesson,
    ReviewCriteria,
    Section,
)
from courseflow.services.container import (
    course_lifecycle,
    enrollment_service,
    progress_analytics,
    progress_consistency,
)
from courseflow.services.course_lifecycle import CourseDraft, CourseUpdate, ReviewInput
from courseflow.services.validation_rules import validate_course

router = APIRouter(prefix="/v1/courses", tags=["courses"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LessonIn(BaseModel):
    id: str = Field(min_length=1)
    title: str
    type: str = "text"
    video_url: str | None = None
    has_captions: bool = False
    has_transcription: bool = False

    def to_lesson(self) -> Lesson:
        return Lesson(**self.model_dump())


class SectionIn(BaseModel):
    id: str = Field(min_length=1)
    title: str
    lessons: list[LessonIn] = []
    required_lessons: list[str] = []

    def to_section(self) -> Section:
        return Section(
            id=self.id,
            title=self.title,
            lessons=tuple(lesson.to_lesson() for lesson in self.lessons),
            required_lessons=tuple(self.required_lessons),
        )


class CourseIn(BaseModel):
    title: str
    description: str = ""
    short_description: str = ""
    category: str | None = "general-it"
    level: str | None = "beginner"
    language: str = "en"
    price: float = Field(default=0.0, ge=0)
    tags: list[str] = []
    sections: list[SectionIn] = []


class CourseUpdateIn(BaseModel):
    title: str | None = None
    description: str | None = None
    short_description: str | None = None
    category: str | None = None
    level: str | None = None
    language: str | None = None
    price: float | None = Field(default=None, ge=0)
    tags: list[str] | None = None
    sections: list[SectionIn] | None = None

    def to_update(self) -> CourseUpdate:
        return CourseUpdate(
            title=self.title,
            description=self.description,
            short_description=self.short_description,
            category=self.category,
            level=self.level,
            language=self.language,
            price=self.price,
            tags=None if self.tags is None else tuple(self.tags),
            sections=(
                None
                if self.sections is None
                else tuple(section.to_section() for section in self.sections)
            ),
        )


class CriteriaIn(BaseModel):
    content_quality: int = Field(ge=0, le=100)
    technical_quality: int = Field(ge=0, le=100)
    marketability: int = Field(ge=0, le=100)
    accessibility: int = Field(ge=0, le=100)
    engagement: int = Field(ge=0, le=100)


class ReviewIn(BaseModel):
    overall_score: int | None = Field(default=None, ge=0, le=100)
    criteria: CriteriaIn | None = None
    strengths: list[str] | None = None
    improvements: list[str] | None = None
    requirements: list[str] | None = None
    detailed_comments: list[str] = []
    estimated_revision_time: str | None = None

    def to_review(self) -> ReviewInput:
        def _tuple(values: list[str] | None) -> tuple[str, ...] | None:
            return None if values is None else tuple(values)

        return ReviewInput(
            overall_score=self.overall_score,
            criteria=(
                None if self.criteria is None else ReviewCriteria(**self.criteria.model_dump())
            ),
            strengths=_tuple(self.strengths),
            improvements=_tuple(self.improvements),
            requirements=_tuple(self.requirements),
            detailed_comments=tuple(self.detailed_comments),
            estimated_revision_time=self.estimated_revision_time,
        )


class RejectIn(ReviewIn):
    reason: str = Field(min_length=1)


class ReasonIn(BaseModel):
    reason: str = Field(min_length=1)


class OptionalReasonIn(BaseModel):
    reason: str | None = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LessonOut(BaseModel):
    id: str
    title: str
    type: str
    video_url: str | None
    has_captions: bool
    has_transcription: bool


class SectionOut(BaseModel):
    id: str
    title: str
    lessons: list[LessonOut]
    required_lessons: list[str]


class ValidationIssueOut(BaseModel):
    field: str
    message: str
    severity: str
    suggestion: str | None


class ValidationResultOut(BaseModel):
    is_valid: bool
    errors: list[ValidationIssueOut]
    warnings: list[ValidationIssueOut]
    score: int


class CriteriaOut(BaseModel):
    content_quality: int
    technical_quality: int
    marketability: int
    accessibility: int
    engagement: int


class FeedbackOut(BaseModel):
    id: str
    reviewer_id: str
    reviewer_name: str
    status: str
    overall_score: int
    criteria: CriteriaOut
    strengths: list[str]
    improvements: list[str]
    requirements: list[str]
    detailed_comments: list[str]
    reviewed_at: datetime.datetime
    estimated_revision_time: str


class HistoryEntryOut(BaseModel):
    id: str
    action: str
    from_status: CourseStatus
    to_status: CourseStatus
    performed_by: str
    performed_by_role: str
    timestamp: datetime.datetime
    reason: str


class CourseOut(BaseModel):
    id: str
    title: str
    description: str
    short_description: str
    instructor_id: str
    instructor_name: str
    category: str | None
    level: str | None
    language: str
    price: float
    tags: list[str]
    sections: list[SectionOut]
    status: CourseStatus
    version: str
    quality_score: int
    validation_result: ValidationResultOut | None
    approval_feedback: FeedbackOut | None
    rejection_reason: str | None
    created_at: datetime.datetime
    updated_at: datetime.datetime
    submitted_at: datetime.datetime | None
    review_started_at: datetime.datetime | None
    approved_at: datetime.datetime | None
    rejected_at: datetime.datetime | None
    published_at: datetime.datetime | None
    archived_at: datetime.datetime | None
    suspended_at: datetime.datetime | None


class CourseSummaryOut(BaseModel):
    id: str
    title: str
    instructor_id: str
    status: CourseStatus
    quality_score: int
    submitted_at: datetime.datetime | None


class VersionOut(BaseModel):
    id: str
    course_id: str
    version: str
    created_by: str
    created_at: datetime.datetime


class EnrollmentOut(BaseModel):
    id: str
    user_id: str
    course_id: str
    status: str
    progress: int
    enrolled_at: datetime.datetime
    completed_at: datetime.datetime | None


class CourseStatsOut(BaseModel):
    total_learners: int
    average_progress: int
    average_time_spent: int
    completed: int
    active_last_7_days: int


class SweepOut(BaseModel):
    checked: int
    fixed: int
    fixes: dict[str, list[str]]


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("", response_model=list[CourseSummaryOut])
async def list_courses(
    _principal: CurrentUser,
):
    """Published catalogue."""
    return await course_lifecycle.list_by_status(CourseStatus.PUBLISHED)


@router.get("/review-queue", response_model=list[CourseSummaryOut])
async def review_queue(
    _principal: Admin,
    queue_status: Annotated[CourseStatus, Query(alias="status")] = CourseStatus.SUBMITTED,
):
    return await course_lifecycle.list_by_status(queue_status)


@router.get("/{course_id}", response_model=CourseOut)
async def get_course(
    course_id: str,
    _principal: CurrentUser,
):
    return await course_lifecycle.get(course_id)


@router.get("/{course_id}/history", response_model=list[HistoryEntryOut])
async def get_history(
    course_id: str,
    _principal: CourseAuthor,
):
    return list(await course_lifecycle.history(course_id))


@router.get("/{course_id}/versions", response_model=list[VersionOut])
async def get_versions(
    course_id: str,
    _principal: CourseAuthor,
) -> list[VersionOut]:
    return [
        VersionOut(
            id=v.id,
            course_id=v.course_id,
            version=v.version,
            created_by=v.created_by,
            created_at=v.created_at,
        )
        for v in await course_lifecycle.versions(course_id)
    ]


@router.get("/{course_id}/validation", response_model=ValidationResultOut)
async def get_validation(
    course_id: str,
    _principal: CourseAuthor,
):
    """Dry-run the submission checks against the current content."""
    return validate_course(await course_lifecycle.get(course_id))


@router.get("/{course_id}/stats", response_model=CourseStatsOut)
async def get_course_stats(
    course_id: str,
    _principal: CourseAuthor,
):
    return await progress_analytics.course_stats(course_id)


# ---------------------------------------------------------------------------
# Authoring
# ---------------------------------------------------------------------------


@router.post("", response_model=CourseOut, status_code=status.HTTP_201_CREATED)
async def create_course(
    body: CourseIn,
    principal: CourseAuthor,
):
    draft = CourseDraft(
        title=body.title,
        description=body.description,
        short_description=body.short_description,
        category=body.category,
        level=body.level,
        language=body.language,
        price=body.price,
        tags=tuple(body.tags),
        sections=tuple(section.to_section() for section in body.sections),
    )
    return await course_lifecycle.create(draft, principal)


@router.patch("/{course_id}", response_model=CourseOut)
async def update_course(
    course_id: str,
    body: CourseUpdateIn,
    principal: CourseAuthor,
):
    return await course_lifecycle.update_content(course_id, principal, body.to_update())


@router.post("/{course_id}/submit", response_model=CourseOut)
async def submit_course(
    course_id: str,
    principal: CourseAuthor,
):
    return await course_lifecycle.submit(course_id, principal)


@router.post("/{course_id}/withdraw", response_model=CourseOut)
async def withdraw_course(
    course_id: str,
    principal: CourseAuthor,
    body: OptionalReasonIn | None = None,
):
    reason = body.reason if body else None
    return await course_lifecycle.withdraw(course_id, principal, reason)


@router.post("/{course_id}/archive", response_model=CourseOut)
async def archive_course(
    course_id: str,
    body: ReasonIn,
    principal: CourseAuthor,
):
    return await course_lifecycle.archive(course_id, principal, body.reason)


# ---------------------------------------------------------------------------
# Review (the engine enforces the admin role as well)
# ---------------------------------------------------------------------------


@router.post("/{course_id}/review", response_model=CourseOut)
async def start_review(
    course_id: str,
    principal: CurrentUser,
):
    return await course_lifecycle.start_review(course_id, principal)


@router.post("/{course_id}/approve", response_model=CourseOut)
async def approve_course(
    course_id: str,
    principal: CurrentUser,
    body: ReviewIn | None = None,
):
    review = body.to_review() if body else None
    return await course_lifecycle.approve(course_id, principal, review)


@router.post("/{course_id}/reject", response_model=CourseOut)
async def reject_course(
    course_id: str,
    body: RejectIn,
    principal: CurrentUser,
):
    return await course_lifecycle.reject(course_id, principal, body.reason, body.to_review())


@router.post("/{course_id}/publish", response_model=CourseOut)
async def publish_course(
    course_id: str,
    principal: CurrentUser,
):
    return await course_lifecycle.publish(course_id, principal)


@router.post("/{course_id}/suspend", response_model=CourseOut)
async def suspend_course(
    course_id: str,
    body: ReasonIn,
    principal: CurrentUser,
):
    return await course_lifecycle.suspend(course_id, principal, body.reason)


@router.post("/{course_id}/reinstate", response_model=CourseOut)
async def reinstate_course(
    course_id: str,
    principal: CurrentUser,
    body: OptionalReasonIn | None = None,
):
    reason = body.reason if body else None
    return await course_lifecycle.reinstate(course_id, principal, reason)


@router.post("/{course_id}/consistency-sweep", response_model=SweepOut)
async def sweep_course(
    course_id: str,
    _principal: Admin,
) -> SweepOut:
    reports = await progress_consistency.sweep_course(course_id)
    fixed = {r.progress.user_id: list(r.fixes) for r in reports if r.was_inconsistent}
    return SweepOut(checked=len(reports), fixed=len(fixed), fixes=fixed)


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------


@router.post(
    "/{course_id}/enroll",
    response_model=EnrollmentOut,
    status_code=status.HTTP_201_CREATED,
)
async def enroll_in_course(
    course_id: str,
    principal: CurrentUser,
):
    enrollment, created = await enrollment_service.enroll(principal.user_id, course_id)
    if not created:
        raise HTTPException(status_code=409, detail="already enrolled")
    return enrollment
