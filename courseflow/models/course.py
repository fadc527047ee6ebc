from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import uuid4


class CourseStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PUBLISHED = "published"
    ARCHIVED = "archived"
    SUSPENDED = "suspended"


@dataclass(frozen=True, slots=True)
class Lesson:
    id: str
    title: str
    type: str = "text"  # video|text|quiz|assignment|interactive
    video_url: str | None = None
    has_captions: bool = False
    has_transcription: bool = False


@dataclass(frozen=True, slots=True)
class Section:
    id: str
    title: str
    lessons: tuple[Lesson, ...] = ()
    # Empty means every lesson in the section is required.
    required_lessons: tuple[str, ...] = ()

    def required_lesson_ids(self) -> tuple[str, ...]:
        if self.required_lessons:
            return self.required_lessons
        return tuple(lesson.id for lesson in self.lessons)


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    field: str
    message: str
    severity: str = "error"  # error|warning
    suggestion: str | None = None


@dataclass(frozen=True, slots=True)
class ValidationResult:
    is_valid: bool
    errors: tuple[ValidationIssue, ...]
    warnings: tuple[ValidationIssue, ...]
    score: int


@dataclass(frozen=True, slots=True)
class ReviewCriteria:
    content_quality: int
    technical_quality: int
    marketability: int
    accessibility: int
    engagement: int

    @staticmethod
    def uniform(score: int) -> ReviewCriteria:
        return ReviewCriteria(
            content_quality=score,
            technical_quality=score,
            marketability=score,
            accessibility=score,
            engagement=score,
        )


@dataclass(frozen=True, slots=True)
class ApprovalFeedback:
    id: str
    reviewer_id: str
    reviewer_name: str
    status: str  # approved|rejected
    overall_score: int
    criteria: ReviewCriteria
    strengths: tuple[str, ...]
    improvements: tuple[str, ...]
    requirements: tuple[str, ...]
    detailed_comments: tuple[str, ...]
    reviewed_at: datetime
    estimated_revision_time: str


@dataclass(frozen=True, slots=True)
class WorkflowHistoryEntry:
    """One row of the append-only audit trail."""

    id: str
    action: str  # create|update|submit|review|approve|reject|publish|archive|...
    from_status: CourseStatus
    to_status: CourseStatus
    performed_by: str
    performed_by_role: str
    timestamp: datetime
    reason: str = "No reason provided"

    @staticmethod
    def new(
        *,
        action: str,
        from_status: CourseStatus,
        to_status: CourseStatus,
        performed_by: str,
        performed_by_role: str,
        timestamp: datetime,
        reason: str | None = None,
    ) -> WorkflowHistoryEntry:
        return WorkflowHistoryEntry(
            id=str(uuid4()),
            action=action,
            from_status=from_status,
            to_status=to_status,
            performed_by=performed_by,
            performed_by_role=performed_by_role,
            timestamp=timestamp,
            reason=reason or "No reason provided",
        )


@dataclass(frozen=True, slots=True)
class Course:
    id: str
    title: str
    instructor_id: str
    created_at: datetime
    updated_at: datetime
    description: str = ""
    short_description: str = ""
    instructor_name: str = ""
    category: str | None = None
    level: str | None = None
    language: str = "en"
    price: float = 0.0
    tags: tuple[str, ...] = ()
    sections: tuple[Section, ...] = ()
    status: CourseStatus = CourseStatus.DRAFT
    version: str = "1.0.0"
    workflow_history: tuple[WorkflowHistoryEntry, ...] = ()
    validation_result: ValidationResult | None = None
    approval_feedback: ApprovalFeedback | None = None
    rejection_reason: str | None = None
    quality_score: int = 0
    submitted_at: datetime | None = None
    review_started_at: datetime | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    published_at: datetime | None = None
    archived_at: datetime | None = None
    suspended_at: datetime | None = None
    revision: int = 0

    @property
    def total_lessons(self) -> int:
        return sum(len(section.lessons) for section in self.sections)

    def lesson_ids(self) -> frozenset[str]:
        """The valid-lesson-id set used for orphan pruning."""
        return frozenset(
            lesson.id for section in self.sections for lesson in section.lessons
        )

    def section_ids(self) -> tuple[str, ...]:
        return tuple(section.id for section in self.sections)

    def find_section(self, section_id: str) -> Section | None:
        for section in self.sections:
            if section.id == section_id:
                return section
        return None


@dataclass(frozen=True, slots=True)
class CourseVersion:
    """Snapshot taken right before a course is published."""

    id: str
    course_id: str
    version: str
    snapshot: Course
    created_by: str
    created_at: datetime

    @staticmethod
    def of(course: Course, *, created_by: str, created_at: datetime) -> CourseVersion:
        return CourseVersion(
            id=str(uuid4()),
            course_id=course.id,
            version=course.version,
            snapshot=course,
            created_by=created_by,
            created_at=created_at,
        )
