"""Readiness scoring for course submission.

A course starts at 100 and loses a fixed number of points per problem.
Errors block submission; warnings only lower the score.  The function
is pure: the same course structure always yields the same result.
"""

from __future__ import annotations

from courseflow.models.course import Course, ValidationIssue, ValidationResult

TITLE_MIN_LENGTH = 3
DESCRIPTION_MIN_LENGTH = 20
MIN_RECOMMENDED_LESSONS = 3

_ASSESSMENT_TYPES = frozenset({"quiz", "assignment"})


def validate_course(course: Course) -> ValidationResult:
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    score = 100

    if len((course.title or "").strip()) < TITLE_MIN_LENGTH:
        errors.append(
            ValidationIssue(
                field="title",
                message=f"Title must be at least {TITLE_MIN_LENGTH} characters long",
            )
        )
        score -= 20

    if len((course.description or "").strip()) < DESCRIPTION_MIN_LENGTH:
        errors.append(
            ValidationIssue(
                field="description",
                message=(
                    f"Description must be at least {DESCRIPTION_MIN_LENGTH} "
                    "characters long"
                ),
            )
        )
        score -= 15

    if not course.category:
        errors.append(ValidationIssue(field="category", message="Category is required"))
        score -= 10

    if not course.level:
        errors.append(ValidationIssue(field="level", message="Level is required"))
        score -= 10

    lessons = [lesson for section in course.sections for lesson in section.lessons]

    if not course.sections:
        errors.append(
            ValidationIssue(
                field="sections",
                message="Course must have at least one section",
            )
        )
        score -= 25
    else:
        if len(lessons) < MIN_RECOMMENDED_LESSONS:
            warnings.append(
                ValidationIssue(
                    field="sections",
                    message=(
                        f"Course should have at least {MIN_RECOMMENDED_LESSONS} "
                        "lessons for better learning outcomes"
                    ),
                    severity="warning",
                    suggestion="Add more lessons or combine existing content",
                )
            )
            score -= 5

        if not any(lesson.type == "video" and lesson.video_url for lesson in lessons):
            warnings.append(
                ValidationIssue(
                    field="content",
                    message="Course without video content may have lower engagement",
                    severity="warning",
                    suggestion="Consider adding video lessons",
                )
            )
            score -= 10

        if not any(lesson.type in _ASSESSMENT_TYPES for lesson in lessons):
            warnings.append(
                ValidationIssue(
                    field="assessments",
                    message="Course should include quizzes or assignments",
                    severity="warning",
                    suggestion="Add assessments to validate learning",
                )
            )
            score -= 10

        if not any(lesson.has_captions or lesson.has_transcription for lesson in lessons):
            warnings.append(
                ValidationIssue(
                    field="accessibility",
                    message=(
                        "Consider adding accessibility features like captions "
                        "or transcriptions"
                    ),
                    severity="warning",
                    suggestion="Improve accessibility to reach more learners",
                )
            )
            score -= 5

    return ValidationResult(
        is_valid=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
        score=max(0, score),
    )
