"""Certificate issuance on course completion.

Issuance touches three documents (enrollment, progress, certificate)
without a transaction, so it is made safe to re-run instead: a second
call for the same enrollment returns the certificate that already
exists.  Two concurrent issuers race on the repository's one-per-
enrollment constraint and the loser returns the winner's record.

Rendering the certificate artifact (PDF, image) happens elsewhere.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from courseflow.core.errors import NotFound, StaleWriteError, ValidationFailed
from courseflow.core.metrics import CERTIFICATES_ISSUED
from courseflow.models.certificate import Certificate
from courseflow.models.enrollment import Enrollment
from courseflow.models.progress import Progress, round_half_up
from courseflow.repos.certificate_repo import CertificateRepo
from courseflow.repos.enrollment_repo import EnrollmentRepo
from courseflow.repos.progress_repo import ProgressRepo

logger = logging.getLogger(__name__)

QUIZ_WEIGHT = 0.7
PROGRESS_WEIGHT = 0.3


def _utcnow() -> datetime:
    return datetime.now(UTC)


def final_grade(enrollment_progress: int, progress: Progress | None) -> int:
    """Quiz-weighted grade, or the raw enrollment progress without quizzes."""
    if progress is None or not progress.quiz_scores:
        return enrollment_progress
    percentages = [score.best_percentage for score in progress.quiz_scores.values()]
    quiz_average = sum(percentages) / len(percentages)
    weighted = quiz_average * QUIZ_WEIGHT + enrollment_progress * PROGRESS_WEIGHT
    return round_half_up(min(100.0, max(0.0, weighted)))


class CertificateService:
    def __init__(
        self,
        certificates: CertificateRepo,
        enrollments: EnrollmentRepo,
        progress: ProgressRepo,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._certificates = certificates
        self._enrollments = enrollments
        self._progress = progress
        self._clock = clock

    async def get(self, certificate_id: str) -> Certificate:
        certificate = await self._certificates.get(certificate_id)
        if certificate is None:
            raise NotFound(f"certificate {certificate_id} not found")
        return certificate

    async def list_for_user(self, user_id: str) -> list[Certificate]:
        certificates = await self._certificates.list_by_user(user_id)
        return sorted(certificates, key=lambda c: c.issued_at, reverse=True)

    async def issue(self, user_id: str, course_id: str) -> Certificate:
        """Issue for a learner's completed enrollment in ``course_id``."""
        enrollment = await self._enrollments.get_by_user_and_course(user_id, course_id)
        if enrollment is None:
            raise NotFound(f"user {user_id} is not enrolled in course {course_id}")
        if enrollment.status != "completed" and enrollment.progress < 100:
            raise ValidationFailed(
                [f"Course is {enrollment.progress}% complete; certificates need 100%"]
            )
        return await self.issue_for_enrollment(enrollment)

    async def issue_for_enrollment(
        self, enrollment: Enrollment, progress: Progress | None = None
    ) -> Certificate:
        existing = await self._certificates.get_by_enrollment(enrollment.id)
        if existing is not None:
            logger.info(
                "Certificate already issued enrollment=%s certificate=%s",
                enrollment.id,
                existing.id,
            )
            return existing

        if progress is None:
            progress = await self._progress.get(enrollment.user_id, enrollment.course_id)

        certificate = Certificate.new(
            user_id=enrollment.user_id,
            course_id=enrollment.course_id,
            enrollment_id=enrollment.id,
            final_grade=final_grade(enrollment.progress, progress),
            issued_at=self._clock(),
        )
        try:
            stored = await self._certificates.add(certificate)
        except StaleWriteError:
            winner = await self._certificates.get_by_enrollment(enrollment.id)
            if winner is None:
                raise
            logger.info(
                "Concurrent issuance resolved enrollment=%s certificate=%s",
                enrollment.id,
                winner.id,
            )
            return winner

        CERTIFICATES_ISSUED.inc()
        logger.info(
            "Certificate issued number=%s user=%s course=%s grade=%d",
            stored.certificate_number,
            stored.user_id,
            stored.course_id,
            stored.final_grade,
        )
        return stored
