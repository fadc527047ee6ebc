"""Process-wide wiring of repositories and services.

Built once at import.  Follows the same switch as the rest of the
infrastructure: PostgreSQL repositories when DATABASE_URL is set,
in-memory repositories otherwise (local dev, tests).  Services are
stateless apart from these injected collaborators.
"""

from __future__ import annotations

from courseflow.db.engine import async_session_factory
from courseflow.repos.certificate_repo import CertificateRepo, InMemoryCertificateRepo
from courseflow.repos.course_repo import CourseRepo, InMemoryCourseRepo
from courseflow.repos.enrollment_repo import EnrollmentRepo, InMemoryEnrollmentRepo
from courseflow.repos.progress_repo import InMemoryProgressRepo, ProgressRepo
from courseflow.services.certificate_service import CertificateService
from courseflow.services.course_lifecycle import CourseLifecycle
from courseflow.services.enrollments import EnrollmentService
from courseflow.services.notifications import Notifier
from courseflow.services.progress_analytics import ProgressAnalytics
from courseflow.services.progress_consistency import ProgressConsistency
from courseflow.services.progress_store import ProgressStore
from courseflow.services.task_queue import task_queue

if async_session_factory is not None:
    from courseflow.repos.pg_certificate_repo import PgCertificateRepo
    from courseflow.repos.pg_course_repo import PgCourseRepo
    from courseflow.repos.pg_enrollment_repo import PgEnrollmentRepo
    from courseflow.repos.pg_progress_repo import PgProgressRepo

    course_repo: CourseRepo = PgCourseRepo(async_session_factory)
    progress_repo: ProgressRepo = PgProgressRepo(async_session_factory)
    enrollment_repo: EnrollmentRepo = PgEnrollmentRepo(async_session_factory)
    certificate_repo: CertificateRepo = PgCertificateRepo(async_session_factory)
else:
    course_repo = InMemoryCourseRepo()
    progress_repo = InMemoryProgressRepo()
    enrollment_repo = InMemoryEnrollmentRepo()
    certificate_repo = InMemoryCertificateRepo()

notifier = Notifier(task_queue)

course_lifecycle = CourseLifecycle(course_repo, notifier)
progress_store = ProgressStore(progress_repo, course_repo)
certificate_service = CertificateService(certificate_repo, enrollment_repo, progress_repo)
progress_consistency = ProgressConsistency(
    progress_repo, course_repo, enrollment_repo, certificate_service, notifier
)
progress_analytics = ProgressAnalytics(progress_repo, course_repo)
enrollment_service = EnrollmentService(enrollment_repo, course_repo)
