"""SQLAlchemy table definitions.

Courses, progress, enrollments and certificates are stored as JSONB
documents next to the handful of columns we filter on.  The domain
dataclasses in courseflow/models/ stay as-is; repos convert between
rows and dataclasses via courseflow/db/documents.py.

Every mutable document has a ``revision`` column.  Writers update with
``WHERE id = :id AND revision = :expected``; zero affected rows means
someone else wrote first (optimistic concurrency).
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from courseflow.db.engine import Base


class CourseRow(Base):
    __tablename__ = "courses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    instructor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, index=True
    )  # draft|pending|submitted|under_review|approved|rejected|published|...
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    doc: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)


class CourseVersionRow(Base):
    __tablename__ = "course_versions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    course_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("courses.id"), nullable=False, index=True
    )
    version: Mapped[str] = mapped_column(String(32), nullable=False)
    doc: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)


class ProgressRow(Base):
    __tablename__ = "progress"
    __table_args__ = (UniqueConstraint("user_id", "course_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    doc: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)


class EnrollmentRow(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("user_id", "course_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    doc: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)


class CertificateRow(Base):
    __tablename__ = "certificates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    enrollment_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    doc: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
