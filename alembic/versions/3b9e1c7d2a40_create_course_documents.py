"""create course, progress, enrollment and certificate documents

Revision ID: 3b9e1c7d2a40
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b9e1c7d2a40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "courses",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("instructor_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("doc", postgresql.JSONB(), nullable=False),
    )
    op.create_index("ix_courses_status", "courses", ["status"])

    op.create_table(
        "course_versions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "course_id",
            sa.String(length=64),
            sa.ForeignKey("courses.id"),
            nullable=False,
        ),
        sa.Column("version", sa.String(length=32), nullable=False),
        sa.Column("doc", postgresql.JSONB(), nullable=False),
    )
    op.create_index("ix_course_versions_course_id", "course_versions", ["course_id"])

    for name in ("progress", "enrollments"):
        op.create_table(
            name,
            sa.Column("id", sa.String(length=64), primary_key=True),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("course_id", sa.String(length=64), nullable=False),
            sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("doc", postgresql.JSONB(), nullable=False),
            sa.UniqueConstraint("user_id", "course_id"),
        )
        op.create_index(f"ix_{name}_course_id", name, ["course_id"])

    op.create_table(
        "certificates",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("enrollment_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("course_id", sa.String(length=64), nullable=False),
        sa.Column("doc", postgresql.JSONB(), nullable=False),
    )
    op.create_index("ix_certificates_user_id", "certificates", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_certificates_user_id", table_name="certificates")
    op.drop_table("certificates")
    for name in ("enrollments", "progress"):
        op.drop_index(f"ix_{name}_course_id", table_name=name)
        op.drop_table(name)
    op.drop_index("ix_course_versions_course_id", table_name="course_versions")
    op.drop_table("course_versions")
    op.drop_index("ix_courses_status", table_name="courses")
    op.drop_table("courses")
