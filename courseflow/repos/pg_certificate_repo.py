"""PostgreSQL implementation of CertificateRepo.

Certificates are immutable once issued, so there is no revision column;
the unique index on enrollment_id is what keeps issuance idempotent.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseflow.core.errors import StaleWriteError
from courseflow.db.documents import CERTIFICATE, from_document, to_document
from courseflow.db.tables import CertificateRow
from courseflow.models.certificate import Certificate


class PgCertificateRepo:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def get(self, certificate_id: str) -> Certificate | None:
        async with self._sessions() as session:
            row = await session.get(CertificateRow, certificate_id)
        return None if row is None else from_document(CERTIFICATE, row.doc)

    async def get_by_enrollment(self, enrollment_id: str) -> Certificate | None:
        stmt = select(CertificateRow).where(CertificateRow.enrollment_id == enrollment_id)
        async with self._sessions() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return None if row is None else from_document(CERTIFICATE, row.doc)

    async def add(self, certificate: Certificate) -> Certificate:
        async with self._sessions() as session:
            session.add(
                CertificateRow(
                    id=certificate.id,
                    enrollment_id=certificate.enrollment_id,
                    user_id=certificate.user_id,
                    course_id=certificate.course_id,
                    doc=to_document(CERTIFICATE, certificate),
                )
            )
            try:
                await session.commit()
            except IntegrityError as e:
                raise StaleWriteError(
                    f"enrollment {certificate.enrollment_id} already has a certificate"
                ) from e
        return certificate

    async def list_by_user(self, user_id: str) -> list[Certificate]:
        stmt = select(CertificateRow).where(CertificateRow.user_id == user_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [from_document(CERTIFICATE, row.doc) for row in rows]
