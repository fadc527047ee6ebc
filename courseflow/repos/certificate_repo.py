from __future__ import annotations

from typing import Protocol

from courseflow.core.errors import StaleWriteError
from courseflow.models.certificate import Certificate


class CertificateRepo(Protocol):
    async def get(self, certificate_id: str) -> Certificate | None: ...
    async def get_by_enrollment(self, enrollment_id: str) -> Certificate | None: ...
    async def add(self, certificate: Certificate) -> Certificate: ...
    async def list_by_user(self, user_id: str) -> list[Certificate]: ...


class InMemoryCertificateRepo:
    def __init__(self) -> None:
        self._store: dict[str, Certificate] = {}
        self._by_enrollment: dict[str, str] = {}

    async def get(self, certificate_id: str) -> Certificate | None:
        return self._store.get(certificate_id)

    async def get_by_enrollment(self, enrollment_id: str) -> Certificate | None:
        certificate_id = self._by_enrollment.get(enrollment_id)
        if certificate_id is None:
            return None
        return self._store.get(certificate_id)

    async def add(self, certificate: Certificate) -> Certificate:
        # One certificate per enrollment; a second issuer loses the race.
        if certificate.enrollment_id in self._by_enrollment:
            raise StaleWriteError(
                f"enrollment {certificate.enrollment_id} already has a certificate"
            )
        self._store[certificate.id] = certificate
        self._by_enrollment[certificate.enrollment_id] = certificate.id
        return certificate

    async def list_by_user(self, user_id: str) -> list[Certificate]:
        return [c for c in self._store.values() if c.user_id == user_id]
