from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4


def generate_certificate_number(now: datetime) -> str:
    """CERT-<year>-<6 timestamp digits>-<3 random digits>."""
    stamp = int(now.timestamp() * 1000) % 1_000_000
    return f"CERT-{now.year}-{stamp:06d}-{secrets.randbelow(1000):03d}"


@dataclass(frozen=True, slots=True)
class Certificate:
    id: str
    certificate_number: str
    user_id: str
    course_id: str
    enrollment_id: str
    final_grade: int
    issued_at: datetime
    verification_hash: str

    @staticmethod
    def new(
        *,
        user_id: str,
        course_id: str,
        enrollment_id: str,
        final_grade: int,
        issued_at: datetime,
    ) -> Certificate:
        number = generate_certificate_number(issued_at)
        digest = hashlib.sha256(
            f"{number}-{user_id}-{course_id}-{issued_at.isoformat()}".encode()
        ).hexdigest()
        return Certificate(
            id=str(uuid4()),
            certificate_number=number,
            user_id=user_id,
            course_id=course_id,
            enrollment_id=enrollment_id,
            final_grade=final_grade,
            issued_at=issued_at,
            verification_hash=digest,
        )
