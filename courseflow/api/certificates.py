"""Certificate endpoints.

Issuing is idempotent: calling POST again for the same course returns
the certificate that was issued the first time.
"""

from __future__ import annotations

import datetime
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from courseflow.api.dependencies import require_user
from courseflow.models.principal import Principal
from courseflow.services.container import certificate_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/certificates", tags=["certificates"])


class CertificateOut(BaseModel):
    id: str
    certificate_number: str
    user_id: str
    course_id: str
    enrollment_id: str
    final_grade: int
    issued_at: datetime.datetime
    verification_hash: str


@router.get("", response_model=list[CertificateOut])
async def list_my_certificates(
    principal: Annotated[Principal, Depends(require_user)],
):
    return await certificate_service.list_for_user(principal.user_id)


@router.post("/{course_id}", response_model=CertificateOut)
async def issue_certificate(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
):
    return await certificate_service.issue(principal.user_id, course_id)


@router.get("/{certificate_id}", response_model=CertificateOut)
async def get_certificate(
    certificate_id: str,
    principal: Annotated[Principal, Depends(require_user)],
):
    certificate = await certificate_service.get(certificate_id)
    if certificate.user_id != principal.user_id and not principal.is_admin():
        logger.warning(
            "Access denied: user=%s cannot read certificate=%s",
            principal.user_id,
            certificate_id,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
    return certificate
