"""Translate engine errors into HTTP responses.

The engines raise domain exceptions and know nothing about HTTP; this
is the single place where each one gets its status code.

  InvalidTransition             409  (with from/to status)
  Unauthorized                  403
  ValidationFailed              422  (with the full error list)
  NotFound                      404
  ConflictingWrite              409  (client may retry)
  PersistenceVerificationFailed 500
  ValueError                    400
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from courseflow.core.errors import (
    ConflictingWrite,
    InvalidTransition,
    NotFound,
    PersistenceVerificationFailed,
    Unauthorized,
    ValidationFailed,
)

logger = logging.getLogger(__name__)


async def _invalid_transition(_request: Request, exc: InvalidTransition) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": str(exc),
            "from_status": exc.from_status,
            "to_status": exc.to_status,
        },
    )


async def _unauthorized(_request: Request, exc: Unauthorized) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


async def _validation_failed(_request: Request, exc: ValidationFailed) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Course validation failed", "errors": exc.errors},
    )


async def _not_found(_request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


async def _conflicting_write(_request: Request, exc: ConflictingWrite) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


async def _verification_failed(
    request: Request, exc: PersistenceVerificationFailed
) -> JSONResponse:
    logger.error("Write verification failed path=%s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Progress could not be saved, please retry"},
    )


async def _value_error(_request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InvalidTransition, _invalid_transition)  # type: ignore[arg-type]
    app.add_exception_handler(Unauthorized, _unauthorized)  # type: ignore[arg-type]
    app.add_exception_handler(ValidationFailed, _validation_failed)  # type: ignore[arg-type]
    app.add_exception_handler(NotFound, _not_found)  # type: ignore[arg-type]
    app.add_exception_handler(ConflictingWrite, _conflicting_write)  # type: ignore[arg-type]
    app.add_exception_handler(
        PersistenceVerificationFailed, _verification_failed  # type: ignore[arg-type]
    )
    app.add_exception_handler(ValueError, _value_error)  # type: ignore[arg-type]
