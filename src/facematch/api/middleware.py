"""Middleware: API key authentication and error-to-status mapping."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from facematch.errors import (
    DetectorFailureError,
    DuplicateSampleError,
    FaceMatchError,
    InferenceFailureError,
    RegistrationFaceCountError,
    ValidationError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI

    from facematch.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against the configured API key.

    If no API key is configured (FACEMATCH_API_KEY not set), all requests pass.
    If configured, requests must include 'Authorization: Bearer <key>'.
    """
    settings = _get_settings_from_request(request)
    if settings.api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


_STATUS_BY_ERROR: list[tuple[type[FaceMatchError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (RegistrationFaceCountError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (DuplicateSampleError, status.HTTP_409_CONFLICT),
    (DetectorFailureError, status.HTTP_502_BAD_GATEWAY),
    (InferenceFailureError, status.HTTP_502_BAD_GATEWAY),
]


async def facematch_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Turn a FaceMatch error into a JSON error response."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.error("Unhandled FaceMatch error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FaceMatchError, facematch_error_handler)
