"""Canonical error envelope for all mediavault responses.

Standardized structure:
{
  "error": {
    "code": "string",
    "message": "string",
    "http_status": 400,
    "action": "string | null",
    "resource_kind": "string | null",
    "details": {}
  }
}
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mediavault.common.errors import VaultError, present

logger = logging.getLogger(__name__)


class ErrorDetail(BaseModel):
    """Canonical error detail structure."""
    code: str
    message: str
    http_status: int
    action: Optional[str] = None
    resource_kind: Optional[str] = None
    technical: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ErrorEnvelope(BaseModel):
    """Top-level error envelope returned by all mediavault endpoints."""
    error: ErrorDetail


def build_error_envelope(
    code: str,
    message: str,
    status_code: int = 400,
    action: Optional[str] = None,
    resource_kind: Optional[str] = None,
    technical: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> ErrorEnvelope:
    """Construct an ErrorEnvelope (without raising)."""
    error_detail = ErrorDetail(
        code=code,
        message=message,
        http_status=status_code,
        action=action,
        resource_kind=resource_kind,
        technical=technical,
        details=details or {},
    )
    return ErrorEnvelope(error=error_detail)


def error_response(
    code: str,
    message: str,
    status_code: int = 400,
    resource_kind: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """Construct and raise a standardized error response.

    Args:
        code: Machine-readable error code (e.g., "storage.invalid_operation")
        message: Human-readable error message
        status_code: HTTP status code (default 400)
        resource_kind: The resource type (upload_session, storage_item, ...)
        details: Additional context dict
    """
    envelope = build_error_envelope(
        code=code,
        message=message,
        status_code=status_code,
        resource_kind=resource_kind,
        details=details,
    )
    raise HTTPException(status_code=status_code, detail=envelope.model_dump())


def envelope_for(exc: VaultError, resource_kind: Optional[str] = None) -> ErrorEnvelope:
    shown = present(exc)
    return build_error_envelope(
        code=exc.code,
        message=shown.message,
        status_code=exc.http_status,
        action=shown.action,
        resource_kind=resource_kind,
        technical=shown.technical,
        details=shown.details,
    )


async def _vault_error_handler(request: Request, exc: VaultError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    envelope = envelope_for(exc)
    return JSONResponse(status_code=exc.http_status, content=envelope.model_dump(mode="json"))


async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    # Envelopes raised through error_response pass through unchanged
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        return JSONResponse(content=detail, status_code=exc.status_code)
    envelope = build_error_envelope(
        code="http.exception",
        message=str(detail) if detail else "HTTP exception",
        status_code=exc.status_code,
    )
    return JSONResponse(content=envelope.model_dump(), status_code=exc.status_code)


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    envelope = build_error_envelope(
        code="validation.error",
        message="Validation failed",
        status_code=400,
        action="FIX_INPUT",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=envelope.model_dump(mode="json"), status_code=400)


async def _generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} raised {type(exc).__name__}: {exc}")
    shown = present(exc)
    envelope = build_error_envelope(
        code="internal.error",
        message=shown.message,
        status_code=500,
        action=shown.action,
        technical=shown.technical,
    )
    return JSONResponse(content=envelope.model_dump(), status_code=500)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(VaultError, _vault_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _generic_exception_handler)
