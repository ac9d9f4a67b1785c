"""Typed error taxonomy for the image pipeline.

Business logic raises these; it never formats messages for a UI. The
presentation side (`present`) turns any exception into a short user message
plus an action hint, and only exposes technical detail in development mode.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from mediavault.config import runtime_config


class ErrorKind(str, Enum):
    invalid_input = "invalid_input"
    quota_exceeded = "quota_exceeded"
    compression_failed = "compression_failed"
    security_violation = "security_violation"
    storage_unavailable = "storage_unavailable"
    verification_failed = "verification_failed"
    unauthorized = "unauthorized"
    not_found = "not_found"
    conflict = "conflict"
    invalid_state = "invalid_state"
    unknown = "unknown"


class VaultError(Exception):
    kind: ErrorKind = ErrorKind.unknown
    http_status: int = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    @property
    def code(self) -> str:
        return f"mediavault.{self.kind.value}"


class InvalidInput(VaultError):
    kind = ErrorKind.invalid_input
    http_status = 400


class InvalidName(InvalidInput):
    pass


class QuotaExceeded(VaultError):
    kind = ErrorKind.quota_exceeded
    http_status = 413


class CompressionFailed(VaultError):
    kind = ErrorKind.compression_failed
    http_status = 422


class SecurityViolation(VaultError):
    kind = ErrorKind.security_violation
    http_status = 403


class StorageUnavailable(VaultError):
    kind = ErrorKind.storage_unavailable
    http_status = 503


class VerificationFailed(VaultError):
    kind = ErrorKind.verification_failed
    http_status = 502


class Unauthorized(VaultError):
    kind = ErrorKind.unauthorized
    http_status = 401


class ObjectNotFound(VaultError):
    kind = ErrorKind.not_found
    http_status = 404


class Conflict(VaultError):
    kind = ErrorKind.conflict
    http_status = 409


class InvalidTransition(VaultError):
    kind = ErrorKind.invalid_state
    http_status = 409


def categorize(error: BaseException) -> ErrorKind:
    """Map any exception to an ErrorKind without side effects."""
    if isinstance(error, VaultError):
        return error.kind
    if isinstance(error, PermissionError):
        return ErrorKind.unauthorized
    if isinstance(error, FileNotFoundError):
        return ErrorKind.not_found
    if isinstance(error, (ConnectionError, TimeoutError, OSError)):
        return ErrorKind.storage_unavailable
    if isinstance(error, ValueError):
        return ErrorKind.invalid_input
    return ErrorKind.unknown


class UserFacingError(BaseModel):
    kind: ErrorKind
    message: str
    action: str
    technical: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


# kind -> (fallback user message, action hint)
_PRESENTATION: Dict[ErrorKind, tuple[str, str]] = {
    ErrorKind.invalid_input: ("The request is invalid. Please check your input.", "FIX_INPUT"),
    ErrorKind.quota_exceeded: (
        "Storage quota exceeded. Please contact an administrator to increase your storage limit.",
        "CONTACT_ADMIN",
    ),
    ErrorKind.compression_failed: ("Could not process this image. Please try a different file.", "SELECT_DIFFERENT_FILE"),
    ErrorKind.security_violation: ("Access denied for this location.", "CHECK_AUTH"),
    ErrorKind.storage_unavailable: ("Storage is temporarily unavailable. Please try again.", "RETRY"),
    ErrorKind.verification_failed: (
        "The upload could not be confirmed. Please refresh and check before retrying.",
        "RETRY",
    ),
    ErrorKind.unauthorized: (
        "Permission denied. Please check your authentication and try logging out and back in.",
        "CHECK_AUTH",
    ),
    ErrorKind.not_found: ("The requested item was not found.", "RETRY"),
    ErrorKind.conflict: ("An item with this name already exists.", "FIX_INPUT"),
    ErrorKind.invalid_state: ("This action is not available right now.", "RETRY"),
    ErrorKind.unknown: ("An unexpected error occurred. Please try again.", "CONTACT_SUPPORT"),
}

# Kinds whose own message is already phrased for end users.
_SELF_DESCRIBING = {
    ErrorKind.invalid_input,
    ErrorKind.quota_exceeded,
    ErrorKind.conflict,
    ErrorKind.not_found,
}


def present(error: BaseException, debug: Optional[bool] = None) -> UserFacingError:
    kind = categorize(error)
    fallback, action = _PRESENTATION[kind]
    message = fallback
    details: Dict[str, Any] = {}
    if isinstance(error, VaultError):
        details = dict(error.details)
        if kind in _SELF_DESCRIBING:
            message = error.message
    show_technical = runtime_config.is_debug() if debug is None else debug
    return UserFacingError(
        kind=kind,
        message=message,
        action=action,
        technical=f"{type(error).__name__}: {error}" if show_technical else None,
        details=details,
    )
