"""
Application error taxonomy.

Handlers and repositories raise these; ``main.create_app`` registers one
exception handler that turns any ``AppError`` into the response envelope
with the error's status code.
"""
from __future__ import annotations

from typing import Any, Optional


class AppError(Exception):
    """Base class for errors that map onto a client-facing response."""

    status_code: int = 400
    error: str = "AppError"

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail


class ValidationError(AppError):
    """Malformed or missing input."""

    status_code = 400
    error = "ValidationError"


class ConflictError(AppError):
    """A unique field (username/email) is already taken."""

    status_code = 409
    error = "ConflictError"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class AuthError(AppError):
    """Bad credentials, or a missing/invalid/expired bearer token."""

    status_code = 401
    error = "AuthError"


class NotFoundError(AppError):
    """Missing resource, or one the caller does not own."""

    status_code = 404
    error = "NotFoundError"


class UploadError(AppError):
    """Rejected upload. ``code`` tells a type rejection from a size rejection."""

    status_code = 400
    error = "UploadError"

    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    LIMIT_FILE_SIZE = "LIMIT_FILE_SIZE"
    LIMIT_UNEXPECTED_FILE = "LIMIT_UNEXPECTED_FILE"

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message, detail=code)
        self.code = code


def conflict_for_field(field: str) -> ConflictError:
    """Build the ConflictError reported for a taken username or email."""
    label = "Username" if field == "username" else "Email"
    return ConflictError(f"{label} already exists", field=field)
