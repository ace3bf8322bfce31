from __future__ import annotations

from typing import Any, Dict, Optional

from authsync.storage.errors import ConstraintViolation


class ServiceError(Exception):
    """Failure raised by an authsync service.

    A front end maps ``status_code`` straight onto its response and returns
    ``to_dict()`` as the body. ``error_code`` values are stable:

    ==================  ====
    validation_error    400
    otp_pending         400
    unauthorized        401
    not_found           404
    conflict            409
    ==================  ====
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.error_code, "message": self.message, "details": self.detail or None}


class ValidationError(ServiceError):
    """Malformed input: missing email, unknown role, bad sync item."""


class BadRequestError(ValidationError):
    """Well-formed input the current account state cannot accept."""


class OtpPendingError(BadRequestError):
    """Credentials were right but the registration code is still outstanding."""

    error_code = "otp_pending"


class AuthenticationError(ServiceError):
    """Bad credentials, or a token that is invalid, expired or superseded."""

    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate account, or a cache key that kept moving under a write."""

    status_code = 409
    error_code = "conflict"

    @classmethod
    def from_violation(cls, message: str, exc: ConstraintViolation) -> "ConflictError":
        return cls(message, detail=exc.detail)


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "OtpPendingError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
]
