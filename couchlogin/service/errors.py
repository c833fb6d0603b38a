from __future__ import annotations

from typing import Any, Dict, List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - session_invalid (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - upstream_failure (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationFailedError(ServiceError):
    """Registration or form input failed validation (400).

    ``validation_errors`` maps each offending field to its messages and is
    surfaced to the caller verbatim.
    """

    status_code = 400
    error_code = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        validation_errors: Optional[Dict[str, List[str]]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.validation_errors = validation_errors or {}
        if self.validation_errors:
            self.detail.setdefault("validationErrors", self.validation_errors)


class AuthenticationError(ServiceError):
    """Authentication failed, missing, or the account is locked (401)."""

    status_code = 401
    error_code = "unauthorized"


class SessionInvalidError(AuthenticationError):
    """Session token unknown or expired; the client must log in again (401)."""

    error_code = "session_invalid"


class ForbiddenError(ServiceError):
    """Access denied - insufficient roles (403)."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested user, session or resource not found (404)."""

    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate account, email, or provider profile (409)."""

    status_code = 409
    error_code = "conflict"


class UpstreamStoreFailure(ServiceError):
    """Document store or credentials mirror unreachable or rejected a write (500).

    ``doc`` and ``cause`` are kept for operator diagnosis; they are logged
    but never sent to clients.
    """

    status_code = 500
    error_code = "upstream_failure"

    def __init__(
        self,
        message: str,
        *,
        doc: Any = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.doc = doc
        self.cause = cause


__all__ = [
    "ServiceError",
    "ValidationFailedError",
    "AuthenticationError",
    "SessionInvalidError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "UpstreamStoreFailure",
]
