from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """An error the API turns into a `{message, code}` response.

    Every error carries an HTTP ``status_code`` and a stable ``error_code``
    the frontend can branch on (for example a silent refresh on
    ``TOKEN_EXPIRED``, a forced logout on ``TOKEN_REVOKED``).
    """

    status_code: int = 400
    error_code: Optional[str] = "VALIDATION_ERROR"

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


class ValidationError(ServiceError):
    """Malformed input or an unusable one-time token (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


# One table from auth code to HTTP status; AuthenticationError consults it.
AUTH_ERROR_STATUS = {
    "TOKEN_MISSING": 401,
    "TOKEN_INVALID": 401,
    "TOKEN_EXPIRED": 401,
    "TOKEN_REVOKED": 401,
    "USER_NOT_FOUND": 401,
    "INVALID_CREDENTIALS": 401,
    "REFRESH_TOKEN_MISSING": 401,
    "REFRESH_TOKEN_INVALID": 401,
    "REFRESH_TOKEN_EXPIRED": 401,
    "REFRESH_TOKEN_REVOKED": 401,
    "ACCOUNT_LOCKED": 423,
    "EMAIL_NOT_VERIFIED": 403,
    "PREMIUM_REQUIRED": 403,
    "FORBIDDEN": 403,
    "INVALID_RESET_TOKEN": 400,
}


class AuthenticationError(ServiceError):
    """Authentication or token validation failed; status follows the code."""
    status_code = 401
    error_code = "TOKEN_INVALID"

    def __init__(self, message: str, *, code: str = "TOKEN_INVALID", detail: Optional[dict] = None):
        super().__init__(
            message,
            status_code=AUTH_ERROR_STATUS.get(code, 401),
            error_code=code,
            detail=detail,
        )


class AccountLockedError(AuthenticationError):
    """Account temporarily locked after repeated failed logins (423)."""

    def __init__(self, message: str = "Account is temporarily locked", *, detail: Optional[dict] = None):
        super().__init__(message, code="ACCOUNT_LOCKED", detail=detail)


class ForbiddenError(ServiceError):
    """Authenticated but not allowed, e.g. a non-admin on an admin route (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """Unknown song, audio object or rate-limit counter (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """A unique field is already taken (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimitedError(ServiceError):
    """Quota for the route class exhausted; carries the retry delay in ms (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after_ms: int, detail: Optional[dict] = None):
        super().__init__(message, detail=detail)
        self.retry_after_ms = retry_after_ms


class ServerError(ServiceError):
    """Misconfiguration such as a missing signing secret (500)."""
    status_code = 500
    error_code = None


__all__ = [
    "AUTH_ERROR_STATUS",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
