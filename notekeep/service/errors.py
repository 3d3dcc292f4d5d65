from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on; ``detail`` carries machine-readable extras
    such as ``retry_after``.
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

    @property
    def retry_after(self) -> Optional[int]:
        """Seconds a client should wait, when the error is time-bound."""
        for key in ("retry_after", "wait_seconds"):
            value = self.detail.get(key)
            if value is not None:
                return int(value)
        return None


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class WeakPasswordError(ValidationError):
    """Password does not meet the strength rules (400)."""


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown identifier or wrong password; the two are indistinguishable."""
    error_code = "invalid_credentials"

    def __init__(
        self,
        message: str = "Invalid username or password",
        *,
        remaining_attempts: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        detail = {}
        if remaining_attempts is not None and remaining_attempts > 0:
            detail = {"remaining_attempts": remaining_attempts, "max_attempts": max_attempts}
        super().__init__(message, detail=detail)


class InvalidTokenError(AuthenticationError):
    """Token not found, malformed or expired (401)."""
    error_code = "invalid_token"


class InvalidCodeError(AuthenticationError):
    """One-time or recovery code rejected (401)."""
    error_code = "invalid_code"


class SessionRevokedError(AuthenticationError):
    """A rotated refresh token was replayed; every session was revoked."""
    error_code = "session_revoked"

    def __init__(
        self,
        message: str = "Session revoked for security reasons, please sign in again",
    ) -> None:
        super().__init__(message, detail={"requires_reauth": True})


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDisabledError(ForbiddenError):
    error_code = "account_disabled"

    def __init__(self, message: str = "Account is disabled") -> None:
        super().__init__(message)


class RegistrationClosedError(ForbiddenError):
    def __init__(self, message: str = "Registration is currently disabled") -> None:
        super().__init__(message)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class _LockoutError(RateLimitedError):
    def __init__(self, message: str, *, retry_after: int, max_attempts: int) -> None:
        super().__init__(
            message,
            detail={
                "retry_after": retry_after,
                "remaining_attempts": 0,
                "max_attempts": max_attempts,
            },
        )


class AccountLockedError(_LockoutError):
    """Too many failed logins for this identifier inside the window."""
    error_code = "account_locked"


class OriginBlockedError(_LockoutError):
    """Too many failed logins from this origin address inside the window."""
    error_code = "origin_blocked"


class ResendTooSoonError(RateLimitedError):
    error_code = "resend_too_soon"

    def __init__(self, wait_seconds: int) -> None:
        super().__init__(
            f"Please wait {wait_seconds} seconds before requesting a new code",
            detail={"wait_seconds": wait_seconds},
        )


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServerError):
    """A backing store did not answer in time (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "InvalidCodeError",
    "SessionRevokedError",
    "ForbiddenError",
    "AccountDisabledError",
    "RegistrationClosedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AccountLockedError",
    "OriginBlockedError",
    "ResendTooSoonError",
    "ServerError",
    "ServiceUnavailableError",
]
