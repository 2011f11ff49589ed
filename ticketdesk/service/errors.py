from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Stable machine-readable error codes returned to clients."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"

    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_INVALID = "TOKEN_INVALID"
    NO_TOKEN_PROVIDED = "NO_TOKEN_PROVIDED"

    FORBIDDEN = "FORBIDDEN"
    ACCOUNT_NOT_APPROVED = "ACCOUNT_NOT_APPROVED"
    ACCOUNT_REJECTED = "ACCOUNT_REJECTED"

    NOT_FOUND = "NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"

    CONFLICT = "CONFLICT"
    EMAIL_ALREADY_EXISTS = "EMAIL_ALREADY_EXISTS"
    REFRESH_CONFLICT = "REFRESH_CONFLICT"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"

    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    INTERNAL_ERROR = "INTERNAL_ERROR"


USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_FAILED: "Please check your input and try again.",
    ErrorCode.MISSING_REQUIRED_FIELD: "Please fill in all required fields.",
    ErrorCode.UNAUTHORIZED: "Please log in to continue.",
    ErrorCode.INVALID_CREDENTIALS: "The email or password you entered is incorrect.",
    ErrorCode.TOKEN_EXPIRED: "Your session has expired. Please log in again.",
    ErrorCode.TOKEN_INVALID: "Your session is invalid. Please log in again.",
    ErrorCode.NO_TOKEN_PROVIDED: "Please log in to access this feature.",
    ErrorCode.FORBIDDEN: "You do not have permission to perform this action.",
    ErrorCode.ACCOUNT_NOT_APPROVED: "Your account is pending approval.",
    ErrorCode.ACCOUNT_REJECTED: "Your registration was not approved.",
    ErrorCode.NOT_FOUND: "The requested item could not be found.",
    ErrorCode.USER_NOT_FOUND: "User not found.",
    ErrorCode.CONFLICT: "A conflict occurred with your request.",
    ErrorCode.EMAIL_ALREADY_EXISTS: "An account with this email already exists.",
    ErrorCode.REFRESH_CONFLICT: "Your session was refreshed elsewhere. Please retry.",
    ErrorCode.INVALID_STATUS_TRANSITION: "This status change is not allowed.",
    ErrorCode.RATE_LIMIT_EXCEEDED: "Request limit exceeded. Please try again later.",
    ErrorCode.INTERNAL_ERROR: "Something went wrong. Please try again later.",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    ``user_message`` defaults to the text registered for the code in
    ``USER_MESSAGES``. ``is_operational`` separates expected failures (bad
    password, expired token) from defects: only the latter are logged with a
    stack trace by the API translator.
    """

    status_code: int = 400
    error_code: ErrorCode = ErrorCode.VALIDATION_FAILED
    is_operational: bool = True

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[ErrorCode] = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.user_message = user_message or USER_MESSAGES.get(self.error_code, message)
        self.timestamp = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "code": self.error_code.value,
            "message": self.message,
            "userMessage": self.user_message,
        }
        if self.detail:
            body["details"] = self.detail
        body["timestamp"] = self.timestamp.isoformat()
        return body


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = ErrorCode.VALIDATION_FAILED


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = ErrorCode.UNAUTHORIZED


class InvalidCredentialsError(AuthenticationError):
    """Unknown account or wrong password; the two are never distinguished."""
    error_code = ErrorCode.INVALID_CREDENTIALS

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    """Signature is valid but the token is past its expiry; a refresh may help."""
    error_code = ErrorCode.TOKEN_EXPIRED

    def __init__(self, message: str = "Token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    """Malformed, forged, rotated or otherwise unusable token; re-login required."""
    error_code = ErrorCode.TOKEN_INVALID

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MissingTokenError(AuthenticationError):
    error_code = ErrorCode.NO_TOKEN_PROVIDED

    def __init__(self, message: str = "No token provided", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = ErrorCode.FORBIDDEN


class WrongPortalError(ForbiddenError):
    def __init__(
        self, message: str = "Invalid login endpoint. Role mismatch.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class AccountNotApprovedError(ForbiddenError):
    error_code = ErrorCode.ACCOUNT_NOT_APPROVED

    def __init__(
        self,
        message: str = (
            "Your account is awaiting approval. "
            "Please contact the administrator."
        ),
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class AccountRejectedError(ForbiddenError):
    error_code = ErrorCode.ACCOUNT_REJECTED

    def __init__(self, reason: Optional[str] = None, **kwargs) -> None:
        self.reason = reason or "No reason provided"
        kwargs.setdefault("detail", {"reason": self.reason})
        super().__init__(
            f"Your account registration was rejected. Reason: {self.reason}", **kwargs
        )


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = ErrorCode.NOT_FOUND


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = ErrorCode.CONFLICT


class RefreshConflictError(ConflictError):
    """Another request rotated the same refresh token first."""
    error_code = ErrorCode.REFRESH_CONFLICT

    def __init__(self, message: str = "Token refresh conflict. Please retry.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidStatusTransitionError(ConflictError):
    error_code = ErrorCode.INVALID_STATUS_TRANSITION


class RateLimitExceededError(ServiceError):
    """Request budget for an endpoint class is exhausted (429).

    The error body carries the retry fields directly, next to ``code``.
    """

    status_code = 429
    error_code = ErrorCode.RATE_LIMIT_EXCEEDED

    def __init__(
        self,
        *,
        endpoint_class: str,
        retry_after: datetime,
        retry_after_seconds: int,
        limit: int,
        window_seconds: int,
        user_message: str,
    ) -> None:
        super().__init__(
            f"Rate limit exceeded for {endpoint_class} requests",
            user_message=user_message,
        )
        self.endpoint_class = endpoint_class
        self.retry_after = retry_after
        self.retry_after_seconds = retry_after_seconds
        self.limit = limit
        self.window_seconds = window_seconds

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body.update(
            {
                "retryAfter": self.retry_after.isoformat(),
                "retryAfterSeconds": self.retry_after_seconds,
                "remainingAttempts": 0,
                "limit": self.limit,
                "windowMs": self.window_seconds * 1000,
            }
        )
        return body


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = ErrorCode.INTERNAL_ERROR
    is_operational = False


__all__ = [
    "ErrorCode",
    "USER_MESSAGES",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "TokenInvalidError",
    "MissingTokenError",
    "ForbiddenError",
    "WrongPortalError",
    "AccountNotApprovedError",
    "AccountRejectedError",
    "NotFoundError",
    "ConflictError",
    "RefreshConflictError",
    "InvalidStatusTransitionError",
    "RateLimitExceededError",
    "ServerError",
]
