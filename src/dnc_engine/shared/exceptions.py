"""
Domain exceptions shared across the engine.

Each exception carries a stable ``code`` used in HTTP error payloads and
audit records.
"""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base application error."""

    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str = "Application error",
        details: dict[str, Any] | None = None,
        *,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload.update(self.details)
        return payload


class ValidationError(AppError):
    """Malformed phone number or missing fields; user-correctable."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = 404


class AuthorizationError(AppError):
    """Actor lacks the role required for a privileged operation."""

    code = "INSUFFICIENT_PERMISSIONS"
    status_code = 403


class StoreUnavailableError(AppError):
    """The authoritative store could not be reached."""

    code = "STORE_UNAVAILABLE"
    status_code = 503


class FilterDegradedError(AppError):
    """The membership filter cannot answer; callers fall back to the store."""

    code = "FILTER_DEGRADED"
    status_code = 503


class FilterRemovalUnsupportedError(AppError):
    """The configured filter backing cannot delete keys; it must be rebuilt."""

    code = "FILTER_REMOVAL_UNSUPPORTED"
    status_code = 500


class CallBlockedError(AppError):
    """A dial attempt was rejected by the call-blocking gate."""

    code = "LEAD_ON_DNC_LIST"
    status_code = 403


class RateLimitExceededError(AppError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 1) -> None:
        super().__init__(message, {"retryAfter": retry_after})
        self.retry_after = retry_after
