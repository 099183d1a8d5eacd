"""Service error taxonomy.

Every failure surfaced to callers is a :class:`ServiceError` carrying a stable
machine-readable ``code``, a human ``message`` and the HTTP status the API layer
answers with. Validation and permission errors are raised before any mutation.
"""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        payload.update(self.extra)
        return payload


class AuthError(ServiceError):
    code = "AUTH_ERROR"
    status_code = 401


class ForbiddenError(ServiceError):
    """Authenticated but not authorised; ``reason`` carries the policy category."""

    code = "PERMISSION_ERROR"
    status_code = 403

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message, reason=reason)
        self.reason = reason


class ValidationError(ServiceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidAmountError(ValidationError):
    code = "INVALID_AMOUNT"


class NotFoundError(ServiceError):
    code = "NOT_FOUND"
    status_code = 404


class TargetNotFoundError(NotFoundError):
    code = "TARGET_NOT_FOUND"


class InsufficientBalanceError(ServiceError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 400


class ProviderError(ServiceError):
    code = "EXTERNAL_PROVIDER_ERROR"
    status_code = 502


class ConflictError(ServiceError):
    code = "CONFLICT"
    status_code = 409


class RateLimitedError(ServiceError):
    code = "RATE_LIMITED"
    status_code = 429


class InternalError(ServiceError):
    code = "INTERNAL_ERROR"
    status_code = 500
