"""Error taxonomy for notification and authentication entry points.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API layer answers with.  Per-recipient delivery failures are *not*
raised; they are recorded on the delivery record.  Only interactive entry
points raise these.
"""
from __future__ import annotations


class NotificationError(Exception):
    """Base class; ``code`` and ``status_code`` are rendered by the API."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInputError(NotificationError):
    code = "invalid-input"
    status_code = 400


class UnauthenticatedError(NotificationError):
    code = "unauthenticated"
    status_code = 401


class UnauthorizedError(NotificationError):
    code = "unauthorized"
    status_code = 403


class NotFoundError(NotificationError):
    code = "not-found"
    status_code = 404


class FailedPreconditionError(NotificationError):
    code = "failed-precondition"
    status_code = 409


class RetryLimitExceededError(NotificationError):
    code = "retry-limit-exceeded"
    status_code = 409


class RateLimitedError(NotificationError):
    code = "rate-limited"
    status_code = 429


class OtpExpiredError(NotificationError):
    code = "otp-expired"
    status_code = 410


class OtpExhaustedError(NotificationError):
    code = "otp-exhausted"
    status_code = 429


class InvalidOtpError(NotificationError):
    code = "invalid-code"
    status_code = 401


class ProviderError(NotificationError):
    code = "provider-error"
    status_code = 502
