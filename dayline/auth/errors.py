"""Failure taxonomy for signed-request auth and rate limiting.

Every failure the verifier or the limiter can produce is a DaylineError
subclass carrying a fixed HTTP status, a machine-readable ``kind`` and a short
message that is safe to return to the client. Callers branch on the class (or
``kind``), never on message text.

HTTP mapping (rendered by the exception handler in dayline/main.py):

  UnauthenticatedError    401  missing_headers | expired | unknown_device
  MalformedRequestError   400  malformed
  ForbiddenError          403  bad_signature
  RateLimitExceededError  429  rate_limited   (+ Retry-After header)
  InvalidArgumentError    500  invalid_argument (caller bug - generic body)
  InternalError           500  internal         (generic body)
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Machine-readable failure reason carried by every DaylineError."""

    MISSING_HEADERS = "missing_headers"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    UNKNOWN_DEVICE = "unknown_device"
    BAD_SIGNATURE = "bad_signature"
    RATE_LIMITED = "rate_limited"
    INVALID_ARGUMENT = "invalid_argument"
    INTERNAL = "internal"


class DaylineError(Exception):
    """Base class for typed auth / rate-limit failures."""

    status_code: int = 500
    kind: FailureKind = FailureKind.INTERNAL

    #: When False the HTTP layer replaces ``message`` with a generic body.
    expose_message: bool = True

    def __init__(self, message: str, kind: FailureKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class UnauthenticatedError(DaylineError):
    """No usable identity: missing headers, expired timestamp or unknown device."""

    status_code = 401
    kind = FailureKind.MISSING_HEADERS


class MalformedRequestError(DaylineError):
    """The timestamp or signature header could not be parsed."""

    status_code = 400
    kind = FailureKind.MALFORMED


class ForbiddenError(DaylineError):
    """Identity material present but the signature does not verify."""

    status_code = 403
    kind = FailureKind.BAD_SIGNATURE

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)


class RateLimitExceededError(DaylineError):
    """Caller is over quota for the current window.

    Always recoverable: retry after ``retry_after_seconds``.
    """

    status_code = 429
    kind = FailureKind.RATE_LIMITED

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after_seconds = retry_after_seconds


class InvalidArgumentError(DaylineError, ValueError):
    """The limiter was invoked with an unusable key, limit or window."""

    status_code = 500
    kind = FailureKind.INVALID_ARGUMENT
    expose_message = False


class InternalError(DaylineError):
    """Unexpected dependency failure: corrupt stored key or unavailable store."""

    status_code = 500
    kind = FailureKind.INTERNAL
    expose_message = False
