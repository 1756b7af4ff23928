"""Dayline request authentication and rate limiting.

Public API:
  - SignatureVerifier        - verify signed requests against the device registry
  - SignedRequest            - per-request envelope (headers + method + path + body)
  - VerifiedIdentity         - (user_id, device_id) proven by a signature
  - canonical_string()       - the exact string clients sign
  - sign_request_headers()   - client-side helper producing the four auth headers
  - RateLimiter              - fixed-window limiter over an atomic CounterStore
  - get_client_ip()          - client IP from proxy headers for IP-scoped keys
  - authenticate_request()   - FastAPI Depends() dependency
  - enforce_rate_limit()     - apply a configured policy inside a handler
  - DaylineError and subclasses - typed failure taxonomy
"""

from __future__ import annotations

from dayline.auth.errors import (
    DaylineError,
    FailureKind,
    ForbiddenError,
    InternalError,
    InvalidArgumentError,
    MalformedRequestError,
    RateLimitExceededError,
    UnauthenticatedError,
)
from dayline.auth.limiter import RateLimiter, get_client_ip
from dayline.auth.middleware import authenticate_request, enforce_rate_limit
from dayline.auth.signing import (
    SignatureVerifier,
    SignedRequest,
    VerifiedIdentity,
    canonical_string,
    sign_request_headers,
)

__all__ = [
    "DaylineError",
    "FailureKind",
    "ForbiddenError",
    "InternalError",
    "InvalidArgumentError",
    "MalformedRequestError",
    "RateLimitExceededError",
    "UnauthenticatedError",
    "RateLimiter",
    "get_client_ip",
    "authenticate_request",
    "enforce_rate_limit",
    "SignatureVerifier",
    "SignedRequest",
    "VerifiedIdentity",
    "canonical_string",
    "sign_request_headers",
]
