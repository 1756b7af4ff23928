"""FastAPI dependencies wiring SignatureVerifier and RateLimiter into routes.

``authenticate_request`` is the single entry point for signed routes:

    @router.get("/api/me")
    async def me(identity: VerifiedIdentity = Depends(authenticate_request)): ...

It raises the typed errors from dayline.auth.errors; the exception handler in
dayline/main.py renders them. Because it is a dependency, a failed
verification short-circuits the route before any handler code runs.

``enforce_rate_limit`` is called inside handlers after authentication so the
limit key can include the verified user id.
"""

from __future__ import annotations

from fastapi import Request

from dayline.auth.errors import DaylineError
from dayline.auth.limiter import RateLimiter
from dayline.auth.signing import SignatureVerifier, SignedRequest, VerifiedIdentity
from dayline.config import RateLimitPolicy
from dayline.utils.logger import get_logger

logger = get_logger(__name__)


def request_path(request: Request) -> str:
    """The path exactly as sent on the request line, without the query string.

    Clients sign the raw path, so percent-escapes must not be decoded. ASGI
    servers disagree on whether ``raw_path`` carries the query string, so it is
    stripped here either way.
    """
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.decode("latin-1").split("?", 1)[0]
    return request.url.path


async def authenticate_request(request: Request) -> VerifiedIdentity:
    """FastAPI dependency: verify the request signature.

    Returns:
        VerifiedIdentity of the signing device.

    Raises:
        DaylineError subclasses - see SignatureVerifier.verify().
    """
    verifier: SignatureVerifier = request.app.state.verifier
    body = await request.body()
    signed = SignedRequest.from_headers(
        request.headers,
        method=request.method,
        path=request_path(request),
        body=body,
    )

    try:
        identity = await verifier.verify(signed)
    except DaylineError as exc:
        logger.warning(
            "Authentication failed",
            kind=exc.kind.value,
            path=signed.path,
            method=request.method,
            user_id=signed.user_id,
            device_id=signed.device_id,
        )
        raise

    request.state.identity = identity
    return identity


async def enforce_rate_limit(request: Request, key: str, policy: RateLimitPolicy) -> None:
    """Apply ``policy`` to ``key`` using the app's shared RateLimiter."""
    limiter: RateLimiter = request.app.state.rate_limiter
    await limiter.enforce(key, limit=policy.limit, window_ms=policy.window_ms)
