"""HTTP middleware for the Dayline API.

BodySizeLimitMiddleware enforces the 1 MiB request body hard cap before any
route runs. Signed routes hash the raw body, so the cap also bounds the work
an unauthenticated caller can force on the verifier.

  - Two-phase check:
      1. Content-Length fast path: reject immediately on oversized header value.
      2. Chunked/streaming slow path: accumulate body with rolling cap; reject
         as soon as the cap is exceeded.

RequestIdMiddleware gives every request a ULID, binds it into the structlog
context and echoes it back as ``X-Request-ID``.
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from dayline.constants import MAX_REQUEST_BODY_BYTES
from dayline.utils.logger import clear_request_id, get_logger, set_request_id
from dayline.utils.ulid import generate_ulid

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# ─── Error response bodies ────────────────────────────────────────────────────

_PAYLOAD_TOO_LARGE_BODY: dict = {"error": "Request body too large"}

_INVALID_CONTENT_LENGTH_BODY: dict = {"error": "Invalid Content-Length header"}


# ─── Middleware ───────────────────────────────────────────────────────────────


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Starlette middleware enforcing the MAX_REQUEST_BODY_BYTES cap.

      - Content-Length > MAX_REQUEST_BODY_BYTES  → HTTP 413 (fast path, no body read)
      - Content-Length == MAX_REQUEST_BODY_BYTES → accepted
      - No Content-Length, accumulated body > cap → HTTP 413 (rolling cap)
      - No Content-Length, accumulated body ≤ cap → accepted, body cached in request
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        content_length_header = request.headers.get("content-length")

        # ── Phase 1: Content-Length fast path ─────────────────────────────────
        if content_length_header is not None:
            try:
                declared_size = int(content_length_header)
            except ValueError:
                logger.warning(
                    "Invalid Content-Length header",
                    value=content_length_header,
                    path=request.url.path,
                )
                return JSONResponse(status_code=400, content=_INVALID_CONTENT_LENGTH_BODY)

            if declared_size > MAX_REQUEST_BODY_BYTES:
                logger.warning(
                    "Request body too large (Content-Length)",
                    declared_size=declared_size,
                    limit=MAX_REQUEST_BODY_BYTES,
                    path=request.url.path,
                )
                return JSONResponse(status_code=413, content=_PAYLOAD_TOO_LARGE_BODY)

            return await call_next(request)

        # ── Phase 2: Chunked / no Content-Length - rolling cap ────────────────
        body_chunks: list[bytes] = []
        total_size = 0

        async for chunk in request.stream():
            total_size += len(chunk)
            if total_size > MAX_REQUEST_BODY_BYTES:
                logger.warning(
                    "Request body too large (chunked)",
                    accumulated_size=total_size,
                    limit=MAX_REQUEST_BODY_BYTES,
                    path=request.url.path,
                )
                return JSONResponse(status_code=413, content=_PAYLOAD_TOO_LARGE_BODY)
            body_chunks.append(chunk)

        # Request.body() returns _body when set; the stream is already consumed.
        request._body = b"".join(body_chunks)  # type: ignore[attr-defined]

        return await call_next(request)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Assign a request id, expose it in logs and in the response headers."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        request_id = generate_ulid()
        set_request_id(request_id)
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
