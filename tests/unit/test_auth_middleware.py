"""Unit tests for dayline/auth/middleware.py - FastAPI auth dependencies.

Verifies:
  - authenticate_request() builds the envelope from headers, method, raw path and body
  - the raw path keeps percent-escapes and drops the query string
  - failures are re-raised unchanged (rendered by the app's exception handler)
  - success stores the identity on request.state
  - enforce_rate_limit() passes the configured policy through
"""

from __future__ import annotations

import base64
from types import SimpleNamespace
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from dayline.auth.errors import ForbiddenError, RateLimitExceededError, UnauthenticatedError
from dayline.auth.middleware import authenticate_request, enforce_rate_limit, request_path
from dayline.auth.signing import SignatureVerifier, VerifiedIdentity, sign_request_headers
from dayline.config import RateLimitPolicy


class MockRequest:
    """Minimal mock for FastAPI Request."""

    def __init__(
        self,
        headers: Optional[dict[str, str]] = None,
        path: str = "/api/me",
        raw_path: Optional[bytes] = None,
        method: str = "GET",
        body: bytes = b"",
        app_state: Any = None,
    ) -> None:
        self.headers = headers or {}
        self.method = method
        self.url = SimpleNamespace(path=path)
        self.scope: dict[str, Any] = {}
        if raw_path is not None:
            self.scope["raw_path"] = raw_path
        self.state = SimpleNamespace()
        self.app = SimpleNamespace(state=app_state or SimpleNamespace())
        self._body = body

    async def body(self) -> bytes:
        return self._body


def _registry_for(private_key: ed25519.Ed25519PrivateKey) -> AsyncMock:
    der = private_key.public_key().public_bytes(
        Encoding.DER, PublicFormat.SubjectPublicKeyInfo
    )
    registry = AsyncMock()
    registry.lookup_signing_key.return_value = base64.b64encode(der).decode()
    return registry


# ─── request_path ─────────────────────────────────────────────────────────────


class TestRequestPath:
    def test_prefers_raw_path(self) -> None:
        req = MockRequest(path="/api/a b", raw_path=b"/api/a%20b")
        assert request_path(req) == "/api/a%20b"  # type: ignore[arg-type]

    def test_strips_query_string(self) -> None:
        req = MockRequest(raw_path=b"/api/me?x=1")
        assert request_path(req) == "/api/me"  # type: ignore[arg-type]

    def test_falls_back_to_url_path(self) -> None:
        req = MockRequest(path="/api/me")
        assert request_path(req) == "/api/me"  # type: ignore[arg-type]


# ─── authenticate_request ─────────────────────────────────────────────────────


class TestAuthenticateRequest:
    async def test_valid_signature_returns_identity(
        self, ed25519_key: ed25519.Ed25519PrivateKey
    ) -> None:
        body = b'{"username":"alice"}'
        headers = sign_request_headers(
            ed25519_key, "u1", "d1", "POST", "/api/users/rename", body
        )
        verifier = SignatureVerifier(_registry_for(ed25519_key))
        req = MockRequest(
            headers=headers,
            raw_path=b"/api/users/rename",
            method="POST",
            body=body,
            app_state=SimpleNamespace(verifier=verifier),
        )

        identity = await authenticate_request(req)  # type: ignore[arg-type]

        assert identity == VerifiedIdentity(user_id="u1", device_id="d1")
        assert req.state.identity == identity

    async def test_signature_over_query_string_path_fails(
        self, ed25519_key: ed25519.Ed25519PrivateKey
    ) -> None:
        """The signed path never includes the query string."""
        headers = sign_request_headers(ed25519_key, "u1", "d1", "GET", "/api/me?x=1", b"")
        verifier = SignatureVerifier(_registry_for(ed25519_key))
        req = MockRequest(
            headers=headers,
            raw_path=b"/api/me?x=1",
            app_state=SimpleNamespace(verifier=verifier),
        )
        with pytest.raises(ForbiddenError):
            await authenticate_request(req)  # type: ignore[arg-type]

    async def test_missing_headers_raise(self) -> None:
        verifier = SignatureVerifier(AsyncMock())
        req = MockRequest(app_state=SimpleNamespace(verifier=verifier))
        with pytest.raises(UnauthenticatedError):
            await authenticate_request(req)  # type: ignore[arg-type]
        assert not hasattr(req.state, "identity")


# ─── enforce_rate_limit ───────────────────────────────────────────────────────


class TestEnforceRateLimit:
    async def test_passes_policy_to_limiter(self) -> None:
        limiter = AsyncMock()
        req = MockRequest(app_state=SimpleNamespace(rate_limiter=limiter))
        await enforce_rate_limit(
            req, "rename:user:u1", RateLimitPolicy(limit=5, window_ms=86_400_000)  # type: ignore[arg-type]
        )
        limiter.enforce.assert_awaited_once_with("rename:user:u1", limit=5, window_ms=86_400_000)

    async def test_propagates_rate_limit_error(self) -> None:
        limiter = AsyncMock()
        limiter.enforce.side_effect = RateLimitExceededError(12)
        req = MockRequest(app_state=SimpleNamespace(rate_limiter=limiter))
        with pytest.raises(RateLimitExceededError):
            await enforce_rate_limit(
                req, "k", RateLimitPolicy(limit=1, window_ms=1000)  # type: ignore[arg-type]
            )
