"""Signed-request verification - the authentication boundary of every protected route.

Every protected request carries four headers:

    X-User-Id    claimed user id
    X-Device-Id  claimed device id
    X-Ts         client timestamp, milliseconds since epoch (decimal string)
    X-Sig        base64 signature over the canonical signing string

Canonical signing string (clients must reproduce it byte for byte):

    <METHOD>\\n<path>\\n<x-ts>\\n<sha256-hex of raw body bytes>

METHOD is uppercase, path excludes the query string, x-ts is the raw header
value (not re-formatted). Changing the field order or separator invalidates
every signature already issued by deployed clients.

Verification order (first failure wins, nothing is written on failure):
  1. all four headers present                → UnauthenticatedError(missing_headers)
  2. x-ts parses to a finite number          → MalformedRequestError
  3. |now - x-ts| <= window_ms               → UnauthenticatedError(expired)
  4. x-sig is valid base64                   → MalformedRequestError
  5. (device_id, user_id) is a registered pair → UnauthenticatedError(unknown_device)
  6. stored key decodes as SPKI              → InternalError
  7. signature verifies                       → ForbiddenError
  8. touch last_seen_at (errors logged, never raised)

Replay: an identical request verifies again for as long as its timestamp is
inside the window. There is no nonce store; the window is the replay bound.

Supported device keys: Ed25519 (signature over the raw canonical bytes) and
ECDSA on NIST curves with SHA-256 (DER-encoded signature).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import math
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.serialization import load_der_public_key

from dayline.auth.errors import (
    FailureKind,
    ForbiddenError,
    InternalError,
    MalformedRequestError,
    UnauthenticatedError,
)
from dayline.constants import (
    DEFAULT_SIGNATURE_WINDOW_MS,
    HEADER_DEVICE_ID,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    HEADER_USER_ID,
)
from dayline.store.models import StoreError
from dayline.store.protocol import DeviceRegistry
from dayline.utils.logger import get_logger

logger = get_logger(__name__)

SigningPublicKey = Union[ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey]
SigningPrivateKey = Union[ed25519.Ed25519PrivateKey, ec.EllipticCurvePrivateKey]


def _now_ms() -> int:
    return int(time.time() * 1000)


# ─── Envelope + Identity ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class VerifiedIdentity:
    """The (user, device) pair a request was proven to come from."""

    user_id: str
    device_id: str


@dataclass(frozen=True)
class SignedRequest:
    """Everything the verifier needs from one inbound request.

    Header-derived fields are already stripped of surrounding whitespace and
    are None when the header was absent or blank.
    """

    user_id: Optional[str]
    device_id: Optional[str]
    timestamp: Optional[str]
    signature: Optional[str]
    method: str
    path: str
    body: bytes

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        method: str,
        path: str,
        body: bytes,
    ) -> "SignedRequest":
        """Build an envelope from a case-insensitive header mapping."""
        return cls(
            user_id=_header(headers, HEADER_USER_ID),
            device_id=_header(headers, HEADER_DEVICE_ID),
            timestamp=_header(headers, HEADER_TIMESTAMP),
            signature=_header(headers, HEADER_SIGNATURE),
            method=method,
            path=path,
            body=body,
        )


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


# ─── Canonical form ───────────────────────────────────────────────────────────


def sha256_hex(body: bytes) -> str:
    """Lowercase hex SHA-256 of the exact body bytes (empty body included)."""
    return hashlib.sha256(body).hexdigest()


def canonical_string(method: str, path: str, timestamp: str, body_hash_hex: str) -> str:
    """Join the signed fields in protocol order with newline separators."""
    return f"{method.upper()}\n{path}\n{timestamp}\n{body_hash_hex}"


# ─── Key handling ─────────────────────────────────────────────────────────────


def load_signing_key(key_b64: str) -> SigningPublicKey:
    """Decode a base64 DER SubjectPublicKeyInfo signing key.

    Raises:
        ValueError: if the value is not base64, not SPKI, or not a supported
                    signing key type (Ed25519 or EC).
    """
    try:
        der = base64.b64decode(key_b64, validate=True)
        public_key = load_der_public_key(der)
    except (binascii.Error, ValueError, UnsupportedAlgorithm) as exc:
        raise ValueError(f"not a DER SPKI public key: {exc}") from exc

    if isinstance(public_key, (ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey)):
        return public_key
    raise ValueError(f"unsupported signing key type: {type(public_key).__name__}")


def verify_signature(public_key: SigningPublicKey, signature: bytes, message: bytes) -> bool:
    """Return True when ``signature`` is valid for ``message`` under ``public_key``."""
    try:
        if isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, message)
        else:
            public_key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    return True


# ─── Verifier ─────────────────────────────────────────────────────────────────


class SignatureVerifier:
    """Validates signed requests against the device registry.

    Stateless apart from its collaborators; one instance is shared by all
    requests (stored on ``app.state.verifier``).

    Args:
        registry:  Device-key lookup + last-seen writer.
        window_ms: Freshness window; requests with |now - x-ts| > window_ms
                   are rejected as expired. The boundary itself is accepted.
        clock:     Returns "now" in epoch milliseconds. Injected in tests.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        window_ms: int = DEFAULT_SIGNATURE_WINDOW_MS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._registry = registry
        self._window_ms = window_ms
        self._clock = clock

    @property
    def window_ms(self) -> int:
        return self._window_ms

    async def verify(self, request: SignedRequest) -> VerifiedIdentity:
        """Verify one signed request.

        Returns:
            VerifiedIdentity for the signing device.

        Raises:
            UnauthenticatedError:  missing headers, expired timestamp, unknown device.
            MalformedRequestError: unparseable x-ts or x-sig.
            ForbiddenError:        signature does not verify.
            InternalError:         stored key is corrupt or the registry failed.
        """
        user_id = request.user_id
        device_id = request.device_id
        ts_raw = request.timestamp
        sig_b64 = request.signature

        if not user_id or not device_id or not ts_raw or not sig_b64:
            raise UnauthenticatedError("Missing auth headers", FailureKind.MISSING_HEADERS)

        ts_ms = _parse_timestamp(ts_raw)
        if ts_ms is None:
            raise MalformedRequestError("Invalid x-ts")

        if abs(self._clock() - ts_ms) > self._window_ms:
            raise UnauthenticatedError("Request expired", FailureKind.EXPIRED)

        try:
            signature = base64.b64decode(sig_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedRequestError("Invalid x-sig") from exc
        if not signature:
            raise MalformedRequestError("Invalid x-sig")

        canonical = canonical_string(
            method=request.method,
            path=request.path,
            timestamp=ts_raw,
            body_hash_hex=sha256_hex(request.body),
        )

        try:
            key_b64 = await self._registry.lookup_signing_key(device_id, user_id)
        except StoreError as exc:
            logger.error(
                "Device key lookup failed",
                device_id=device_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise InternalError("Device registry unavailable") from exc

        if not key_b64:
            raise UnauthenticatedError("Unknown device", FailureKind.UNKNOWN_DEVICE)

        try:
            public_key = load_signing_key(key_b64)
        except ValueError as exc:
            logger.error(
                "Stored device signing key is corrupt",
                device_id=device_id,
                user_id=user_id,
                error=str(exc),
            )
            raise InternalError("Invalid device signing key") from exc

        if not verify_signature(public_key, signature, canonical.encode("utf-8")):
            raise ForbiddenError("Invalid signature")

        await self._touch_last_seen(device_id)

        return VerifiedIdentity(user_id=user_id, device_id=device_id)

    async def _touch_last_seen(self, device_id: str) -> None:
        """Record device activity. Awaited, but a failure never fails the request."""
        try:
            await self._registry.touch_last_seen(device_id)
        except Exception as exc:
            logger.warning(
                "Failed to update device last_seen_at",
                device_id=device_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )


def _parse_timestamp(ts_raw: str) -> Optional[float]:
    """Parse x-ts as a number; None when it is not a finite decimal."""
    # float() accepts digit separators ("1_000"); the wire format does not.
    if "_" in ts_raw:
        return None
    try:
        value = float(ts_raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


# ─── Client helper ────────────────────────────────────────────────────────────


def sign_request_headers(
    private_key: SigningPrivateKey,
    user_id: str,
    device_id: str,
    method: str,
    path: str,
    body: bytes = b"",
    timestamp_ms: Optional[int] = None,
) -> dict[str, str]:
    """Produce the four auth headers for a request, as a desktop client would.

    Used by Python clients, the test suite and local tooling. ``path`` must be
    the request path without its query string.

    Example::

        key = Ed25519PrivateKey.generate()
        headers = sign_request_headers(key, "u1", "d1", "GET", "/api/me")
        httpx.get("http://127.0.0.1:8080/api/me", headers=headers)
    """
    ts = str(timestamp_ms if timestamp_ms is not None else _now_ms())
    message = canonical_string(method, path, ts, sha256_hex(body)).encode("utf-8")

    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        signature = private_key.sign(message)
    else:
        signature = private_key.sign(message, ec.ECDSA(hashes.SHA256()))

    return {
        HEADER_USER_ID: user_id,
        HEADER_DEVICE_ID: device_id,
        HEADER_TIMESTAMP: ts,
        HEADER_SIGNATURE: base64.b64encode(signature).decode("ascii"),
    }
