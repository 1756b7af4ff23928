"""User and device endpoints.

Provides:
  POST /api/users/register  - create a user with its first device (IP rate limited)
  GET  /api/me              - the signing user, its username and devices
  POST /api/users/rename    - change the signing user's username (user rate limited)

Signed endpoints run in a fixed order: verify signature (dependency), then
rate limit, then parse the JSON body. A request with a bad signature never
consumes rate-limit quota, and an over-quota caller is rejected before the
body is looked at.

Bodies are parsed by hand rather than as FastAPI body parameters so that
parsing happens after the rate limit, and so a malformed body is a 400 with
``{"error": ...}`` like every other client error.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from datetime import datetime
from typing import Any, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import load_der_public_key
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from dayline.auth import VerifiedIdentity, authenticate_request, enforce_rate_limit, get_client_ip
from dayline.auth.signing import load_signing_key
from dayline.config import Config
from dayline.constants import MAX_PUBLIC_KEY_B64_LENGTH
from dayline.store import DeviceRecord, Store, UserNotFoundError, UsernameTakenError
from dayline.utils.logger import get_logger
from dayline.utils.ulid import generate_ulid

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["users"])

_USERNAME_RE = re.compile(r"[a-z0-9_]{3,32}")


# ─── Validation helpers ───────────────────────────────────────────────────────


def normalize_username(value: str) -> str:
    """Trim + lowercase; raise ValueError unless it matches [a-z0-9_]{3,32}."""
    candidate = value.strip().lower()
    if not _USERNAME_RE.fullmatch(candidate):
        raise ValueError("invalid username")
    return candidate


def validate_spki_key_b64(value: str) -> str:
    """Trimmed base64 DER SubjectPublicKeyInfo, at most 4096 characters."""
    candidate = value.strip()
    if not candidate or len(candidate) > MAX_PUBLIC_KEY_B64_LENGTH:
        raise ValueError("invalid key length")
    try:
        load_der_public_key(base64.b64decode(candidate))
    except (binascii.Error, ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ValueError("invalid SPKI key") from exc
    return candidate


def validate_signing_key_b64(value: str) -> str:
    """An SPKI key the verifier can use: Ed25519 or EC."""
    candidate = validate_spki_key_b64(value)
    load_signing_key(candidate)
    return candidate


# ─── Request Models ───────────────────────────────────────────────────────────


class RegisterRequest(BaseModel):
    """Body of POST /api/users/register."""

    model_config = ConfigDict(populate_by_name=True)

    username: str
    sign_pub_key: str = Field(alias="signPubKey")
    dh_pub_key: str = Field(alias="dhPubKey")

    @field_validator("username")
    @classmethod
    def _username(cls, value: str) -> str:
        return normalize_username(value)

    @field_validator("sign_pub_key")
    @classmethod
    def _signing_key(cls, value: str) -> str:
        return validate_signing_key_b64(value)

    @field_validator("dh_pub_key")
    @classmethod
    def _spki(cls, value: str) -> str:
        return validate_spki_key_b64(value)


class RenameRequest(BaseModel):
    """Body of POST /api/users/rename."""

    username: str

    @field_validator("username")
    @classmethod
    def _username(cls, value: str) -> str:
        return normalize_username(value)


# ─── Helpers ──────────────────────────────────────────────────────────────────


async def _read_json(request: Request) -> Any:
    try:
        return json.loads(await request.body())
    except (ValueError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc


def _epoch_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def _device_to_dict(device: DeviceRecord) -> dict[str, Any]:
    return {
        "id": device.device_id,
        "signPubKey": device.sign_pub_key,
        "dhPubKey": device.dh_pub_key,
        "createdAt": _epoch_ms(device.created_at),
        "lastSeenAt": _epoch_ms(device.last_seen_at),
    }


def _store(request: Request) -> Store:
    return request.app.state.store


def _config(request: Request) -> Config:
    return request.app.state.config


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/users/register", status_code=201)
async def register(request: Request) -> dict:
    """Register a new user together with its first device.

    Rate limited per client IP (``register:ip:<ip>``).

    Returns:
        JSON: {userId, deviceId, username}

    Raises:
        HTTP 400: invalid JSON, username or device keys.
        HTTP 409: username already taken.
        HTTP 429: over the registration limit (Retry-After header).
    """
    ip = get_client_ip(request.headers)
    await enforce_rate_limit(request, f"register:ip:{ip}", _config(request).rate_limits.register)

    raw = await _read_json(request)
    try:
        body = RegisterRequest.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Invalid username or device keys") from exc

    store = _store(request)
    if await store.get_user_by_username(body.username) is not None:
        raise HTTPException(status_code=409, detail="Username already taken")

    user_id = generate_ulid()
    device_id = generate_ulid()
    try:
        await store.create_user_with_device(
            user_id=user_id,
            device_id=device_id,
            username=body.username,
            sign_pub_key=body.sign_pub_key,
            dh_pub_key=body.dh_pub_key,
        )
    except UsernameTakenError as exc:
        raise HTTPException(status_code=409, detail="Username already taken") from exc

    return {"userId": user_id, "deviceId": device_id, "username": body.username}


@router.get("/me")
async def me(
    request: Request,
    identity: VerifiedIdentity = Depends(authenticate_request),
) -> dict:
    """The signing user's profile and registered devices (timestamps in epoch ms)."""
    store = _store(request)
    user = await store.get_user(identity.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    devices = await store.list_user_devices(identity.user_id)
    return {
        "userId": user.user_id,
        "username": user.username,
        "deviceId": identity.device_id,
        "devices": [_device_to_dict(d) for d in devices],
    }


@router.post("/users/rename")
async def rename(
    request: Request,
    identity: VerifiedIdentity = Depends(authenticate_request),
) -> dict:
    """Change the signing user's username.

    Rate limited per user (``rename:user:<userId>``).

    Raises:
        HTTP 400: invalid JSON or username.
        HTTP 404: the user no longer exists.
        HTTP 409: username already taken.
    """
    await enforce_rate_limit(
        request, f"rename:user:{identity.user_id}", _config(request).rate_limits.rename
    )

    raw = await _read_json(request)
    try:
        body = RenameRequest.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Invalid username") from exc

    try:
        updated = await _store(request).rename_user(identity.user_id, body.username)
    except UsernameTakenError as exc:
        raise HTTPException(status_code=409, detail="Username already taken") from exc
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc

    logger.info("User renamed", user_id=updated.user_id)
    return {"userId": updated.user_id, "username": updated.username}
