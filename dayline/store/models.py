"""Record types and store-level exceptions for the Dayline store.

Timestamps are timezone-aware UTC datetimes. The HTTP layer converts them to
epoch milliseconds, which is what desktop clients expect.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class UserRecord:
    """A registered user. ``username`` is unique and lowercase."""

    user_id: str
    username: str
    created_at: datetime


@dataclass
class DeviceRecord:
    """One registered key pair belonging to exactly one user.

    sign_pub_key: base64 DER SPKI key that verifies this device's requests.
    dh_pub_key:   base64 DER SPKI key used by clients for room key exchange;
                  the server only stores and returns it.
    """

    device_id: str
    user_id: str
    sign_pub_key: str
    dh_pub_key: str
    created_at: datetime
    last_seen_at: Optional[datetime] = None


class StoreError(Exception):
    """A store operation failed (connection lost, timeout, constraint error)."""


class UsernameTakenError(StoreError):
    """Username unique constraint violated on insert or rename."""

    def __init__(self, username: str) -> None:
        super().__init__(f"Username already taken: {username}")
        self.username = username


class UserNotFoundError(StoreError):
    """The referenced user id does not exist."""
