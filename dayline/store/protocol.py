"""Store protocols consumed by the auth core and the HTTP layer.

Layout:
    models.py          - UserRecord, DeviceRecord, StoreError family
    protocol.py        - DeviceRegistry, CounterStore, Store protocols
    sqlite_store.py    - LocalSQLiteStore (aiosqlite, WAL mode, version guard)
    supabase_store.py  - SupabaseStore (async client, RPC counter increment)
    factory.py         - create_store() - backend selection by env vars

The verifier only needs DeviceRegistry and the limiter only needs
CounterStore; both backends implement the full Store protocol.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from dayline.store.models import DeviceRecord, UserRecord


@runtime_checkable
class DeviceRegistry(Protocol):
    """Device-key lookup used by SignatureVerifier."""

    async def lookup_signing_key(self, device_id: str, user_id: str) -> Optional[str]:
        """Return the base64 SPKI signing key for the (device, user) pair.

        Both ids must match the same record. Returns None when no such record
        exists. Raises StoreError when the store cannot be queried.
        """
        ...

    async def touch_last_seen(self, device_id: str) -> None:
        """Set the device's last_seen_at to now."""
        ...


@runtime_checkable
class CounterStore(Protocol):
    """Shared atomic counters used by RateLimiter."""

    async def increment_and_get(self, bucket_key: str) -> int:
        """Atomically insert-with-1 or increment, returning the new count.

        Must be a single atomic operation against the shared store so that
        concurrent callers (in any process) observe a linear sequence.
        """
        ...


@runtime_checkable
class Store(DeviceRegistry, CounterStore, Protocol):
    """Full persistence surface used by the application."""

    async def initialize(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def health_check(self) -> bool:
        """Returns True if the backend is operational. Must not raise."""
        ...

    async def create_user_with_device(
        self,
        user_id: str,
        device_id: str,
        username: str,
        sign_pub_key: str,
        dh_pub_key: str,
    ) -> tuple[UserRecord, DeviceRecord]:
        """Insert a user and its first device. Raises UsernameTakenError."""
        ...

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        ...

    async def rename_user(self, user_id: str, username: str) -> UserRecord:
        """Raises UsernameTakenError or UserNotFoundError."""
        ...

    async def list_user_devices(self, user_id: str) -> list[DeviceRecord]:
        """Devices for a user, oldest first."""
        ...

    async def prune_counters(self, retention_days: int) -> int:
        """Delete counter rows not updated within retention_days. Returns count."""
        ...
