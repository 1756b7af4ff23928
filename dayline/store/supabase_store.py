"""SupabaseStore - Postgres-backed store reached through the Supabase async client.

Use this backend when more than one host serves traffic: counters live in a
single Postgres table, so every process shares the same windows.

Architecture:
  - Single AsyncClient created in initialize()
  - Every call bounded by asyncio.wait_for(timeout=_SUPABASE_TIMEOUT_S)
  - Failures raise StoreError - never swallowed (the limiter must not fail open)
  - Counter increment is ONE RPC call to a SQL function doing the upsert, so
    the read-modify-write happens inside Postgres atomically

Required database objects (run once in the Supabase SQL editor):

    create table users (
        id          text primary key,
        username    text not null unique,
        created_at  timestamptz not null default now()
    );

    create table user_devices (
        id            text primary key,
        user_id       text not null references users(id) on delete cascade,
        sign_pub_key  text not null,
        dh_pub_key    text not null,
        created_at    timestamptz not null default now(),
        last_seen_at  timestamptz
    );

    create table rate_limits (
        key         text primary key,
        count       integer not null,
        updated_at  timestamptz not null default now()
    );

    create function increment_rate_limit(bucket_key text) returns integer
    language sql as $$
        insert into rate_limits (key, count, updated_at)
        values (bucket_key, 1, now())
        on conflict (key) do update
            set count = rate_limits.count + 1, updated_at = now()
        returning count;
    $$;

Install: pip install dayline[supabase]

Environment:
  SUPABASE_URL  - required for SupabaseStore selection in factory.py
  SUPABASE_KEY  - required (service role key, not anon key)
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Optional, TypeVar

from dayline.store.models import (
    DeviceRecord,
    StoreError,
    UserNotFoundError,
    UsernameTakenError,
    UserRecord,
)
from dayline.utils.logger import get_logger

logger = get_logger(__name__)

_SUPABASE_TIMEOUT_S = 5.0
"""All Supabase operations are wrapped in asyncio.wait_for(timeout=_SUPABASE_TIMEOUT_S)."""

_INCREMENT_FUNCTION = "increment_rate_limit"

# Postgres SQLSTATE for unique_violation.
_UNIQUE_VIOLATION = "23505"

T = TypeVar("T")


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    # PostgREST returns ISO 8601; older Pythons reject a trailing "Z".
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _dict_to_user(row: dict[str, Any]) -> UserRecord:
    return UserRecord(
        user_id=row["id"],
        username=row["username"],
        created_at=_parse_ts(row["created_at"]) or datetime.now(timezone.utc),
    )


def _dict_to_device(row: dict[str, Any]) -> DeviceRecord:
    return DeviceRecord(
        device_id=row["id"],
        user_id=row["user_id"],
        sign_pub_key=row["sign_pub_key"],
        dh_pub_key=row["dh_pub_key"],
        created_at=_parse_ts(row["created_at"]) or datetime.now(timezone.utc),
        last_seen_at=_parse_ts(row.get("last_seen_at")),
    )


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "code", None) == _UNIQUE_VIOLATION


class SupabaseStore:
    """Async Supabase implementation of the Store protocol.

    Usage:
        store = SupabaseStore(url="https://...", key="service-role-key")
        await store.initialize()
        count = await store.increment_and_get("rename:user:01H...:20433")
        await store.close()
    """

    backend_name = "supabase"

    def __init__(
        self,
        url: str,
        key: str,
        timeout_s: float = _SUPABASE_TIMEOUT_S,
        client: Optional[Any] = None,
    ) -> None:
        self._url = url
        self._key = key
        self._timeout_s = timeout_s
        self._client: Optional[Any] = client

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create the async Supabase client (skipped when one was injected).

        Raises:
            StoreError: the client could not be created in time.
        """
        if self._client is not None:
            return

        from supabase import create_async_client

        try:
            self._client = await asyncio.wait_for(
                create_async_client(self._url, self._key),
                timeout=self._timeout_s,
            )
        except Exception as exc:
            raise StoreError(f"supabase client init failed: {exc}") from exc

        logger.info("supabase_store_initialized", timeout_s=self._timeout_s)

    async def close(self) -> None:
        """Drop the client (HTTP clients are stateless)."""
        self._client = None
        logger.debug("supabase_store_closed")

    async def health_check(self) -> bool:
        """Returns True if Supabase answers a trivial query within timeout."""
        if self._client is None:
            return False
        try:
            await self._run(
                self._client.table("users").select("id").limit(1).execute(),
                "health_check",
            )
            return True
        except StoreError:
            return False

    def _table(self, name: str) -> Any:
        if self._client is None:
            raise StoreError("Store not initialized - call initialize() first")
        return self._client.table(name)

    async def _run(self, awaitable: Awaitable[T], operation: str) -> T:
        """Await a Supabase call with the store timeout; wrap every failure."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout_s)
        except StoreError:
            raise
        except Exception as exc:
            logger.error(
                "supabase_operation_failed",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StoreError(f"{operation} failed: {exc}") from exc

    # ── Counter store ─────────────────────────────────────────────────────────

    async def increment_and_get(self, bucket_key: str) -> int:
        if self._client is None:
            raise StoreError("Store not initialized - call initialize() first")
        response = await self._run(
            self._client.rpc(_INCREMENT_FUNCTION, {"bucket_key": bucket_key}).execute(),
            "increment_and_get",
        )
        data = response.data
        # Scalar functions come back as a bare value; tolerate a one-row list too.
        if isinstance(data, list):
            data = data[0] if data else None
            if isinstance(data, dict):
                data = data.get(_INCREMENT_FUNCTION, data.get("count"))
        if data is None:
            raise StoreError("increment_and_get returned no value")
        return int(data)

    async def prune_counters(self, retention_days: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        response = await self._run(
            self._table("rate_limits").delete().lt("updated_at", cutoff.isoformat()).execute(),
            "prune_counters",
        )
        count = len(response.data or [])
        if count > 0:
            logger.info(
                "counter_prune_complete",
                deleted_count=count,
                retention_days=retention_days,
            )
        return count

    # ── Device registry ───────────────────────────────────────────────────────

    async def lookup_signing_key(self, device_id: str, user_id: str) -> Optional[str]:
        response = await self._run(
            self._table("user_devices")
            .select("sign_pub_key")
            .eq("id", device_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute(),
            "lookup_signing_key",
        )
        rows = response.data or []
        return rows[0]["sign_pub_key"] if rows else None

    async def touch_last_seen(self, device_id: str) -> None:
        await self._run(
            self._table("user_devices")
            .update({"last_seen_at": datetime.now(timezone.utc).isoformat()})
            .eq("id", device_id)
            .execute(),
            "touch_last_seen",
        )

    # ── Users ─────────────────────────────────────────────────────────────────

    async def create_user_with_device(
        self,
        user_id: str,
        device_id: str,
        username: str,
        sign_pub_key: str,
        dh_pub_key: str,
    ) -> tuple[UserRecord, DeviceRecord]:
        """Insert the user, then the device; remove the user if the device fails."""
        try:
            user_response = await asyncio.wait_for(
                self._table("users")
                .insert({"id": user_id, "username": username})
                .execute(),
                timeout=self._timeout_s,
            )
        except StoreError:
            raise
        except Exception as exc:
            if _is_unique_violation(exc):
                raise UsernameTakenError(username) from exc
            raise StoreError(f"user insert failed: {exc}") from exc

        try:
            device_response = await self._run(
                self._table("user_devices")
                .insert(
                    {
                        "id": device_id,
                        "user_id": user_id,
                        "sign_pub_key": sign_pub_key,
                        "dh_pub_key": dh_pub_key,
                    }
                )
                .execute(),
                "device_insert",
            )
        except StoreError:
            await self._run(
                self._table("users").delete().eq("id", user_id).execute(),
                "user_insert_rollback",
            )
            raise

        logger.info("User registered", user_id=user_id, device_id=device_id)
        return (
            _dict_to_user(user_response.data[0]),
            _dict_to_device(device_response.data[0]),
        )

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        return await self._fetch_user("id", user_id)

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        return await self._fetch_user("username", username)

    async def _fetch_user(self, column: str, value: str) -> Optional[UserRecord]:
        response = await self._run(
            self._table("users").select("*").eq(column, value).limit(1).execute(),
            "get_user",
        )
        rows = response.data or []
        return _dict_to_user(rows[0]) if rows else None

    async def rename_user(self, user_id: str, username: str) -> UserRecord:
        try:
            response = await asyncio.wait_for(
                self._table("users")
                .update({"username": username})
                .eq("id", user_id)
                .execute(),
                timeout=self._timeout_s,
            )
        except StoreError:
            raise
        except Exception as exc:
            if _is_unique_violation(exc):
                raise UsernameTakenError(username) from exc
            raise StoreError(f"rename failed: {exc}") from exc

        rows = response.data or []
        if not rows:
            raise UserNotFoundError(f"User not found: {user_id}")
        return _dict_to_user(rows[0])

    async def list_user_devices(self, user_id: str) -> list[DeviceRecord]:
        response = await self._run(
            self._table("user_devices")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at")
            .execute(),
            "list_user_devices",
        )
        return [_dict_to_device(row) for row in response.data or []]
