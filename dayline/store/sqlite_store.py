"""LocalSQLiteStore - aiosqlite-based device registry and counter store.

Uses aiosqlite EXCLUSIVELY; no synchronous sqlite3 calls on the event loop.

Features:
  - WAL mode: PRAGMA journal_mode=WAL (concurrent readers while writing, and
    safe sharing of the database file between several server processes)
  - Schema version guard: PRAGMA user_version=1 - RuntimeError on mismatch
  - Long-lived connection: opened in initialize(), closed in close()
  - Atomic counters: one INSERT ... ON CONFLICT DO UPDATE ... RETURNING per
    increment, so concurrent increments from any process never lose updates
  - Write lock: serializes transactions on the shared connection so one
    coroutine's commit never publishes another's half-finished transaction

Tables:
  users         (id, username UNIQUE, created_at)
  user_devices  (id, user_id, sign_pub_key, dh_pub_key, created_at, last_seen_at)
  rate_limits   (key, count, updated_at)
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import aiosqlite

from dayline.store.models import (
    DeviceRecord,
    StoreError,
    UserNotFoundError,
    UsernameTakenError,
    UserRecord,
)
from dayline.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id              TEXT PRIMARY KEY,
    username        TEXT NOT NULL UNIQUE,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_devices (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    sign_pub_key    TEXT NOT NULL,
    dh_pub_key      TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    last_seen_at    TEXT
);

CREATE INDEX IF NOT EXISTS idx_user_devices_user
    ON user_devices(user_id, created_at);

CREATE TABLE IF NOT EXISTS rate_limits (
    key             TEXT PRIMARY KEY,
    count           INTEGER NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rate_limits_updated_at
    ON rate_limits(updated_at);
"""

_SCHEMA_VERSION = 1

_INCREMENT_SQL = """
INSERT INTO rate_limits (key, count, updated_at)
VALUES (?, 1, ?)
ON CONFLICT (key) DO UPDATE SET
    count = rate_limits.count + 1,
    updated_at = excluded.updated_at
RETURNING count
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_user(row: aiosqlite.Row) -> UserRecord:
    return UserRecord(
        user_id=row["id"],
        username=row["username"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_device(row: aiosqlite.Row) -> DeviceRecord:
    return DeviceRecord(
        device_id=row["id"],
        user_id=row["user_id"],
        sign_pub_key=row["sign_pub_key"],
        dh_pub_key=row["dh_pub_key"],
        created_at=datetime.fromisoformat(row["created_at"]),
        last_seen_at=_parse_ts(row["last_seen_at"]),
    )


# ─── LocalSQLiteStore ─────────────────────────────────────────────────────────


class LocalSQLiteStore:
    """Async SQLite store using aiosqlite exclusively.

    Default path: ~/.dayline/dayline.db
    Override via: DAYLINE_DB_PATH environment variable or store.path config,
    or pass db_path explicitly (used in tests).

    Every failure of the underlying database is raised as StoreError; nothing
    is swallowed, because the rate limiter must never fail open.

    Usage:
        store = LocalSQLiteStore(db_path)
        await store.initialize()   # raises RuntimeError on schema version mismatch
        count = await store.increment_and_get("register:ip:1.2.3.4:482")
        await store.close()
    """

    backend_name = "sqlite"

    def __init__(self, db_path: str = "~/.dayline/dayline.db") -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL mode, and create/verify the schema.

        PRAGMA user_version:
          - 0: fresh DB → create schema, set user_version=1
          - 1: compatible schema → no-op (idempotent)
          - other: RuntimeError; the lifespan refuses startup

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")
        # Other processes may hold the write lock briefly; wait instead of failing.
        await self._db.execute("PRAGMA busy_timeout = 5000;")
        await self._db.execute("PRAGMA foreign_keys = ON;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "store_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "store_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported database schema version: {current_version}. "
                f"Delete {self._db_path} to reset or point DAYLINE_DB_PATH elsewhere."
            )

    async def close(self) -> None:
        """Close the aiosqlite connection gracefully."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("store_closed", db_path=self._db_path)

    async def health_check(self) -> bool:
        """Returns True if the DB connection is alive and queryable."""
        try:
            assert self._db is not None
            await self._db.execute("SELECT 1")
            return True
        except Exception:
            return False

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("Store not initialized - call initialize() first")
        return self._db

    # ── Counter store ─────────────────────────────────────────────────────────

    async def increment_and_get(self, bucket_key: str) -> int:
        """Insert the counter at 1 or increment it; return the new value."""
        db = self._conn()
        try:
            async with self._write_lock:
                rows = await db.execute_fetchall(
                    _INCREMENT_SQL, (bucket_key, _utcnow().isoformat())
                )
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"counter increment failed: {exc}") from exc

        rows = list(rows)
        if not rows:
            raise StoreError("counter increment returned no row")
        return int(rows[0][0])

    async def prune_counters(self, retention_days: int) -> int:
        """Delete counter rows whose last increment is older than retention_days.

        Rows belong to past windows once their window has closed; the
        retention period only has to exceed the longest configured window.
        """
        db = self._conn()
        cutoff = _utcnow() - timedelta(days=retention_days)
        try:
            async with self._write_lock:
                cursor = await db.execute(
                    "DELETE FROM rate_limits WHERE updated_at < ?",
                    (cutoff.isoformat(),),
                )
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"counter prune failed: {exc}") from exc

        count: int = cursor.rowcount
        if count > 0:
            logger.info(
                "counter_prune_complete",
                deleted_count=count,
                retention_days=retention_days,
                cutoff=cutoff.isoformat(),
            )
        return count

    # ── Device registry ───────────────────────────────────────────────────────

    async def lookup_signing_key(self, device_id: str, user_id: str) -> Optional[str]:
        """Signing key for the (device, user) pair, or None."""
        db = self._conn()
        try:
            cursor = await db.execute(
                "SELECT sign_pub_key FROM user_devices WHERE id = ? AND user_id = ?",
                (device_id, user_id),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreError(f"device lookup failed: {exc}") from exc
        return row["sign_pub_key"] if row else None

    async def touch_last_seen(self, device_id: str) -> None:
        db = self._conn()
        try:
            async with self._write_lock:
                await db.execute(
                    "UPDATE user_devices SET last_seen_at = ? WHERE id = ?",
                    (_utcnow().isoformat(), device_id),
                )
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"last_seen update failed: {exc}") from exc

    # ── Users ─────────────────────────────────────────────────────────────────

    async def create_user_with_device(
        self,
        user_id: str,
        device_id: str,
        username: str,
        sign_pub_key: str,
        dh_pub_key: str,
    ) -> tuple[UserRecord, DeviceRecord]:
        """Insert a user and its first device in one transaction.

        Raises:
            UsernameTakenError: username already registered.
            StoreError:         any other database failure.
        """
        db = self._conn()
        now = _utcnow()
        async with self._write_lock:
            try:
                await db.execute(
                    "INSERT INTO users (id, username, created_at) VALUES (?, ?, ?)",
                    (user_id, username, now.isoformat()),
                )
                await db.execute(
                    "INSERT INTO user_devices "
                    "(id, user_id, sign_pub_key, dh_pub_key, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (device_id, user_id, sign_pub_key, dh_pub_key, now.isoformat()),
                )
                await db.commit()
            except aiosqlite.IntegrityError as exc:
                await db.rollback()
                if "users.username" in str(exc):
                    raise UsernameTakenError(username) from exc
                raise StoreError(f"user insert failed: {exc}") from exc
            except aiosqlite.Error as exc:
                await db.rollback()
                raise StoreError(f"user insert failed: {exc}") from exc

        logger.info("User registered", user_id=user_id, device_id=device_id)
        return (
            UserRecord(user_id=user_id, username=username, created_at=now),
            DeviceRecord(
                device_id=device_id,
                user_id=user_id,
                sign_pub_key=sign_pub_key,
                dh_pub_key=dh_pub_key,
                created_at=now,
            ),
        )

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        return await self._fetch_user("SELECT * FROM users WHERE id = ?", user_id)

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        return await self._fetch_user("SELECT * FROM users WHERE username = ?", username)

    async def _fetch_user(self, sql: str, value: str) -> Optional[UserRecord]:
        db = self._conn()
        try:
            cursor = await db.execute(sql, (value,))
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreError(f"user lookup failed: {exc}") from exc
        return _row_to_user(row) if row else None

    async def rename_user(self, user_id: str, username: str) -> UserRecord:
        """Change a user's username.

        Raises:
            UsernameTakenError: another user already has ``username``.
            UserNotFoundError:  no user with ``user_id``.
        """
        db = self._conn()
        async with self._write_lock:
            try:
                cursor = await db.execute(
                    "UPDATE users SET username = ? WHERE id = ?",
                    (username, user_id),
                )
                await db.commit()
            except aiosqlite.IntegrityError as exc:
                await db.rollback()
                raise UsernameTakenError(username) from exc
            except aiosqlite.Error as exc:
                await db.rollback()
                raise StoreError(f"rename failed: {exc}") from exc

        if cursor.rowcount == 0:
            raise UserNotFoundError(f"User not found: {user_id}")

        user = await self.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User not found: {user_id}")
        return user

    async def list_user_devices(self, user_id: str) -> list[DeviceRecord]:
        db = self._conn()
        try:
            cursor = await db.execute(
                "SELECT * FROM user_devices WHERE user_id = ? "
                "ORDER BY created_at ASC, id ASC",
                (user_id,),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StoreError(f"device list failed: {exc}") from exc
        return [_row_to_device(row) for row in rows]
