"""Unit tests for dayline/store/pruner.py - run_counter_pruner()."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest

from dayline.store.models import StoreError
from dayline.store.protocol import Store
from dayline.store.pruner import run_counter_pruner, seconds_until_next_run
from dayline.store.sqlite_store import LocalSQLiteStore


class TestSecondsUntilNextRun:
    def test_before_three_am(self) -> None:
        now = datetime(2026, 5, 1, 2, 59, 0, tzinfo=timezone.utc)
        assert seconds_until_next_run(now) == 60

    def test_after_three_am_waits_until_tomorrow(self) -> None:
        now = datetime(2026, 5, 1, 3, 1, 0, tzinfo=timezone.utc)
        assert seconds_until_next_run(now) == 24 * 3600 - 60

    def test_exactly_three_am_waits_a_day(self) -> None:
        now = datetime(2026, 5, 1, 3, 0, 0, tzinfo=timezone.utc)
        assert seconds_until_next_run(now) == 24 * 3600


class TestRunCounterPruner:
    async def test_prunes_after_sleep(self) -> None:
        store = AsyncMock()
        store.prune_counters.return_value = 4
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) > 1:
                raise asyncio.CancelledError

        with patch("dayline.store.pruner.asyncio.sleep", fake_sleep):
            with pytest.raises(asyncio.CancelledError):
                await run_counter_pruner(store, retention_days=3)

        store.prune_counters.assert_awaited_once_with(3)

    async def test_error_retries_after_an_hour(self) -> None:
        store = AsyncMock()
        store.prune_counters.side_effect = StoreError("locked")
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) > 2:
                raise asyncio.CancelledError

        with patch("dayline.store.pruner.asyncio.sleep", fake_sleep):
            with pytest.raises(asyncio.CancelledError):
                await run_counter_pruner(store)

        assert sleeps[1] == 3600

    async def test_cancel_stops_task(self) -> None:
        task = asyncio.create_task(run_counter_pruner(AsyncMock()))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert task.cancelled()

    async def test_prunes_real_store(self, sqlite_store: LocalSQLiteStore) -> None:
        await sqlite_store.increment_and_get("old:1")
        await sqlite_store.increment_and_get("live:2")
        stale = (datetime.now(timezone.utc) - timedelta(days=10)).isoformat()
        async with aiosqlite.connect(sqlite_store.db_path) as db:
            await db.execute("UPDATE rate_limits SET updated_at = ? WHERE key = ?", (stale, "old:1"))
            await db.commit()

        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) > 1:
                raise asyncio.CancelledError

        assert isinstance(sqlite_store, Store)
        with patch("dayline.store.pruner.asyncio.sleep", fake_sleep):
            with pytest.raises(asyncio.CancelledError):
                await run_counter_pruner(sqlite_store, retention_days=7)

        assert await sqlite_store.increment_and_get("old:1") == 1
        assert await sqlite_store.increment_and_get("live:2") == 2
