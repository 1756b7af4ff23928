"""Unit tests for dayline/store/factory.py - create_store().

Tests:
  - No SUPABASE env vars → LocalSQLiteStore at config.store.path
  - SUPABASE_URL + SUPABASE_KEY set → SupabaseStore
  - Only one of the two set → LocalSQLiteStore fallback
  - RuntimeError from the schema guard propagates
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest

from dayline.config import Config
from dayline.store.factory import _ENV_SUPABASE_KEY, _ENV_SUPABASE_URL, create_store
from dayline.store.sqlite_store import LocalSQLiteStore
from dayline.store.supabase_store import SupabaseStore


def _config(db_path: str) -> Config:
    config = Config.defaults()
    config.store.path = db_path
    return config


class TestStoreSelection:
    async def test_defaults_to_local_sqlite(self, tmp_path: Any) -> None:
        db_path = str(tmp_path / "factory.db")
        store = await create_store(_config(db_path))
        try:
            assert isinstance(store, LocalSQLiteStore)
            assert store.db_path == db_path
            assert await store.health_check() is True
        finally:
            await store.close()

    async def test_supabase_selected_when_both_vars_set(
        self, tmp_path: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv(_ENV_SUPABASE_URL, "https://test.supabase.co")
        monkeypatch.setenv(_ENV_SUPABASE_KEY, "service-role-key-test")
        with patch.object(SupabaseStore, "initialize", new_callable=AsyncMock) as init:
            store = await create_store(_config(str(tmp_path / "unused.db")))
        assert isinstance(store, SupabaseStore)
        init.assert_awaited_once()

    @pytest.mark.parametrize("present", [_ENV_SUPABASE_URL, _ENV_SUPABASE_KEY])
    async def test_single_supabase_var_falls_back(
        self, tmp_path: Any, monkeypatch: pytest.MonkeyPatch, present: str
    ) -> None:
        monkeypatch.setenv(present, "value")
        store = await create_store(_config(str(tmp_path / "fallback.db")))
        try:
            assert isinstance(store, LocalSQLiteStore)
        finally:
            await store.close()

    async def test_schema_mismatch_propagates(self, tmp_path: Any) -> None:
        db_path = str(tmp_path / "future.db")
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA user_version = 7;")
            await db.commit()
        with pytest.raises(RuntimeError):
            await create_store(_config(db_path))
