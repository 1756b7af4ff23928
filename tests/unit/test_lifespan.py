"""Unit tests for dayline/main.py - application factory + lifespan lifecycle.

Covers:
  - create_app() returns independent instances with ready=False
  - /health: 503 before ready, 200 with store status after startup
  - lifespan wires config, store, verifier and limiter into app.state
  - startup failure on bad config (SystemExit) never sets ready
  - shutdown closes the store and clears ready
"""

from __future__ import annotations

from typing import Any

import aiosqlite
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from starlette.testclient import TestClient

from dayline.auth.limiter import RateLimiter
from dayline.auth.signing import SignatureVerifier
from dayline.config import Config
from dayline.main import create_app, lifespan
from dayline.store.sqlite_store import LocalSQLiteStore

# ─── Helpers ──────────────────────────────────────────────────────────────────


def _patch_load_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> Config:
    """Patch load_config in dayline.main to return defaults on a temp database."""
    config = Config.defaults()
    config.store.path = str(tmp_path / "lifespan.db")
    config.auth.signature_window_ms = 120_000
    monkeypatch.setattr("dayline.main.load_config", lambda: config)
    return config


# ─── Factory ──────────────────────────────────────────────────────────────────


class TestCreateAppFactory:
    def test_create_app_returns_fastapi_instance(self) -> None:
        assert isinstance(create_app(), FastAPI)

    def test_instances_are_independent(self) -> None:
        assert create_app() is not create_app()

    def test_ready_false_before_lifespan(self) -> None:
        assert create_app().state.ready is False

    def test_docs_disabled_by_default(self) -> None:
        assert create_app().docs_url is None


# ─── Health before / after ready ──────────────────────────────────────────────


class TestHealth:
    async def test_health_503_before_ready(self) -> None:
        application = create_app()
        transport = ASGITransport(app=application)  # type: ignore[arg-type]
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")
        assert response.status_code == 503
        assert response.json()["error"]["status"] == "starting"

    async def test_health_200_when_ready(self, sqlite_store: LocalSQLiteStore) -> None:
        application = create_app()
        application.state.store = sqlite_store
        application.state.ready = True
        transport = ASGITransport(app=application)  # type: ignore[arg-type]
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "store": "healthy",
            "store_backend": "sqlite",
        }

    async def test_health_degraded_when_store_down(self, tmp_path: Any) -> None:
        store = LocalSQLiteStore(db_path=str(tmp_path / "closed.db"))
        application = create_app()
        application.state.store = store
        application.state.ready = True
        transport = ASGITransport(app=application)  # type: ignore[arg-type]
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    async def test_root_discovery(self) -> None:
        transport = ASGITransport(app=create_app())  # type: ignore[arg-type]
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "Dayline"


# ─── Lifespan ─────────────────────────────────────────────────────────────────


class TestLifespan:
    def test_startup_wires_state(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
        config = _patch_load_config(monkeypatch, tmp_path)
        application = create_app()

        with TestClient(application) as client:
            assert application.state.ready is True
            assert application.state.config is config
            assert isinstance(application.state.store, LocalSQLiteStore)
            assert isinstance(application.state.verifier, SignatureVerifier)
            assert application.state.verifier.window_ms == 120_000
            assert isinstance(application.state.rate_limiter, RateLimiter)
            assert client.get("/health").status_code == 200

    def test_shutdown_clears_ready_and_closes_store(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Any
    ) -> None:
        _patch_load_config(monkeypatch, tmp_path)
        application = create_app()

        with TestClient(application):
            store = application.state.store

        assert application.state.ready is False
        assert store._db is None

    async def test_bad_config_never_sets_ready(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def _bad_config() -> Config:
            raise SystemExit(1)

        monkeypatch.setattr("dayline.main.load_config", _bad_config)
        application = create_app()

        with pytest.raises(SystemExit) as exc_info:
            async with lifespan(application):
                pass

        assert exc_info.value.code == 1
        assert application.state.ready is False

    async def test_schema_mismatch_refuses_startup(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Any
    ) -> None:
        config = _patch_load_config(monkeypatch, tmp_path)
        async with aiosqlite.connect(config.store.path) as db:
            await db.execute("PRAGMA user_version = 42;")
            await db.commit()

        application = create_app()
        with pytest.raises(RuntimeError):
            async with lifespan(application):
                pass
        assert application.state.ready is False
