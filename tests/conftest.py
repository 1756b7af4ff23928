"""Root test configuration for Dayline.

Clears the environment variables that select the store backend or override
config so every test starts from defaults, and provides key-pair and store
fixtures shared by unit and integration tests.
"""

from __future__ import annotations

from typing import Any, AsyncIterator

import pytest
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from dayline.store.sqlite_store import LocalSQLiteStore


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Force the SQLite backend and default config for every test."""
    for name in (
        "SUPABASE_URL",
        "SUPABASE_KEY",
        "DAYLINE_CONFIG",
        "DAYLINE_PORT",
        "DAYLINE_DB_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def ed25519_key() -> ed25519.Ed25519PrivateKey:
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture
def ecdsa_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
async def sqlite_store(tmp_path: Any) -> AsyncIterator[LocalSQLiteStore]:
    """Initialized LocalSQLiteStore on a fresh database file."""
    store = LocalSQLiteStore(db_path=str(tmp_path / "dayline.db"))
    await store.initialize()
    yield store
    await store.close()
