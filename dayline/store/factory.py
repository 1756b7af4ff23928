"""Store factory - backend selection and initialization.

Backend selection:
  1. If SUPABASE_URL and SUPABASE_KEY are both set: use SupabaseStore
  2. Otherwise: use LocalSQLiteStore (default)

LocalSQLiteStore path comes from ``config.store.path``, which already has the
DAYLINE_DB_PATH override applied by load_config().

PRAGMA version guard:
  LocalSQLiteStore.initialize() raises RuntimeError on an unknown
  user_version. The FastAPI lifespan lets it propagate so startup is refused.
"""

from __future__ import annotations

import os

from dayline.config import Config
from dayline.store.protocol import Store
from dayline.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Environment variable names ───────────────────────────────────────────────

_ENV_SUPABASE_URL = "SUPABASE_URL"
_ENV_SUPABASE_KEY = "SUPABASE_KEY"


async def create_store(config: Config) -> Store:
    """Create and initialize the store selected by the environment.

    Raises:
      RuntimeError: LocalSQLiteStore found an incompatible schema version.
      StoreError:   SupabaseStore could not create its client.

    Returns:
        Initialized Store ready for use.
    """
    supabase_url = os.getenv(_ENV_SUPABASE_URL)
    supabase_key = os.getenv(_ENV_SUPABASE_KEY)

    if supabase_url and supabase_key:
        return await _create_supabase_store(supabase_url, supabase_key)
    return await _create_local_sqlite_store(config.store.path)


async def _create_supabase_store(url: str, key: str) -> Store:
    from dayline.store.supabase_store import SupabaseStore

    store = SupabaseStore(url=url, key=key)
    await store.initialize()
    logger.info(
        "store_selected",
        backend="SupabaseStore",
        # Never log the key
        supabase_host=url.split("//")[-1].split(".")[0] if "//" in url else "unknown",
    )
    return store


async def _create_local_sqlite_store(db_path: str) -> Store:
    from dayline.store.sqlite_store import LocalSQLiteStore

    store = LocalSQLiteStore(db_path=db_path)
    await store.initialize()
    logger.info("store_selected", backend="LocalSQLiteStore", db_path=db_path)
    return store
