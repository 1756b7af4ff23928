"""Dayline persistence package.

Re-exports the records and protocols so callers can write:

    from dayline.store import Store, DeviceRecord, StoreError

Layout:
    models.py          - UserRecord, DeviceRecord, StoreError hierarchy
    protocol.py        - DeviceRegistry / CounterStore / Store protocols
    sqlite_store.py    - LocalSQLiteStore (aiosqlite, WAL mode, PRAGMA version guard)
    supabase_store.py  - SupabaseStore (async client, 5s timeout, errors propagate)
    factory.py         - create_store() - backend selection by env vars
    pruner.py          - run_counter_pruner() - daily expired-counter cleanup
"""

from dayline.store.models import (
    DeviceRecord,
    StoreError,
    UserNotFoundError,
    UsernameTakenError,
    UserRecord,
)
from dayline.store.protocol import CounterStore, DeviceRegistry, Store

__all__ = [
    # Records
    "UserRecord",
    "DeviceRecord",
    # Errors
    "StoreError",
    "UsernameTakenError",
    "UserNotFoundError",
    # Protocols
    "DeviceRegistry",
    "CounterStore",
    "Store",
]
