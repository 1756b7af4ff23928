"""Background cleanup of expired rate-limit counters.

Counter rows are keyed by window bucket and never reused once their window
has passed, so the table only grows. run_counter_pruner() deletes rows whose
last update is older than the configured retention, once a day.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from dayline.store.protocol import Store
from dayline.utils.logger import get_logger

logger = get_logger(__name__)

PRUNE_HOUR_UTC = 3
RETRY_AFTER_ERROR_S = 3600


def seconds_until_next_run(now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` until the next 03:00 UTC."""
    now = now or datetime.now(timezone.utc)
    next_run = now.replace(hour=PRUNE_HOUR_UTC, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def run_counter_pruner(store: Store, retention_days: int = 7) -> None:
    """Background asyncio task: run prune_counters() daily at 3:00 AM UTC.

    Registered via asyncio.create_task() during lifespan startup and cancelled
    on shutdown.

    Retry policy:
      - asyncio.CancelledError → re-raised (expected on shutdown)
      - Any other exception    → log ERROR, retry after 1 hour
    """
    while True:
        try:
            sleep_seconds = seconds_until_next_run()
            logger.info("counter_pruner_scheduled", sleep_seconds=sleep_seconds)
            await asyncio.sleep(sleep_seconds)

            count = await store.prune_counters(retention_days)
            logger.info(
                "counter_prune_run",
                deleted_count=count,
                retention_days=retention_days,
            )

        except asyncio.CancelledError:
            logger.info("counter_pruner_cancelled")
            raise

        except Exception as exc:
            logger.error(
                "counter_prune_error",
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RETRY_AFTER_ERROR_S,
            )
            try:
                await asyncio.sleep(RETRY_AFTER_ERROR_S)
            except asyncio.CancelledError:
                logger.info("counter_pruner_cancelled_during_retry_sleep")
                raise
