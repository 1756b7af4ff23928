"""Fixed-window rate limiter backed by the shared counter store.

Each (logical key, window) pair owns one counter row keyed
``"<key>:<bucket>"`` where ``bucket = now_ms // window_ms``. A call increments
that row atomically and is admitted while the post-increment count is
<= limit. Buckets are derived from wall-clock time, so an exhausted key
recovers at the next window boundary without any reset; abandoned rows are
removed out-of-band by the counter pruner.

Fixed windows allow up to 2x ``limit`` calls straddling a boundary. That is
acceptable for abuse throttling (registration, renames, message spam) where
the limit is a soft ceiling.

Concurrency: the increment is a single atomic statement in the store; there
are no in-process locks, so any number of workers and processes can share
the same counters.

Logical keys follow ``"<action>:<scope>:<id>"``, e.g. ``register:ip:1.2.3.4``
or ``rename:user:<user_id>``.
"""

from __future__ import annotations

import math
import time
from typing import Callable, Mapping

from dayline.auth.errors import InternalError, InvalidArgumentError, RateLimitExceededError
from dayline.constants import MAX_RATE_LIMIT_KEY_LENGTH, MIN_RATE_LIMIT_WINDOW_MS
from dayline.store.protocol import CounterStore
from dayline.utils.logger import get_logger

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """Enforces fixed-window limits against a shared CounterStore.

    One instance is shared by all requests (``app.state.rate_limiter``).

    Args:
        store: Atomic increment-and-get counter store.
        clock: Returns "now" in epoch milliseconds. Injected in tests.
    """

    def __init__(self, store: CounterStore, clock: Callable[[], int] = _now_ms) -> None:
        self._store = store
        self._clock = clock

    async def enforce(self, key: str, limit: int, window_ms: int) -> None:
        """Count one call against ``key`` and reject it if over ``limit``.

        Args:
            key:       Logical key identifying resource + principal. Trimmed;
                       must be non-empty and at most 200 characters.
            limit:     Positive integer ceiling per window.
            window_ms: Window width in milliseconds, >= 1000.

        Raises:
            InvalidArgumentError:   bad key/limit/window (store not touched).
            RateLimitExceededError: over quota; carries retry_after_seconds.
            InternalError:          the counter store failed. The call is
                                    neither admitted nor retried.
        """
        base_key = key.strip() if isinstance(key, str) else ""
        if not base_key or len(base_key) > MAX_RATE_LIMIT_KEY_LENGTH:
            raise InvalidArgumentError("Invalid rate limit key")
        if not _is_int(limit) or limit <= 0:
            raise InvalidArgumentError("Invalid rate limit")
        if not _is_int(window_ms) or window_ms < MIN_RATE_LIMIT_WINDOW_MS:
            raise InvalidArgumentError("Invalid rate limit window")

        now = self._clock()
        bucket = now // window_ms
        bucket_key = f"{base_key}:{bucket}"

        try:
            count = await self._store.increment_and_get(bucket_key)
        except Exception as exc:
            logger.error(
                "Rate limit counter increment failed",
                bucket_key=bucket_key,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise InternalError("Rate limiter unavailable") from exc

        if count <= limit:
            return

        reset_at = (bucket + 1) * window_ms
        retry_after_seconds = max(1, math.ceil((reset_at - now) / 1000))
        logger.info(
            "Rate limit exceeded",
            key=base_key,
            count=count,
            limit=limit,
            retry_after_seconds=retry_after_seconds,
        )
        raise RateLimitExceededError(retry_after_seconds)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def get_client_ip(headers: Mapping[str, str]) -> str:
    """Best-effort client IP from proxy headers, for IP-scoped limit keys.

    Precedence: CF-Connecting-IP, X-Real-IP, first hop of X-Forwarded-For.
    Returns "unknown" when none is present, so all such callers share a bucket.
    """
    cf = (headers.get("cf-connecting-ip") or "").strip()
    if cf:
        return cf

    real = (headers.get("x-real-ip") or "").strip()
    if real:
        return real

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    return "unknown"
