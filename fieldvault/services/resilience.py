from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from fieldvault.core.config import get_settings
from fieldvault.core.errors import StoreIOError


logger = logging.getLogger(__name__)


TransientException = (StoreIOError, TimeoutError, OSError)


def _is_transient(exc: Exception) -> bool:
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    # Hard per-call timeout plus bounded, exponentially backed-off attempts.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def backoff_for(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based), jittered by +/-50%."""
        base = self.backoff_ms * (2 ** (attempt - 1))
        return base * random.uniform(0.5, 1.5) / 1000.0


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.store_call_timeout_ms,
        max_attempts=settings.store_retry_max_attempts,
        backoff_ms=settings.store_retry_backoff_ms,
    )


def snapshot_retry_policy() -> RetryPolicy:
    # Snapshot and restore copy a whole table in one call, so they get the longer timeout.
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.store_snapshot_timeout_ms,
        max_attempts=settings.store_retry_max_attempts,
        backoff_ms=settings.store_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    operation: str = "store_call",
) -> Any:
    """Await ``func()`` under the policy timeout, retrying transient store failures.

    Non-transient errors and the last transient error propagate unchanged.
    """
    policy = policy or default_retry_policy()
    should_retry = retryable or _is_transient
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt == attempts or not should_retry(exc):
                raise
            wait_s = policy.backoff_for(attempt)
            logger.warning(
                "store_call_retry operation=%s attempt=%s/%s wait_s=%.3f error=%s",
                operation,
                attempt,
                attempts,
                wait_s,
                type(exc).__name__,
            )
            await asyncio.sleep(wait_s)
