"""Timeout and retry wrapper for backing store calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from chatguard.moderation.domain.errors import StoreTimeoutError, StoreUnavailableError
from chatguard.obs import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    timeout_seconds: float = 2.0
    retries: int = 2
    backoff_seconds: float = 0.05

    @property
    def attempts(self) -> int:
        return max(1, self.retries + 1)


async def call_store(
    store: str,
    op: str,
    factory: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
) -> T:
    """Await ``factory()`` under a deadline, retrying transient failures.

    Raises the last :class:`StoreUnavailableError` once attempts are exhausted.
    """

    last_error: StoreUnavailableError = StoreUnavailableError()
    for attempt in range(policy.attempts):
        try:
            return await asyncio.wait_for(factory(), timeout=policy.timeout_seconds)
        except asyncio.TimeoutError:
            last_error = StoreTimeoutError()
        except StoreUnavailableError as exc:
            last_error = exc
        if attempt < policy.attempts - 1:
            delay = policy.backoff_seconds * (2**attempt)
            logger.debug(
                "store call retry",
                extra={"store": store, "op": op, "attempt": attempt + 1, "delay_s": delay, "error": last_error.detail},
            )
            await asyncio.sleep(delay)
    metrics.STORE_FAILURES.labels(store=store, op=op).inc()
    logger.warning(
        "store call failed after retries",
        extra={"store": store, "op": op, "attempts": policy.attempts, "error": last_error.detail},
    )
    raise last_error
