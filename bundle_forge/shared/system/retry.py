"""
Retry Policy
============
Bounded fixed/linear retry for ledger and relay calls.

Failures in this domain are dominated by short-lived node lag (stale slot,
expired blockhash, table not yet visible), not load-shedding, so there is no
jitter or exponential multiplier. Each call site supplies only its
recoverability predicate.

Usage:
    policy = RetryPolicy(max_attempts=3, base_delay=1.0,
                         is_recoverable=lambda e: isinstance(e, StaleSlotError))
    table = await policy.run(create_with_fresh_slot)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from bundle_forge.config.settings import Settings
from bundle_forge.shared.execution.errors import is_recoverable
from bundle_forge.shared.system.logging import Logger


class BackoffMode(Enum):
    FIXED = "fixed"
    LINEAR = "linear"


@dataclass
class RetryPolicy:
    """
    Retries an async operation up to max_attempts times in total.

    A non-recoverable error propagates immediately. A recoverable error on the
    final attempt propagates as-is.
    """

    max_attempts: int = Settings.RETRY_MAX_ATTEMPTS
    base_delay: float = Settings.RETRY_BASE_DELAY_S
    mode: BackoffMode = BackoffMode.FIXED
    is_recoverable: Callable[[BaseException], bool] = is_recoverable
    on_retry: Optional[Callable[[int, BaseException], Awaitable[None]]] = None
    label: str = "operation"
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        if self.mode == BackoffMode.LINEAR:
            return self.base_delay * attempt
        return self.base_delay

    async def run(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Exception as e:
                if not self.is_recoverable(e):
                    raise
                if attempt == self.max_attempts:
                    Logger.warning(
                        f"[RETRY] {self.label} failed after {attempt} attempts: {e}"
                    )
                    raise

                delay = self.delay_for(attempt)
                Logger.info(
                    f"[RETRY] {self.label} attempt {attempt}/{self.max_attempts} "
                    f"failed ({type(e).__name__}), retrying in {delay:.1f}s"
                )
                if self.on_retry is not None:
                    await self.on_retry(attempt, e)
                if delay > 0:
                    await self.sleep(delay)

        raise RuntimeError("unreachable")  # pragma: no cover


async def retry(
    operation: Callable[[], Awaitable[Any]],
    max_attempts: int = Settings.RETRY_MAX_ATTEMPTS,
    base_delay: float = Settings.RETRY_BASE_DELAY_S,
    is_recoverable: Callable[[BaseException], bool] = is_recoverable,
    **kwargs,
) -> Any:
    """Functional form of RetryPolicy.run()."""
    policy = RetryPolicy(
        max_attempts=max_attempts,
        base_delay=base_delay,
        is_recoverable=is_recoverable,
        **kwargs,
    )
    return await policy.run(operation)
