# reconciliation/retry_policy.py
# ============================================================================
# RIDEPAY RELAY — RETRY POLICY
# ============================================================================
# Bounded linear retry for the bill mapping lookup (store latency after a
# same-request write). No jitter, no circuit breaker.
# ============================================================================

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

logger = structlog.get_logger().bind(component="retry_policy")

T = TypeVar("T")


class RetryPolicy:
    """
    Call ``operation`` until ``should_retry(result)`` is False or attempts run out.

    Backoff after attempt n is ``backoff(n)``; the default is base * n seconds.
    ``sleep`` is injectable so tests can run on a fake clock.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        backoff: Optional[Callable[[int], float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff or (lambda attempt: base_delay * attempt)
        self.sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        should_retry: Callable[[T], bool],
        label: str = "operation",
    ) -> T:
        result = await operation()
        for attempt in range(1, self.max_attempts):
            if not should_retry(result):
                return result
            delay = self.backoff(attempt)
            logger.info("retry_scheduled", label=label, attempt=attempt,
                        max_attempts=self.max_attempts, delay_seconds=delay)
            await self.sleep(delay)
            result = await operation()
        return result
