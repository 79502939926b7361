import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from gemini_image_mcp.errors import BridgeError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry budget with exponential backoff and random jitter.

    Args:
        max_attempts: Total attempts, including the first one
        base_delay_s: Delay before the second attempt, doubled for each one after
        max_delay_s: Upper bound for the exponential part of the delay
        jitter_s: Maximum random delay added on top
    """

    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0
    jitter_s: float = 0.25

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        backoff = min(self.base_delay_s * (2 ** (attempt - 1)), self.max_delay_s)
        return backoff + random.uniform(0, self.jitter_s)


async def call_with_retry(
    policy: RetryPolicy,
    func: Callable[[], Awaitable[T]],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``func`` until it succeeds, fails terminally or the budget runs out.

    Only errors flagged ``retryable`` are attempted again. When the budget is
    exhausted the last error is re-raised with the attempt count attached.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except BridgeError as exc:
            if not exc.retryable:
                raise
            if attempt >= attempts:
                exc.attempts = attempt
                exc.message = f"{exc.message} (after {attempt} attempts)"
                logger.error(
                    "upstream call failed after %d attempts: %s",
                    attempt,
                    exc.kind,
                    extra={"attempt": attempt},
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "upstream call failed (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                attempts,
                delay,
                exc.kind,
                extra={"attempt": attempt},
            )
            await sleep(delay)
    raise RuntimeError("retry loop exited unexpectedly")
