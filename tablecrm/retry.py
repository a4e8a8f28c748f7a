import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence, Type, TypeVar

log = logging.getLogger("retry")

T = TypeVar("T")


class RetryableError(Exception):
    pass


@dataclass(frozen=True)
class BackoffPolicy:
    # 1 attempt = no retry; generative calls fail fast to their fallback value
    max_attempts: int = 1
    base_delay_ms: int = 250
    max_delay_ms: int = 4000

    def delay_s(self, retry_no: int) -> float:
        """Jittered exponential delay before retry ``retry_no`` (1-based)."""
        ms = min(self.max_delay_ms, self.base_delay_ms * (2 ** (retry_no - 1)))
        return ms * (0.8 + 0.4 * random.random()) / 1000.0


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    retry_on: Sequence[Type[BaseException]] = (RetryableError,),
    policy: BackoffPolicy = BackoffPolicy(),
    label: str = "call",
) -> T:
    """Await ``fn`` until it succeeds or the policy runs out; re-raise the last error.

    Only exceptions listed in ``retry_on`` are retried; anything else propagates
    on the first failure.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except tuple(retry_on) as e:
            if attempt >= attempts:
                raise
            delay = policy.delay_s(attempt)
            log.info("%s failed (attempt %s/%s), retrying in %.2fs: %s", label, attempt, attempts, delay, e)
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
