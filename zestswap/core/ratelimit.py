"""
Token-bucket rate limiting for aggregator calls.

Every upstream call first takes a token (proactive limiting); 429 and
transient failures are then absorbed by a bounded retry loop (reactive).
"""

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ..config import Settings, settings as default_settings
from .errors import UpstreamRateLimitedError, is_rate_limit_error, is_transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """Token bucket with a minimum spacing between consecutive requests."""

    def __init__(
        self,
        max_tokens: int = 50,
        refill_rate: float = 5.0,
        min_interval: float = 0.2,
        *,
        max_retries: int = 4,
        retry_delay: float = 2.0,
        default_retry_after: float = 3600,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")

        self.max_tokens = max_tokens
        self.refill_rate = refill_rate
        self.min_interval = min_interval
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.default_retry_after = default_retry_after
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

        self.tokens = max_tokens
        self.last_refill = clock()
        self.last_request_time: Optional[float] = None

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None, **kwargs: Any) -> "RateLimiter":
        config = config or default_settings
        return cls(
            max_tokens=config.rate_limit_max_tokens,
            refill_rate=config.rate_limit_refill_rate,
            min_interval=config.rate_limit_min_interval_seconds,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay_seconds,
            default_retry_after=config.rate_limit_default_retry_after,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Bucket state
    # ------------------------------------------------------------------

    def _refill(self) -> None:
        now = self._clock()
        tokens_to_add = math.floor((now - self.last_refill) * self.refill_rate)
        if tokens_to_add > 0:
            self.tokens = min(self.max_tokens, self.tokens + tokens_to_add)
            self.last_refill = now

    def _interval_remaining(self) -> float:
        if self.last_request_time is None:
            return 0.0
        return max(0.0, self.min_interval - (self._clock() - self.last_request_time))

    def can_make_request(self) -> bool:
        self._refill()
        return self.tokens > 0 and self._interval_remaining() <= 0

    def consume_token(self) -> bool:
        """Take one token. Returns False (and changes nothing) when none is available."""
        if not self.can_make_request():
            return False
        self.tokens -= 1
        self.last_request_time = self._clock()
        return True

    def time_until_next_request(self) -> float:
        self._refill()
        wait = self._interval_remaining()
        if self.tokens <= 0:
            until_token = (1.0 / self.refill_rate) - (self._clock() - self.last_refill)
            wait = max(wait, until_token)
        return max(0.0, wait)

    async def wait_for_availability(self) -> None:
        while not self.can_make_request():
            await self._sleep(self.time_until_next_request())

    async def acquire(self) -> None:
        """Wait until a token is available, then consume it.

        Waiters are serialized on the lock so tokens are handed out in
        arrival order.
        """
        async with self._lock:
            while not self.consume_token():
                await self._sleep(self.time_until_next_request())

    def get_status(self) -> Dict[str, Any]:
        self._refill()
        return {
            "tokens": self.tokens,
            "max_tokens": self.max_tokens,
            "refill_rate": self.refill_rate,
            "min_interval": self.min_interval,
            "can_make_request": self.tokens > 0 and self._interval_remaining() <= 0,
            "time_until_next_request": self.time_until_next_request(),
        }

    def reset(self) -> None:
        self.tokens = self.max_tokens
        self.last_refill = self._clock()
        self.last_request_time = None

    # ------------------------------------------------------------------
    # Retry wrapper
    # ------------------------------------------------------------------

    async def execute(
        self,
        call: Callable[[], Awaitable[T]],
        retries: Optional[int] = None,
    ) -> T:
        """Run ``call`` under the bucket, retrying 429s and transient failures.

        Rate-limited attempts wait for the server's retry-after; network and
        timeout failures wait ``retry_delay``. Anything else is raised at once.
        """
        retries = self.max_retries if retries is None else retries

        for attempt in range(retries + 1):
            await self.acquire()
            try:
                return await call()
            except Exception as exc:
                if is_rate_limit_error(exc):
                    retry_after = getattr(exc, "retry_after", None) or self.default_retry_after
                    if attempt >= retries:
                        minutes = math.ceil(retry_after / 60)
                        raise UpstreamRateLimitedError(
                            f"Aggregator rate limit exceeded. Please try again in {minutes} minutes.",
                            retry_after=retry_after,
                        ) from exc
                    logger.warning(
                        "Rate limited (attempt %d/%d), retrying in %.1fs",
                        attempt + 1,
                        retries + 1,
                        retry_after,
                    )
                    await self._sleep(retry_after)
                    continue

                if is_transient_error(exc):
                    if attempt >= retries:
                        raise
                    logger.warning(
                        "Transient upstream error (attempt %d/%d): %s",
                        attempt + 1,
                        retries + 1,
                        exc,
                    )
                    await self._sleep(self.retry_delay)
                    continue

                raise

        # retries < 0 only
        raise ValueError("retries must be non-negative")


async def execute_with_rate_limit(
    call: Callable[[], Awaitable[T]],
    retries: Optional[int] = None,
    limiter: Optional[RateLimiter] = None,
) -> T:
    """Convenience wrapper; without a shared ``limiter`` a fresh bucket is used."""
    limiter = limiter or RateLimiter.from_settings()
    return await limiter.execute(call, retries=retries)
