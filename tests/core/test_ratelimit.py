"""
Tests for the aggregator rate limiter

Token bucket accounting, minimum spacing and the 429 retry wrapper.
"""

import pytest
from unittest.mock import AsyncMock

from fakes import FakeClock
from zestswap.config import Settings
from zestswap.core.errors import UpstreamRateLimitedError, UpstreamTransientError
from zestswap.core.ratelimit import RateLimiter, execute_with_rate_limit


@pytest.fixture
def clock():
    return FakeClock(start=0.0)


# =============================================================================
# Token Bucket
# =============================================================================

class TestTokenBucket:
    """Tests for token accounting."""

    def test_tokens_never_go_negative(self, clock):
        limiter = RateLimiter(max_tokens=3, refill_rate=1.0, min_interval=0, clock=clock)

        results = [limiter.consume_token() for _ in range(5)]

        assert results == [True, True, True, False, False]
        assert limiter.tokens == 0

    def test_refill_is_capped_at_max(self, clock):
        limiter = RateLimiter(max_tokens=3, refill_rate=1.0, min_interval=0, clock=clock)
        for _ in range(3):
            limiter.consume_token()

        clock.advance(2.5)
        assert limiter.get_status()["tokens"] == 2

        clock.advance(100)
        assert limiter.get_status()["tokens"] == 3

    def test_min_interval_spaces_requests(self, clock):
        limiter = RateLimiter(max_tokens=10, refill_rate=1.0, min_interval=0.2, clock=clock)

        assert limiter.consume_token()
        assert not limiter.can_make_request()
        assert limiter.time_until_next_request() == pytest.approx(0.2)

        clock.advance(0.2)
        assert limiter.consume_token()

    def test_time_until_next_token_when_empty(self, clock):
        limiter = RateLimiter(max_tokens=1, refill_rate=2.0, min_interval=0, clock=clock)
        limiter.consume_token()

        assert limiter.time_until_next_request() == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_acquire_waits_for_refill(self, clock):
        limiter = RateLimiter(max_tokens=1, refill_rate=1.0, min_interval=0, clock=clock, sleep=clock.sleep)

        await limiter.acquire()
        await limiter.acquire()

        assert clock.sleeps == [pytest.approx(1.0)]
        assert limiter.tokens == 0

    def test_reset(self, clock):
        limiter = RateLimiter(max_tokens=2, refill_rate=1.0, min_interval=0, clock=clock)
        limiter.consume_token()
        limiter.consume_token()

        limiter.reset()

        assert limiter.tokens == 2
        assert limiter.can_make_request()

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            RateLimiter(max_tokens=0)
        with pytest.raises(ValueError):
            RateLimiter(refill_rate=0)

    def test_from_settings(self):
        settings = Settings(_env_file=None, rate_limit_max_tokens=7, rate_limit_min_interval_seconds=0)
        limiter = RateLimiter.from_settings(settings)

        assert limiter.max_tokens == 7
        assert limiter.min_interval == 0
        assert limiter.max_retries == settings.max_retries


# =============================================================================
# Retry Wrapper
# =============================================================================

class TestExecute:
    """Tests for the retrying call wrapper."""

    @pytest.mark.asyncio
    async def test_success_passes_value_through(self):
        limiter = RateLimiter(min_interval=0)
        call = AsyncMock(return_value="ok")

        assert await limiter.execute(call) == "ok"
        call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_single_rate_limit_then_success(self):
        sleep = AsyncMock()
        limiter = RateLimiter(min_interval=0, default_retry_after=60, sleep=sleep)
        call = AsyncMock(side_effect=[RuntimeError("429 rate limit"), "ok"])

        assert await limiter.execute(call) == "ok"

        assert call.await_count == 2
        sleep.assert_awaited_once_with(60)

    @pytest.mark.asyncio
    async def test_retry_after_from_error_is_honoured(self):
        sleep = AsyncMock()
        limiter = RateLimiter(min_interval=0, sleep=sleep)
        call = AsyncMock(side_effect=[UpstreamRateLimitedError(retry_after=12), "ok"])

        await limiter.execute(call)

        sleep.assert_awaited_once_with(12)

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion_raises_friendly_error(self):
        sleep = AsyncMock()
        limiter = RateLimiter(min_interval=0, max_retries=2, default_retry_after=3600, sleep=sleep)
        call = AsyncMock(side_effect=RuntimeError("Rate limit exceeded"))

        with pytest.raises(UpstreamRateLimitedError) as exc_info:
            await limiter.execute(call)

        assert "Please try again in 60 minutes" in str(exc_info.value)
        assert call.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_transient_errors_use_retry_delay(self):
        sleep = AsyncMock()
        limiter = RateLimiter(min_interval=0, retry_delay=2.0, sleep=sleep)
        call = AsyncMock(side_effect=[UpstreamTransientError("network down"), "ok"])

        assert await limiter.execute(call) == "ok"
        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_transient_error_raised_after_retries(self):
        limiter = RateLimiter(min_interval=0, sleep=AsyncMock())
        call = AsyncMock(side_effect=UpstreamTransientError("timeout", timeout=True))

        with pytest.raises(UpstreamTransientError):
            await limiter.execute(call, retries=1)
        assert call.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        sleep = AsyncMock()
        limiter = RateLimiter(min_interval=0, sleep=sleep)
        call = AsyncMock(side_effect=ValueError("bad payload"))

        with pytest.raises(ValueError):
            await limiter.execute(call)

        call.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_convenience_wrapper_uses_given_limiter(self):
        limiter = RateLimiter(min_interval=0)
        call = AsyncMock(return_value=5)

        assert await execute_with_rate_limit(call, limiter=limiter) == 5
        assert limiter.tokens == limiter.max_tokens - 1
