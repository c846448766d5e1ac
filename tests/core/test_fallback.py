"""
Tests for fallback routing and manual retries.
"""

from unittest.mock import AsyncMock

import pytest

from fakes import ADDRESS
from zestswap.config import Settings
from zestswap.core.crosschain.fallback import FallbackRoute, RetryConfig
from zestswap.core.errors import UpstreamError, ValidationError
from zestswap.core.execution.models import ExecutionConfig, ExecutionRequest, ExecutionStatus


def _request(quote) -> ExecutionRequest:
    return ExecutionRequest(quote=quote, from_address=ADDRESS)


def _tools(stack):
    return [route[0].tool for route in stack.aggregator.execute_calls]


# =============================================================================
# Fallback Generation
# =============================================================================

class TestGenerateFallbackRoutes:

    @pytest.mark.asyncio
    async def test_alternatives_exclude_the_failed_tool(self, stack, make_quote):
        fallbacks = await stack.route_executor.generate_fallback_routes(_request(make_quote()))

        assert [(f.quote.tool, f.priority) for f in fallbacks] == [("hop", 3), ("across", 2)]
        assert fallbacks[0].reason == "Alternative hop route"

    @pytest.mark.asyncio
    async def test_respects_max_fallbacks(self, stack, make_quote):
        fallbacks = await stack.route_executor.generate_fallback_routes(_request(make_quote()), max_fallbacks=1)

        assert [(f.quote.tool, f.priority) for f in fallbacks] == [("hop", 1)]

    @pytest.mark.asyncio
    async def test_comparison_failure_yields_no_fallbacks(self, stack, make_quote, monkeypatch):
        monkeypatch.setattr(
            stack.quote_manager,
            "get_quote_comparison",
            AsyncMock(side_effect=RuntimeError("aggregator down")),
        )

        assert await stack.route_executor.generate_fallback_routes(_request(make_quote())) == []

    @pytest.mark.asyncio
    async def test_zero_fallbacks(self, stack, make_quote):
        assert await stack.route_executor.generate_fallback_routes(_request(make_quote()), max_fallbacks=0) == []


# =============================================================================
# Fallback Execution
# =============================================================================

class TestExecuteRouteWithFallback:

    @pytest.mark.asyncio
    async def test_execute_route_reports_failures_as_results(self, stack, make_quote):
        stack.aggregator.execute_effects = [UpstreamError("no liquidity", status_code=400)]

        result = await stack.route_executor.execute_route(_request(make_quote()))

        assert not result.success
        assert result.status == ExecutionStatus.FAILED
        assert result.error == "no liquidity"

    @pytest.mark.asyncio
    async def test_execute_route_reports_rejections_as_results(self, stack, make_quote):
        stale = make_quote(created_at=stack.clock() - 300)

        result = await stack.route_executor.execute_route(_request(stale))

        assert result.status == ExecutionStatus.FAILED
        assert "Route is no longer valid" in result.error
        assert result.request.quote is stale

    @pytest.mark.asyncio
    async def test_primary_success_skips_fallbacks(self, stack, make_quote):
        result = await stack.route_executor.execute_route_with_fallback(_request(make_quote()))

        assert result.success
        assert _tools(stack) == ["stargate"]
        assert stack.aggregator.quote_requests == []

    @pytest.mark.asyncio
    async def test_explicit_fallbacks_by_priority(self, stack, make_quote):
        stack.aggregator.execute_effects = [
            UpstreamError("primary failed", status_code=400),
            UpstreamError("hop failed", status_code=400),
        ]
        fallbacks = [
            FallbackRoute(quote=make_quote(tool="across"), priority=1, reason="cheaper"),
            FallbackRoute(quote=make_quote(tool="hop"), priority=5, reason="faster"),
        ]

        result = await stack.route_executor.execute_route_with_fallback(_request(make_quote()), fallbacks)

        assert result.success
        assert _tools(stack) == ["stargate", "hop", "across"]

    @pytest.mark.asyncio
    async def test_generated_fallbacks(self, stack, make_quote):
        stack.aggregator.execute_effects = [UpstreamError("primary failed", status_code=400)]

        result = await stack.route_executor.execute_route_with_fallback(_request(make_quote()))

        assert result.success
        assert _tools(stack) == ["stargate", "hop"]

    @pytest.mark.asyncio
    async def test_all_routes_fail_returns_last_failure(self, stack, make_quote):
        stack.aggregator.execute_effects = [
            UpstreamError("primary failed", status_code=400),
            UpstreamError("hop failed", status_code=400),
            UpstreamError("across failed", status_code=400),
        ]

        result = await stack.route_executor.execute_route_with_fallback(_request(make_quote()))

        assert not result.success
        assert result.error == "across failed"
        assert _tools(stack) == ["stargate", "hop", "across"]

    @pytest.mark.asyncio
    async def test_fallback_disabled(self, stack, make_quote):
        stack.aggregator.execute_effects = [UpstreamError("primary failed", status_code=400)]

        result = await stack.route_executor.execute_route_with_fallback(
            _request(make_quote()), config=ExecutionConfig(enable_fallback=False)
        )

        assert result.error == "primary failed"
        assert _tools(stack) == ["stargate"]


# =============================================================================
# Manual Retry
# =============================================================================

class TestRetryExecution:

    async def _failed(self, stack, quote, message):
        stack.aggregator.execute_effects = [RuntimeError(message)]
        result = await stack.route_executor.execute_route(_request(quote), ExecutionConfig(max_retries=0))
        assert result.status == ExecutionStatus.FAILED
        return result.execution_id

    @pytest.mark.asyncio
    async def test_retry_backs_off_until_success(self, stack, make_quote):
        execution_id = await self._failed(stack, make_quote(), "network timeout")
        stack.aggregator.execute_effects = [RuntimeError("network timeout")]
        config = RetryConfig(max_retries=3, retry_delay=1, backoff_multiplier=2, max_retry_delay=30)

        result = await stack.route_executor.retry_execution(execution_id, config)

        assert result.success
        assert stack.clock.sleeps == [1, 2]
        assert len(stack.aggregator.execute_calls) == 3

    @pytest.mark.asyncio
    async def test_retry_stops_on_non_retryable_error(self, stack, make_quote):
        execution_id = await self._failed(stack, make_quote(), "network timeout")
        stack.aggregator.execute_effects = [RuntimeError("user rejected the request")]
        config = RetryConfig(max_retries=3, retry_delay=1)

        result = await stack.route_executor.retry_execution(execution_id, config)

        assert not result.success
        assert result.error == "user rejected the request"
        assert stack.clock.sleeps == [1]

    @pytest.mark.asyncio
    async def test_retry_exhausted(self, stack, make_quote):
        execution_id = await self._failed(stack, make_quote(), "gas price spiked")
        stack.aggregator.execute_effects = [RuntimeError("gas price spiked")] * 2
        config = RetryConfig(max_retries=2, retry_delay=1)

        result = await stack.route_executor.retry_execution(execution_id, config)

        assert not result.success
        assert stack.clock.sleeps == [1, 2]

    @pytest.mark.asyncio
    async def test_non_retryable_previous_error(self, stack, make_quote):
        execution_id = await self._failed(stack, make_quote(), "execution reverted")

        with pytest.raises(ValidationError, match="Execution error is not retryable"):
            await stack.route_executor.retry_execution(execution_id)

    @pytest.mark.asyncio
    async def test_only_failed_executions_are_retried(self, stack, make_quote):
        result = await stack.route_executor.execute_route(_request(make_quote()))

        with pytest.raises(ValidationError, match="Can only retry failed executions"):
            await stack.route_executor.retry_execution(result.execution_id)

    @pytest.mark.asyncio
    async def test_unknown_execution(self, stack):
        with pytest.raises(ValidationError, match="Execution not found"):
            await stack.route_executor.retry_execution("exec_missing")


class TestRetryConfig:

    def test_delay_is_exponential_and_capped(self):
        config = RetryConfig(retry_delay=5, backoff_multiplier=2, max_retry_delay=30)

        assert [config.delay_for(attempt) for attempt in range(4)] == [5, 10, 20, 30]

    def test_from_settings(self):
        config = RetryConfig.from_settings(Settings(_env_file=None, execution_max_retries=1, retry_max_delay_seconds=9))

        assert config.max_retries == 1
        assert config.retry_delay == 5.0
        assert config.max_retry_delay == 9
        assert config.retryable_errors == ["network", "timeout", "gas", "nonce"]
