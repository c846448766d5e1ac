"""
Fallback routing and manual retries on top of the execution engine.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, List, Optional

from ...config import Settings, settings as default_settings
from ..errors import DEFAULT_RETRYABLE_ERRORS, ExecutionFailure, UnrecoverableError, ValidationError, is_retryable_error
from ..execution.engine import ExecutionEngine, generate_execution_id
from ..execution.models import ExecutionConfig, ExecutionRequest, ExecutionResult, ExecutionStatus
from ..quotes.manager import QuoteManager
from ..quotes.models import ComparisonOptions, QuoteRequest, QuoteResponse

logger = logging.getLogger(__name__)


@dataclass
class FallbackRoute:
    quote: QuoteResponse
    priority: int
    reason: str


@dataclass
class RetryConfig:
    max_retries: int = 3
    retry_delay: float = 5.0                    # seconds
    backoff_multiplier: float = 2.0
    max_retry_delay: float = 30.0               # seconds
    retryable_errors: List[str] = field(default_factory=lambda: list(DEFAULT_RETRYABLE_ERRORS))

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RetryConfig":
        config = config or default_settings
        return cls(
            max_retries=config.execution_max_retries,
            retry_delay=config.execution_retry_delay_seconds,
            backoff_multiplier=config.retry_backoff_multiplier,
            max_retry_delay=config.retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (0-based), capped at ``max_retry_delay``."""
        return min(self.retry_delay * self.backoff_multiplier ** attempt, self.max_retry_delay)


class RouteExecutor:
    """Runs a route, falling back to alternative tools when it fails."""

    def __init__(
        self,
        engine: ExecutionEngine,
        quote_manager: QuoteManager,
        config: Optional[Settings] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._engine = engine
        self._quote_manager = quote_manager
        self._config = config or default_settings
        self._sleep = sleep

    async def execute_route(
        self,
        request: ExecutionRequest,
        config: Optional[ExecutionConfig] = None,
    ) -> ExecutionResult:
        """Execute a single route. Failures come back as a FAILED result instead of raising."""
        execution_id = generate_execution_id()
        try:
            return await self._engine.execute_transaction(request, config, execution_id=execution_id)
        except ExecutionFailure as exc:
            if exc.result is not None:
                return exc.result
            return self._failed_result(execution_id, request, exc)
        except UnrecoverableError as exc:
            return self._failed_result(execution_id, request, exc)

    async def execute_route_with_fallback(
        self,
        request: ExecutionRequest,
        fallback_routes: Optional[List[FallbackRoute]] = None,
        config: Optional[ExecutionConfig] = None,
    ) -> ExecutionResult:
        """
        Try the primary route, then each fallback in descending priority.

        Fallbacks are generated on demand when none are supplied. Returns the
        first success, or the last failure when every route failed.
        """
        result = await self.execute_route(request, config)
        if result.success or result.status == ExecutionStatus.CANCELLED:
            return result
        if config is not None and not config.enable_fallback:
            return result

        if fallback_routes is None:
            fallback_routes = await self.generate_fallback_routes(request, self._config.fallback_max_routes)
        if not fallback_routes:
            return result

        logger.info("Primary route via %s failed, trying %d fallback route(s)", request.quote.tool, len(fallback_routes))

        for fallback in sorted(fallback_routes, key=lambda f: f.priority, reverse=True):
            logger.info("Trying fallback route %s (%s)", fallback.quote.tool, fallback.reason)
            result = await self.execute_route(replace(request, quote=fallback.quote), config)
            if result.success:
                logger.info("Fallback route via %s succeeded", fallback.quote.tool)
                return result
            logger.warning("Fallback route via %s failed: %s", fallback.quote.tool, result.error)

        return result

    async def generate_fallback_routes(
        self,
        request: ExecutionRequest,
        max_fallbacks: int = 3,
    ) -> List[FallbackRoute]:
        """Alternative quotes from other tools, highest priority first."""
        quote = request.quote
        action = quote.action
        if action is None or max_fallbacks <= 0:
            return []

        try:
            comparison = await self._quote_manager.get_quote_comparison(
                QuoteRequest(
                    from_chain=action.from_chain_id,
                    to_chain=action.to_chain_id,
                    from_token=action.from_token.address,
                    to_token=action.to_token.address,
                    from_amount=quote.estimate.from_amount if quote.estimate else action.from_amount,
                    from_address=request.from_address,
                    to_address=request.to_address,
                ),
                ComparisonOptions(include_alternative_routes=True, max_quotes=max_fallbacks + 1),
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to generate fallback routes: %s", exc)
            return []

        alternatives = [q for q in comparison.quotes if q.tool != quote.tool][:max_fallbacks]
        fallbacks = [
            FallbackRoute(
                quote=alt,
                priority=max_fallbacks - index,
                reason=f"Alternative {alt.tool or 'unknown'} route",
            )
            for index, alt in enumerate(alternatives)
        ]
        return sorted(fallbacks, key=lambda f: f.priority, reverse=True)

    async def retry_execution(
        self,
        execution_id: str,
        config: Optional[RetryConfig] = None,
    ) -> ExecutionResult:
        """
        Re-run a failed execution with exponential backoff.

        Only failures whose message matches the retryable allow-list are
        retried; anything else raises ValidationError.
        """
        config = config or RetryConfig.from_settings(self._config)
        previous = await self._engine.get_execution_history(execution_id)
        if previous is None:
            raise ValidationError("Execution not found")
        if previous.status != ExecutionStatus.FAILED:
            raise ValidationError("Can only retry failed executions")
        if previous.request is None:
            raise ValidationError("Original request not found in execution history")
        if previous.error and not is_retryable_error(previous.error, config.retryable_errors):
            raise ValidationError("Execution error is not retryable")

        # The engine gets a single attempt; the backoff loop here owns retries.
        single_attempt = ExecutionConfig.from_settings(self._config)
        single_attempt.max_retries = 0

        result = previous
        for attempt in range(config.max_retries):
            delay = config.delay_for(attempt)
            logger.info(
                "Retrying execution %s (attempt %d/%d) in %.1fs",
                execution_id,
                attempt + 1,
                config.max_retries,
                delay,
            )
            await self._sleep(delay)
            result = await self.execute_route(previous.request, single_attempt)
            if result.success:
                return result
            if not is_retryable_error(result.error or "", config.retryable_errors):
                logger.warning("Retry of %s stopped on non-retryable error: %s", execution_id, result.error)
                return result
        return result

    @staticmethod
    def _failed_result(
        execution_id: str,
        request: ExecutionRequest,
        exc: Exception,
    ) -> ExecutionResult:
        return ExecutionResult(
            execution_id=execution_id,
            success=False,
            status=ExecutionStatus.FAILED,
            error=str(exc),
            request=request,
        )
