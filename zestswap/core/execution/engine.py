"""
Execution engine for a single (possibly multi-step) route on its source chain.

Handles the full lifecycle of an execution:
- Pre-execution validation and transaction building
- Route execution through the aggregator with typed hooks
- Progress monitoring and cooperative cancellation
- Bounded retries with a fixed delay
- Bounded in-memory history plus best-effort external history writes
"""

import asyncio
import logging
import secrets
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ...config import Settings, settings as default_settings
from ...logging_config import execution_context
from ...providers.base import Aggregator, HistoryStore, RouteHooks, Signer, SignerProvider, StepProgress
from ...storage import ExecutionStore, InMemoryExecutionStore
from ..errors import (
    ConfigurationError,
    ErrorCategory,
    ExecutionFailure,
    UnrecoverableError,
    ValidationError,
    is_retryable_error,
)
from ..quotes.models import QuoteResponse
from ..ratelimit import RateLimiter
from .models import (
    ExecutionConfig,
    ExecutionMonitor,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    ExecutionStep,
    PreparedTransaction,
    TransactionBuildRequest,
)
from .steps import route_for_quote, step_type
from .tx_builder import TransactionBuilder

logger = logging.getLogger(__name__)

SECONDS_PER_STEP = 60


def generate_execution_id(prefix: str = "exec") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def map_execution_status(raw: Optional[str]) -> ExecutionStatus:
    if raw == "NOT_STARTED":
        return ExecutionStatus.PENDING
    try:
        return ExecutionStatus(raw)
    except ValueError:
        return ExecutionStatus.EXECUTING


def total_steps(quote: QuoteResponse) -> int:
    return len(quote.included_steps) or 1


def estimate_execution_time(quote: QuoteResponse) -> float:
    multiplier = 2 if quote.is_cross_chain else 1
    return total_steps(quote) * SECONDS_PER_STEP * multiplier


class ExecutionEngine:
    """
    Executes routes on their source chain.

    Responsibilities:
    - Validate and build the source transaction
    - Obtain a signer and run the route through the aggregator
    - Auto-accept small slippage updates, pause on large ones
    - Keep the execution monitor and history current
    """

    def __init__(
        self,
        aggregator: Aggregator,
        tx_builder: TransactionBuilder,
        signer_provider: SignerProvider,
        rate_limiter: RateLimiter,
        store: Optional[ExecutionStore[ExecutionMonitor, ExecutionResult]] = None,
        history: Optional[HistoryStore] = None,
        config: Optional[Settings] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._aggregator = aggregator
        self._tx_builder = tx_builder
        self._signer_provider = signer_provider
        self._rate_limiter = rate_limiter
        self._config = config or default_settings
        self._store = store or InMemoryExecutionStore(max_history=self._config.history_max_size, clock=clock)
        self._history = history
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute_transaction(
        self,
        request: ExecutionRequest,
        config: Optional[ExecutionConfig] = None,
        *,
        execution_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Execute a quote's route.

        Returns the DONE (or CANCELLED) result. Raises ValidationError or
        ConfigurationError before anything is broadcast, and ExecutionFailure
        (carrying the FAILED result) once retries are exhausted.
        """
        execution_id = execution_id or generate_execution_id()
        config = config or ExecutionConfig.from_settings(self._config)
        started = self._clock()

        quote = request.quote
        monitor = ExecutionMonitor(
            execution_id=execution_id,
            total_steps=total_steps(quote),
            estimated_time_remaining=estimate_execution_time(quote),
        )
        await self._store.put_active(execution_id, monitor)

        with execution_context(execution_id):
            logger.info(
                "Starting execution: chain %s -> %s via %s",
                quote.action.from_chain_id if quote.action else "?",
                quote.action.to_chain_id if quote.action else "?",
                quote.tool,
            )
            await self._record_start(execution_id, request)

            try:
                tx = await self._tx_builder.build_transaction(self._build_request(request))
                if not request.skip_validation:
                    await self._validate(tx, request)
            except UnrecoverableError as exc:
                monitor.set_status(ExecutionStatus.FAILED)
                result = ExecutionResult(
                    execution_id=execution_id,
                    success=False,
                    status=ExecutionStatus.FAILED,
                    error=str(exc),
                    request=request,
                )
                await self._finish(monitor, result, started)
                logger.error("Execution rejected before broadcast: %s", exc)
                raise

            result = await self._execute_with_monitoring(monitor, request, config)
            await self._finish(monitor, result, started)

            logger.info(
                "Execution finished: status=%s tx=%s time=%.1fs",
                result.status.value,
                result.transaction_hash,
                result.execution_time,
            )

        if result.status == ExecutionStatus.FAILED:
            cause = result.metadata.pop("exception", None)
            if isinstance(cause, ExecutionFailure):
                cause.result = result
                raise cause
            if isinstance(cause, (ValidationError, ConfigurationError)):
                raise cause
            raise ExecutionFailure(result.error or "Execution failed", result=result) from cause
        return result

    async def get_execution_status(self, execution_id: str) -> Optional[ExecutionMonitor]:
        return await self._store.get_active(execution_id)

    async def get_execution_history(self, execution_id: str) -> Optional[ExecutionResult]:
        return await self._store.get_history(execution_id)

    async def get_active_executions(self) -> List[ExecutionMonitor]:
        return await self._store.list_active()

    async def cancel_execution(self, execution_id: str) -> bool:
        """Mark an execution CANCELLED. In-flight calls finish but their results are discarded."""
        monitor = await self._store.get_active(execution_id)
        if monitor is None or not monitor.set_status(ExecutionStatus.CANCELLED):
            return False
        logger.info("Execution %s cancelled", execution_id)
        await self._history_update_status(execution_id, ExecutionStatus.CANCELLED.value)
        return True

    async def retry_execution(
        self,
        execution_id: str,
        config: Optional[ExecutionConfig] = None,
    ) -> ExecutionResult:
        previous = await self._store.get_history(execution_id)
        if previous is None or previous.success:
            raise ValidationError("Cannot retry successful or non-existent execution")
        if previous.request is None:
            raise ValidationError("Original request not found in execution history")

        logger.info("Retrying execution %s", execution_id)
        return await self.execute_transaction(previous.request, config)

    async def cleanup_history(self, max_age: Optional[float] = None) -> int:
        removed = await self._store.prune_history(
            self._config.history_max_age_seconds if max_age is None else max_age
        )
        logger.info("Execution history cleaned up: %d removed", removed)
        return removed

    async def get_execution_stats(self) -> Dict[str, Any]:
        results = await self._store.list_history()
        active = await self._store.list_active()
        total = len(results)
        successful = sum(1 for r in results if r.success)
        times = [r.execution_time for r in results if r.execution_time > 0]
        return {
            "active": len(active),
            "total": total,
            "success_rate": successful / total if total else 0.0,
            "average_execution_time": sum(times) / len(times) if times else 0.0,
        }

    # ------------------------------------------------------------------
    # Execution loop
    # ------------------------------------------------------------------

    async def _execute_with_monitoring(
        self,
        monitor: ExecutionMonitor,
        request: ExecutionRequest,
        config: ExecutionConfig,
    ) -> ExecutionResult:
        steps: List[ExecutionStep] = []
        route = route_for_quote(request.quote)
        chain_id = request.quote.action.from_chain_id if request.quote.action else None
        retry_count = 0

        while True:
            if monitor.status == ExecutionStatus.CANCELLED:
                return self._cancelled_result(monitor, request, steps, retry_count)

            monitor.set_status(ExecutionStatus.EXECUTING)
            monitor.advance(20)

            try:
                signer = await self._signer_provider.get_signer(request.from_address, chain_id)
                hooks = self._build_hooks(monitor, request, config, steps)
                await self._rate_limiter.acquire()
                execution = await asyncio.wait_for(
                    self._aggregator.execute_route(route, signer, hooks),
                    timeout=config.timeout,
                )
            except asyncio.TimeoutError:
                error: Exception = ExecutionFailure(
                    f"Execution timed out after {config.timeout:.0f}s",
                    category=ErrorCategory.TIMEOUT,
                )
            except Exception as exc:  # noqa: BLE001
                error = exc
            else:
                if monitor.status == ExecutionStatus.CANCELLED:
                    logger.warning(
                        "Discarding result of cancelled execution %s (tx %s)",
                        monitor.execution_id,
                        execution.final_tx_hash,
                    )
                    return self._cancelled_result(
                        monitor, request, steps, retry_count, tx_hash=execution.final_tx_hash
                    )

                monitor.advance(100)
                monitor.current_step = monitor.total_steps
                monitor.set_status(ExecutionStatus.DONE)
                return ExecutionResult(
                    execution_id=monitor.execution_id,
                    success=True,
                    status=ExecutionStatus.DONE,
                    transaction_hash=execution.final_tx_hash,
                    steps=steps,
                    retry_count=retry_count,
                    request=request,
                    metadata={"source_tx_hash": execution.source_tx_hash},
                )

            if monitor.status == ExecutionStatus.CANCELLED:
                return self._cancelled_result(monitor, request, steps, retry_count)

            retry_count += 1
            retryable = not isinstance(error, UnrecoverableError) and (
                config.retryable_errors is None or is_retryable_error(str(error), config.retryable_errors)
            )
            if not retryable or retry_count > config.max_retries:
                monitor.set_status(ExecutionStatus.FAILED)
                logger.error("Execution failed after %d attempt(s): %s", retry_count, error)
                return ExecutionResult(
                    execution_id=monitor.execution_id,
                    success=False,
                    status=ExecutionStatus.FAILED,
                    error=str(error),
                    steps=steps,
                    retry_count=retry_count - 1,
                    request=request,
                    metadata={"exception": error},
                )

            logger.warning(
                "Execution attempt %d/%d failed, retrying in %.1fs: %s",
                retry_count,
                config.max_retries + 1,
                config.retry_delay,
                error,
            )
            await self._sleep(config.retry_delay)

    def _build_hooks(
        self,
        monitor: ExecutionMonitor,
        request: ExecutionRequest,
        config: ExecutionConfig,
        steps: List[ExecutionStep],
    ) -> RouteHooks:
        async def update_route(progress: List[StepProgress]) -> None:
            if monitor.is_terminal:
                return
            completed = sum(1 for p in progress if p.status == "DONE")
            if progress:
                monitor.advance(min(95.0, completed / len(progress) * 100))
            monitor.current_step = max(monitor.current_step, completed)
            if any(p.status == ExecutionStatus.APPROVAL_REQUIRED.value for p in progress):
                monitor.set_status(ExecutionStatus.APPROVAL_REQUIRED)
            elif monitor.status == ExecutionStatus.APPROVAL_REQUIRED:
                monitor.set_status(ExecutionStatus.EXECUTING)
            await self._sync_steps(monitor.execution_id, progress, steps)

        async def switch_chain(chain_id: int) -> Signer:
            monitor.set_status(ExecutionStatus.CHAIN_SWITCH_REQUIRED)
            logger.info("Chain switch required: %d", chain_id)
            signer = await self._signer_provider.get_signer(request.from_address, chain_id)
            monitor.set_status(ExecutionStatus.EXECUTING)
            return signer

        async def accept_exchange_rate_update(old: float, new: float) -> bool:
            baseline = request.slippage_tolerance or self._config.lifi_slippage_tolerance
            increase = new - baseline
            if increase <= config.max_slippage_increase:
                logger.info("Auto-accepting slippage update %.4f -> %.4f", old, new)
                return True
            monitor.set_status(ExecutionStatus.ACTION_REQUIRED)
            logger.warning("Slippage update %.4f -> %.4f requires approval", old, new)
            return False

        return RouteHooks(
            update_route=update_route,
            switch_chain=switch_chain,
            accept_exchange_rate_update=accept_exchange_rate_update,
        )

    async def _sync_steps(
        self,
        execution_id: str,
        progress: List[StepProgress],
        steps: List[ExecutionStep],
    ) -> None:
        now = self._clock()
        for state in progress:
            status = map_execution_status(state.status)
            if state.step_index >= len(steps):
                steps.append(
                    ExecutionStep(
                        step_id=f"step_{state.step_index}",
                        type=step_type(state.step_type),
                        status=status,
                        transaction_hash=state.tx_hash,
                        error=state.message if status == ExecutionStatus.FAILED else None,
                        start_time=now,
                        tool=state.tool,
                    )
                )
                if state.tx_hash:
                    await self._history_update_hash(execution_id, state.tx_hash)
                continue

            step = steps[state.step_index]
            if state.tx_hash and state.tx_hash != step.transaction_hash:
                await self._history_update_hash(execution_id, state.tx_hash)
            step.status = status
            step.transaction_hash = state.tx_hash
            if status == ExecutionStatus.FAILED:
                step.error = state.message
            if status == ExecutionStatus.DONE and step.end_time is None:
                step.end_time = now

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build_request(request: ExecutionRequest) -> TransactionBuildRequest:
        return TransactionBuildRequest(
            quote=request.quote,
            from_address=request.from_address,
            to_address=request.to_address,
            gas=request.gas,
            allow_infinite_approval=request.allow_infinite_approval,
            slippage_tolerance=request.slippage_tolerance,
        )

    async def _validate(self, tx: PreparedTransaction, request: ExecutionRequest) -> None:
        validation = await self._tx_builder.validate_transaction(tx, request.from_address, request.quote)
        if not validation.is_valid:
            raise ValidationError(f"Validation failed: {', '.join(validation.errors)}")
        if validation.warnings:
            logger.warning("Execution validation warnings: %s", "; ".join(validation.warnings))

    @staticmethod
    def _cancelled_result(
        monitor: ExecutionMonitor,
        request: ExecutionRequest,
        steps: List[ExecutionStep],
        retry_count: int,
        tx_hash: Optional[str] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            execution_id=monitor.execution_id,
            success=False,
            status=ExecutionStatus.CANCELLED,
            error="Execution cancelled",
            transaction_hash=tx_hash,
            steps=steps,
            retry_count=retry_count,
            request=request,
        )

    async def _finish(self, monitor: ExecutionMonitor, result: ExecutionResult, started: float) -> None:
        result.execution_time = self._clock() - started
        result.completed_at = self._clock()
        await self._store.pop_active(monitor.execution_id)
        await self._store.put_history(monitor.execution_id, result)

        fields: Dict[str, Any] = {"execution_time": result.execution_time}
        if result.transaction_hash:
            fields["tx_hash"] = result.transaction_hash
        if result.error:
            fields["error"] = result.error
        await self._history_update_status(monitor.execution_id, result.status.value, fields)

    # ------------------------------------------------------------------
    # External history (best effort)
    # ------------------------------------------------------------------

    async def _record_start(self, execution_id: str, request: ExecutionRequest) -> None:
        if self._history is None:
            return
        quote = request.quote
        action = quote.action
        record = {
            "id": execution_id,
            "type": "cross-chain" if quote.is_cross_chain else "swap",
            "status": ExecutionStatus.PENDING.value,
            "quote_id": quote.id,
            "tool": quote.tool,
            "from_address": request.from_address,
            "to_address": request.to_address or request.from_address,
            "from_chain": action.from_chain_id if action else None,
            "to_chain": action.to_chain_id if action else None,
            "from_token": action.from_token.symbol if action else None,
            "to_token": action.to_token.symbol if action else None,
            "from_amount": action.from_amount if action else None,
            "to_amount": quote.estimate.to_amount if quote.estimate else None,
            "metadata": dict(request.metadata),
        }
        try:
            await self._history.save(record)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to save history record %s: %s", execution_id, exc)

    async def _history_update_status(
        self,
        execution_id: str,
        status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._history is None:
            return
        try:
            await self._history.update_status(execution_id, status, fields)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to update history status for %s: %s", execution_id, exc)

    async def _history_update_hash(self, execution_id: str, tx_hash: str) -> None:
        if self._history is None:
            return
        try:
            await self._history.update_hash(execution_id, tx_hash)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to update history hash for %s: %s", execution_id, exc)
