"""
Cross-chain execution: quote, source leg, bridge wait, destination, finalize.

The executor never compensates for an already-broadcast source transaction.
When a later phase fails, the execution is marked FAILED and the legs that did
complete stay on the result so funds can be reconciled by hand.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ...cache import TTLCache
from ...config import Settings, settings as default_settings
from ...logging_config import execution_context
from ...providers.base import Aggregator, BridgeStatusInfo
from ...storage import ExecutionStore, InMemoryExecutionStore
from ..errors import (
    BridgeFailedError,
    BridgeTimeoutError,
    ConfigurationError,
    ExecutionFailure,
    ValidationError,
)
from ..execution.engine import ExecutionEngine, generate_execution_id
from ..execution.models import ExecutionRequest, ExecutionResult, ExecutionStatus
from ..quotes.manager import QuoteManager
from ..quotes.models import QuoteRequest, QuoteResponse
from ..ratelimit import RateLimiter
from ..registry import ToolRegistry
from .fallback import RouteExecutor
from .models import (
    BridgeStatus,
    BridgeTransaction,
    ChainLeg,
    ChainTransaction,
    CrossChainExecutionRequest,
    CrossChainExecutionResult,
    CrossChainMonitor,
    CrossChainPhase,
    CrossChainStatus,
    FeeBreakdown,
)

logger = logging.getLogger(__name__)

BASE_EXECUTION_TIME = 120
BRIDGE_TIME = 600
BUFFER_TIME = 60


def estimate_cross_chain_time(request: CrossChainExecutionRequest) -> float:
    """Rough wall-clock estimate in seconds, for display only."""
    estimate = BASE_EXECUTION_TIME
    if request.is_cross_chain:
        estimate += BRIDGE_TIME
    return estimate + BUFFER_TIME


def map_bridge_status(raw: Optional[str]) -> BridgeStatus:
    if raw == "DONE":
        return BridgeStatus.COMPLETED
    if raw == "FAILED":
        return BridgeStatus.FAILED
    return BridgeStatus.IN_PROGRESS


def calculate_fees(quote: QuoteResponse) -> FeeBreakdown:
    """USD fee totals: gas from gas costs, bridge vs protocol split by fee name."""
    estimate = quote.estimate
    if estimate is None:
        return FeeBreakdown()
    gas = estimate.gas_cost_usd
    bridge = sum(fee.usd for fee in estimate.fee_costs if "bridge" in fee.name.lower())
    protocol = sum(fee.usd for fee in estimate.fee_costs if "bridge" not in fee.name.lower())
    return FeeBreakdown(gas=gas, bridge=bridge, protocol=protocol, total=gas + bridge + protocol)


class CrossChainExecutor:
    """
    Orchestrates a transfer across chains.

    Phases: PREPARATION (quote) -> SOURCE_CHAIN (engine) -> BRIDGE (poll) ->
    DESTINATION_CHAIN -> FINALIZATION. Cancellation is accepted only before
    the bridge phase starts.
    """

    def __init__(
        self,
        quote_manager: QuoteManager,
        engine: ExecutionEngine,
        aggregator: Aggregator,
        rate_limiter: RateLimiter,
        registry: Optional[ToolRegistry] = None,
        route_executor: Optional[RouteExecutor] = None,
        store: Optional[ExecutionStore[CrossChainMonitor, CrossChainExecutionResult]] = None,
        config: Optional[Settings] = None,
        *,
        bridge_cache: Optional[TTLCache[BridgeStatusInfo]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._quote_manager = quote_manager
        self._engine = engine
        self._aggregator = aggregator
        self._rate_limiter = rate_limiter
        self._registry = registry
        self._route_executor = route_executor
        self._config = config or default_settings
        self._store = store or InMemoryExecutionStore(max_history=self._config.history_max_size, clock=clock)
        self._bridge_cache: TTLCache[BridgeStatusInfo] = bridge_cache or TTLCache(
            default_ttl=self._config.bridge_status_cache_ttl_seconds,
            max_size=self._config.max_cache_size,
            clock=clock,
        )
        self._clock = clock
        self._sleep = sleep
        # cross-chain id -> engine execution id of the source leg
        self._source_executions: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute_cross_chain(self, request: CrossChainExecutionRequest) -> CrossChainExecutionResult:
        """
        Run a cross-chain execution end to end.

        Validation and configuration errors are raised after the FAILED record
        is stored. Every other failure comes back as a FAILED result. Once an
        execution is cancelled, later errors leave it CANCELLED.
        """
        execution_id = generate_execution_id("cross")
        started = self._clock()
        monitor = CrossChainMonitor(
            execution_id=execution_id,
            source_chain=ChainLeg(chain_id=request.from_chain),
            destination_chain=ChainLeg(chain_id=request.to_chain),
            estimated_completion=started + estimate_cross_chain_time(request),
        )
        await self._store.put_active(execution_id, monitor)
        result = CrossChainExecutionResult(execution_id=execution_id)

        with execution_context(execution_id, from_chain=request.from_chain, to_chain=request.to_chain):
            logger.info(
                "Starting cross-chain execution: %s on %d -> %s on %d, amount %s",
                request.from_token,
                request.from_chain,
                request.to_token,
                request.to_chain,
                request.from_amount,
            )
            try:
                quote = await self._generate_quote(monitor, request)
                result.tool = quote.tool
                await self._execute_with_phases(monitor, result, quote, request)
            except (ValidationError, ConfigurationError) as exc:
                cancelled = self._fail(monitor, result, exc)
                await self._finish(monitor, result, started)
                if not cancelled:
                    raise
            except Exception as exc:  # noqa: BLE001
                self._fail(monitor, result, exc)
                await self._finish(monitor, result, started)
            else:
                await self._finish(monitor, result, started)

            logger.info(
                "Cross-chain execution finished: status=%s time=%.1fs final_amount=%s",
                result.status.value,
                result.total_execution_time,
                result.final_amount,
            )
        return result

    async def get_cross_chain_status(self, execution_id: str) -> Optional[CrossChainMonitor]:
        monitor = await self._store.get_active(execution_id)
        if monitor is None:
            return None
        if monitor.current_phase == CrossChainPhase.BRIDGE and monitor.bridge.status == BridgeStatus.IN_PROGRESS:
            await self._update_bridge_status(monitor)
        return monitor

    async def cancel_cross_chain_execution(self, execution_id: str) -> bool:
        monitor = await self._store.get_active(execution_id)
        if monitor is None:
            return False
        if not monitor.current_phase.cancellable:
            logger.warning(
                "Cannot cancel %s in %s phase: funds are committed to the bridge",
                execution_id,
                monitor.current_phase.value,
            )
            return False
        if not monitor.finish(CrossChainStatus.CANCELLED):
            return False

        source_id = self._source_executions.get(execution_id)
        if source_id is not None:
            await self._engine.cancel_execution(source_id)
        logger.info("Cross-chain execution %s cancelled", execution_id)
        return True

    async def get_cross_chain_history(self, execution_id: str) -> Optional[CrossChainExecutionResult]:
        return await self._store.get_history(execution_id)

    async def get_active_cross_chain_executions(self) -> List[CrossChainMonitor]:
        return await self._store.list_active()

    async def refresh_active_bridges(self) -> int:
        """Refresh bridge status for every execution currently waiting on a bridge."""
        bridging = [
            m for m in await self._store.list_active()
            if m.current_phase == CrossChainPhase.BRIDGE and not m.is_terminal
        ]
        for monitor in bridging:
            await self._update_bridge_status(monitor)
        if bridging:
            logger.debug("Refreshed %d active bridge(s)", len(bridging))
        return len(bridging)

    async def cleanup_history(self, max_age: Optional[float] = None) -> int:
        max_age = self._config.history_max_age_seconds if max_age is None else max_age
        removed = await self._store.prune_history(max_age)
        stale = await self._bridge_cache.prune_older_than(max_age)
        logger.info(
            "Cross-chain history cleaned up: %d executions, %d bridge statuses removed",
            removed,
            stale,
        )
        return removed

    async def get_cross_chain_stats(self) -> Dict[str, Any]:
        results = await self._store.list_history()
        active = await self._store.list_active()
        total = len(results)
        successful = sum(1 for r in results if r.success)
        times = [r.total_execution_time for r in results if r.total_execution_time > 0]

        bridged = [r.bridge_transaction for r in results if r.bridge_transaction is not None]
        bridge_done = sum(1 for b in bridged if b.status == ExecutionStatus.DONE)
        bridge_times = [b.actual_time for b in bridged if b.actual_time]

        return {
            "active": len(active),
            "total": total,
            "success_rate": successful / total if total else 0.0,
            "average_execution_time": sum(times) / len(times) if times else 0.0,
            "bridge_stats": {
                "average_bridge_time": sum(bridge_times) / len(bridge_times) if bridge_times else 0.0,
                "bridge_success_rate": bridge_done / len(bridged) if bridged else 0.0,
            },
        }

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _generate_quote(
        self,
        monitor: CrossChainMonitor,
        request: CrossChainExecutionRequest,
    ) -> QuoteResponse:
        monitor.enter(CrossChainStatus.QUOTE_GENERATION, CrossChainPhase.PREPARATION, 10)
        prefs = request.bridge_preferences
        quote_request = QuoteRequest(
            from_chain=request.from_chain,
            to_chain=request.to_chain,
            from_token=request.from_token,
            to_token=request.to_token,
            from_amount=request.from_amount,
            from_address=request.from_address,
            to_address=request.to_address or request.from_address,
            slippage=request.slippage_tolerance,
            allow_bridges=prefs.preferred_bridges,
            deny_bridges=prefs.excluded_bridges,
        )
        if prefs.max_bridge_slippage is not None:
            capped = min(self._quote_manager.calculate_slippage(quote_request), prefs.max_bridge_slippage)
            quote_request = quote_request.model_copy(update={"slippage": capped})
        quote = await self._quote_manager.get_quote(quote_request)
        monitor.bridge.name = quote.tool or "unknown"
        monitor.advance(20)
        return quote

    async def _execute_with_phases(
        self,
        monitor: CrossChainMonitor,
        result: CrossChainExecutionResult,
        quote: QuoteResponse,
        request: CrossChainExecutionRequest,
    ) -> None:
        if monitor.status == CrossChainStatus.CANCELLED:
            self._cancelled(result)
            return

        # Source chain
        monitor.enter(CrossChainStatus.SOURCE_EXECUTION, CrossChainPhase.SOURCE_CHAIN, 30)
        source, quote = await self._execute_source(monitor, quote, request)
        result.tool = quote.tool
        if source.status == ExecutionStatus.CANCELLED or monitor.status == CrossChainStatus.CANCELLED:
            if source.transaction_hash:
                logger.warning(
                    "Cross-chain execution %s cancelled after source tx %s was broadcast",
                    monitor.execution_id,
                    source.transaction_hash,
                )
                self._record_cancelled_source(monitor, result, source.transaction_hash)
            self._cancelled(result)
            return

        tx_hash = source.transaction_hash or ""
        result.source_transaction = ChainTransaction(
            hash=tx_hash,
            chain_id=request.from_chain,
            status=ExecutionStatus.DONE,
        )
        monitor.source_chain.status = ExecutionStatus.DONE
        monitor.source_chain.transaction_hash = tx_hash
        monitor.advance(50)

        # Bridge
        bridge_info: Optional[BridgeStatusInfo] = None
        if request.is_cross_chain:
            bridge_info = await self._monitor_bridge(monitor, result, quote, request)

        # Destination chain
        monitor.enter(CrossChainStatus.DESTINATION_EXECUTION, CrossChainPhase.DESTINATION_CHAIN, 85)
        receiving = bridge_info.receiving if bridge_info else None
        destination_hash = receiving.tx_hash if receiving and receiving.tx_hash else tx_hash
        result.destination_transaction = ChainTransaction(
            hash=destination_hash,
            chain_id=request.to_chain,
            status=ExecutionStatus.DONE,
        )
        monitor.destination_chain.status = ExecutionStatus.DONE
        monitor.destination_chain.transaction_hash = destination_hash
        monitor.advance(95)

        # Finalization
        monitor.enter(CrossChainStatus.DESTINATION_EXECUTION, CrossChainPhase.FINALIZATION, 95)
        result.fees = calculate_fees(quote)
        if receiving and receiving.amount:
            result.final_amount = receiving.amount
        elif quote.estimate:
            result.final_amount = quote.estimate.to_amount
        result.success = True
        result.status = CrossChainStatus.COMPLETED
        monitor.finish(CrossChainStatus.COMPLETED)

    async def _execute_source(
        self,
        monitor: CrossChainMonitor,
        quote: QuoteResponse,
        request: CrossChainExecutionRequest,
    ) -> Tuple[ExecutionResult, QuoteResponse]:
        exec_request = ExecutionRequest(
            quote=quote,
            from_address=request.from_address,
            to_address=request.to_address,
            gas=request.gas,
            slippage_tolerance=request.slippage_tolerance,
            metadata={**request.metadata, "cross_chain_id": monitor.execution_id},
        )
        try:
            return await self._run_source(monitor, exec_request), quote
        except ExecutionFailure as exc:
            failure = exc

        # Fallbacks are only safe while nothing has been broadcast.
        broadcast = failure.result is not None and failure.result.transaction_hash
        if request.options.enable_fallback and self._route_executor is not None and not broadcast:
            fallbacks = await self._route_executor.generate_fallback_routes(
                exec_request, self._config.fallback_max_routes
            )
            for fallback in fallbacks:
                if monitor.status == CrossChainStatus.CANCELLED:
                    break
                logger.info("Source leg via %s failed, trying %s", quote.tool, fallback.reason)
                monitor.bridge.name = fallback.quote.tool or "unknown"
                try:
                    source = await self._run_source(monitor, replace(exec_request, quote=fallback.quote))
                    return source, fallback.quote
                except ExecutionFailure as exc:
                    logger.warning("Fallback source leg via %s failed: %s", fallback.quote.tool, exc)
                    failure = exc
                    if exc.result is not None and exc.result.transaction_hash:
                        break

        raise ExecutionFailure(f"Source execution failed: {failure}", result=failure.result) from failure

    async def _run_source(self, monitor: CrossChainMonitor, exec_request: ExecutionRequest) -> ExecutionResult:
        source_id = generate_execution_id()
        self._source_executions[monitor.execution_id] = source_id
        try:
            return await self._engine.execute_transaction(exec_request, execution_id=source_id)
        finally:
            self._source_executions.pop(monitor.execution_id, None)

    async def _monitor_bridge(
        self,
        monitor: CrossChainMonitor,
        result: CrossChainExecutionResult,
        quote: QuoteResponse,
        request: CrossChainExecutionRequest,
    ) -> Optional[BridgeStatusInfo]:
        monitor.enter(CrossChainStatus.BRIDGING, CrossChainPhase.BRIDGE, 60)
        monitor.bridge.status = BridgeStatus.IN_PROGRESS
        monitor.bridge.started_at = self._clock()
        monitor.bridge.estimated_time = quote.execution_duration or None

        tx_hash = monitor.source_chain.transaction_hash or ""
        max_wait = request.options.max_wait_time or self._config.bridge_max_wait_seconds
        info: Optional[BridgeStatusInfo] = None

        while self._clock() - monitor.bridge.started_at < max_wait:
            info = await self._update_bridge_status(monitor) or info

            if monitor.bridge.status == BridgeStatus.COMPLETED:
                result.bridge_transaction = BridgeTransaction(
                    hash=tx_hash,
                    source_chain_id=request.from_chain,
                    target_chain_id=request.to_chain,
                    status=ExecutionStatus.DONE,
                    bridge_name=monitor.bridge.name,
                    estimated_arrival=monitor.bridge.estimated_time,
                    actual_time=monitor.bridge.actual_time,
                )
                monitor.advance(80)
                return info

            if monitor.bridge.status == BridgeStatus.FAILED:
                result.bridge_transaction = self._failed_bridge(monitor, tx_hash, request)
                message = info.substatus_message if info and info.substatus_message else "Bridge execution failed"
                raise BridgeFailedError(message, tx_hash=tx_hash)

            await self._sleep(self._config.bridge_poll_interval_seconds)

        result.bridge_transaction = self._failed_bridge(monitor, tx_hash, request)
        logger.error("Bridge %s did not complete within %.0fs (tx %s)", monitor.bridge.name, max_wait, tx_hash)
        raise BridgeTimeoutError(tx_hash=tx_hash)

    # ------------------------------------------------------------------
    # Bridge status
    # ------------------------------------------------------------------

    async def _update_bridge_status(self, monitor: CrossChainMonitor) -> Optional[BridgeStatusInfo]:
        tx_hash = monitor.source_chain.transaction_hash
        if not tx_hash:
            return None

        cache_key = f"bridge_{tx_hash}"
        info = await self._bridge_cache.get(cache_key)
        if info is None:
            # Single attempt: the polling loop owns the wait budget.
            try:
                info = await self._rate_limiter.execute(
                    lambda: self._aggregator.get_status(tx_hash, monitor.bridge.name or None),
                    retries=0,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to update bridge status for %s: %s", monitor.execution_id, exc)
                return None
            await self._bridge_cache.set(cache_key, info)

        self._apply_bridge_status(monitor, info)
        return info

    def _apply_bridge_status(self, monitor: CrossChainMonitor, info: BridgeStatusInfo) -> None:
        status = map_bridge_status(info.status)
        if status == BridgeStatus.COMPLETED and monitor.bridge.started_at is not None:
            monitor.bridge.actual_time = self._clock() - monitor.bridge.started_at
        monitor.bridge.status = status
        monitor.last_update = self._clock()

    @staticmethod
    def _failed_bridge(
        monitor: CrossChainMonitor,
        tx_hash: str,
        request: CrossChainExecutionRequest,
    ) -> BridgeTransaction:
        return BridgeTransaction(
            hash=tx_hash,
            source_chain_id=request.from_chain,
            target_chain_id=request.to_chain,
            status=ExecutionStatus.FAILED,
            bridge_name=monitor.bridge.name,
            estimated_arrival=monitor.bridge.estimated_time,
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _cancelled(result: CrossChainExecutionResult) -> None:
        result.success = False
        result.status = CrossChainStatus.CANCELLED
        result.error = "Execution cancelled"

    def _fail(self, monitor: CrossChainMonitor, result: CrossChainExecutionResult, exc: Exception) -> bool:
        """Record a failure. Returns True when the execution was already cancelled."""
        if not monitor.finish(CrossChainStatus.FAILED) and monitor.status == CrossChainStatus.CANCELLED:
            logger.warning(
                "Cross-chain execution %s errored after cancellation: %s",
                monitor.execution_id,
                exc,
            )
            broadcast = getattr(exc, "result", None)
            if broadcast is not None and broadcast.transaction_hash:
                self._record_cancelled_source(monitor, result, broadcast.transaction_hash)
            self._cancelled(result)
            return True
        result.success = False
        result.status = CrossChainStatus.FAILED
        result.error = str(exc)
        logger.error(
            "Cross-chain execution failed in %s phase: %s",
            monitor.current_phase.value,
            exc,
        )
        return False

    @staticmethod
    def _record_cancelled_source(
        monitor: CrossChainMonitor,
        result: CrossChainExecutionResult,
        tx_hash: str,
    ) -> None:
        """Keep a source hash broadcast before cancellation, for manual reconciliation."""
        monitor.source_chain.transaction_hash = tx_hash
        result.source_transaction = ChainTransaction(
            hash=tx_hash,
            chain_id=monitor.source_chain.chain_id,
            status=ExecutionStatus.CANCELLED,
        )

    async def _finish(
        self,
        monitor: CrossChainMonitor,
        result: CrossChainExecutionResult,
        started: float,
    ) -> None:
        result.total_execution_time = self._clock() - started
        result.completed_at = self._clock()
        await self._store.pop_active(monitor.execution_id)
        await self._store.put_history(monitor.execution_id, result)
        if result.status != CrossChainStatus.CANCELLED:
            await self._record_performance(result)

    async def _record_performance(self, result: CrossChainExecutionResult) -> None:
        if self._registry is None or not result.tool:
            return
        try:
            await self._registry.record_provider_performance(
                result.tool,
                success=result.success,
                execution_time=result.total_execution_time,
                cost=result.fees.total,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to record performance for %s: %s", result.tool, exc)
