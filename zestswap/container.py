"""
Object graph for the orchestration core.

Everything is built once, at startup, and passed by reference. Tests build
their own graphs with fakes instead of touching module state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import Settings, settings as default_settings
from .core.crosschain.executor import CrossChainExecutor
from .core.crosschain.fallback import RouteExecutor
from .core.errors import ConfigurationError
from .core.execution.engine import ExecutionEngine
from .core.execution.tx_builder import TransactionBuilder
from .core.quotes.manager import QuoteManager
from .core.ratelimit import RateLimiter
from .core.registry import ToolRegistry
from .providers.base import Aggregator, ChainReader, HistoryStore, Signer, SignerProvider
from .providers.history import InMemoryHistoryStore
from .providers.lifi import LiFiProvider
from .providers.rpc import RpcChainReader
from .runtime import BackgroundRuntime

logger = logging.getLogger(__name__)


class NoSignerProvider(SignerProvider):
    """Placeholder for read-only deployments: quoting works, execution refuses."""

    async def get_signer(self, address: str, chain_id: Optional[int] = None) -> Signer:
        raise ConfigurationError("No signer provider configured; execution is disabled")


@dataclass
class Services:
    config: Settings
    aggregator: Aggregator
    rate_limiter: RateLimiter
    registry: ToolRegistry
    quote_manager: QuoteManager
    tx_builder: TransactionBuilder
    engine: ExecutionEngine
    route_executor: RouteExecutor
    cross_chain: CrossChainExecutor
    history: HistoryStore
    chain_reader: Optional[ChainReader] = None
    runtime: BackgroundRuntime = field(default_factory=BackgroundRuntime)

    async def start(self) -> None:
        """Register the maintenance loops and start them."""
        cfg = self.config
        jobs = {
            "cache-sweep": (cfg.cache_sweep_interval_seconds, self._sweep_caches, "Evict expired quote, route and registry entries"),
            "gas-cache-sweep": (cfg.cache_sweep_interval_seconds, self.tx_builder.sweep_gas_cache, "Evict expired gas quotes"),
            "bridge-sweep": (cfg.bridge_sweep_interval_seconds, self.cross_chain.refresh_active_bridges, "Refresh active bridge statuses"),
            "history-cleanup": (cfg.history_cleanup_interval_seconds, self._cleanup_history, "Prune old execution history"),
        }
        registered = {job["name"] for job in self.runtime.list_jobs()}
        for name, (interval, func, description) in jobs.items():
            if name not in registered:
                self.runtime.register_job(name, interval, func, description=description)
        await self.runtime.start()

    async def stop(self) -> None:
        await self.runtime.stop()
        if isinstance(self.chain_reader, RpcChainReader):
            await self.chain_reader.close()

    async def _sweep_caches(self) -> int:
        removed = await self.quote_manager.sweep_expired()
        removed += await self.registry.sweep()
        return removed

    async def _cleanup_history(self) -> None:
        await self.engine.cleanup_history()
        await self.cross_chain.cleanup_history()


def build_services(
    config: Optional[Settings] = None,
    *,
    aggregator: Optional[Aggregator] = None,
    signer_provider: Optional[SignerProvider] = None,
    chain_reader: Optional[ChainReader] = None,
    history: Optional[HistoryStore] = None,
) -> Services:
    """Wire the default graph: LI.FI aggregator, JSON-RPC chain reader, in-memory history."""
    config = config or default_settings
    rate_limiter = RateLimiter.from_settings(config)
    aggregator = aggregator or LiFiProvider(config=config, rate_limiter=rate_limiter)
    if isinstance(aggregator, LiFiProvider) and aggregator.rate_limiter is None:
        aggregator.rate_limiter = rate_limiter
    chain_reader = chain_reader or RpcChainReader(dict(config.rpc_urls))
    history = history or InMemoryHistoryStore()
    signer_provider = signer_provider or NoSignerProvider()

    registry = ToolRegistry(aggregator, config, rate_limiter=rate_limiter)
    quote_manager = QuoteManager(aggregator, registry, rate_limiter, config)
    tx_builder = TransactionBuilder(quote_manager, chain_reader, config)
    engine = ExecutionEngine(
        aggregator,
        tx_builder,
        signer_provider,
        rate_limiter,
        history=history,
        config=config,
    )
    route_executor = RouteExecutor(engine, quote_manager, config)
    cross_chain = CrossChainExecutor(
        quote_manager,
        engine,
        aggregator,
        rate_limiter,
        registry=registry,
        route_executor=route_executor,
        config=config,
    )

    logger.info("Services built: aggregator=%s, %d supported chains", type(aggregator).__name__, len(config.supported_chains))
    return Services(
        config=config,
        aggregator=aggregator,
        rate_limiter=rate_limiter,
        registry=registry,
        quote_manager=quote_manager,
        tx_builder=tx_builder,
        engine=engine,
        route_executor=route_executor,
        cross_chain=cross_chain,
        history=history,
        chain_reader=chain_reader,
    )
