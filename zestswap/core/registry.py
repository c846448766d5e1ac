"""Read-only chain, token and tool metadata used for tagging and ranking."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from ..cache import TTLCache
from ..config import Settings, settings as default_settings
from ..providers.base import Aggregator, ToolInfo, ToolsInfo
from .quotes.models import Token
from .ratelimit import RateLimiter
from .units import is_native_token

BRIDGE_PREFERENCES: Dict[str, int] = {
    "hop": 95,
    "across": 90,
    "stargate": 85,
    "cbridge": 80,
    "multichain": 75,
    "synapse": 70,
    "connext": 65,
    "hyphen": 60,
    "polygon": 85,
    "arbitrum": 90,
    "optimism": 88,
}

EXCHANGE_PREFERENCES: Dict[str, int] = {
    "uniswap": 95,
    "sushiswap": 90,
    "pancakeswap": 85,
    "quickswap": 80,
    "spookyswap": 75,
    "traderjoe": 85,
    "curve": 88,
    "balancer": 82,
    "1inch": 92,
    "paraswap": 88,
    "0x": 85,
}

DEFAULT_PREFERENCE = 50


@dataclass
class ProviderPerformance:
    success_rate: float = 0.0
    avg_time: float = 0.0
    avg_cost: float = 0.0
    total_transactions: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ToolRegistry:
    """Bridge/exchange metadata with preference scores and rolling performance.

    Usage:
        registry = ToolRegistry(aggregator, rate_limiter=limiter)
        bridges = await registry.recommended_bridges(1, 5000)
        await registry.record_provider_performance("stargate", True, 420.0, 1.2)
    """

    def __init__(
        self,
        aggregator: Aggregator,
        config: Optional[Settings] = None,
        *,
        cache: Optional[TTLCache[Any]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._aggregator = aggregator
        self._config = config or default_settings
        self._cache: TTLCache[Any] = cache or TTLCache(
            default_ttl=self._config.tools_cache_ttl_seconds,
            max_size=self._config.max_cache_size,
        )
        self._rate_limiter = rate_limiter or RateLimiter.from_settings(self._config)
        self._logger = logger or logging.getLogger(__name__)
        self._performance: Dict[str, ProviderPerformance] = {}
        self._performance_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Chains and tokens
    # ------------------------------------------------------------------

    def is_chain_supported(self, chain_id: int) -> bool:
        return self._config.is_chain_supported(chain_id)

    @staticmethod
    def is_native_token(address: Optional[str]) -> bool:
        return is_native_token(address)

    async def get_tokens(self, chain_id: int) -> List[Token]:
        key = f"tokens:{chain_id}"
        cached = await self._cache.get(key)
        if cached is not None:
            return cached
        tokens = await self._rate_limiter.execute(lambda: self._aggregator.get_tokens(chain_id))
        await self._cache.set(key, tokens)
        return tokens

    async def find_token(self, chain_id: int, address_or_symbol: str) -> Optional[Token]:
        """Look a token up by address, falling back to a symbol match."""
        needle = address_or_symbol.lower()
        for token in await self.get_tokens(chain_id):
            if token.address.lower() == needle or token.symbol.lower() == needle:
                return token
        return None

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def get_tools(self) -> ToolsInfo:
        cached = await self._cache.get("tools")
        if cached is not None:
            return cached
        tools = await self._rate_limiter.execute(self._aggregator.get_tools)
        await self._cache.set("tools", tools)
        self._logger.info(
            "Loaded %d bridges and %d exchanges", len(tools.bridges), len(tools.exchanges)
        )
        return tools

    async def bridges_for_chain_pair(self, from_chain: int, to_chain: int) -> List[ToolInfo]:
        tools = await self.get_tools()
        return [b for b in tools.bridges if self._supports_pair(b, from_chain, to_chain)]

    @staticmethod
    def _supports_pair(tool: ToolInfo, from_chain: int, to_chain: int) -> bool:
        for entry in tool.supported_chains:
            if isinstance(entry, dict):
                if entry.get("fromChainId") == from_chain and entry.get("toChainId") == to_chain:
                    return True
        extra = tool.model_extra or {}
        return from_chain in (extra.get("fromChains") or []) and to_chain in (extra.get("toChains") or [])

    async def recommended_bridges(self, from_chain: int, to_chain: int, limit: int = 3) -> List[ToolInfo]:
        bridges = await self.bridges_for_chain_pair(from_chain, to_chain)
        ranked = sorted(bridges, key=self.bridge_score, reverse=True)
        return ranked[:limit]

    def bridge_score(self, bridge: ToolInfo) -> float:
        base = BRIDGE_PREFERENCES.get(bridge.key.lower(), DEFAULT_PREFERENCE)
        perf = self._performance.get(bridge.key) or ProviderPerformance(0.9, 300, 0.01, 0)
        time_factor = max(0.5, 1 - (perf.avg_time - 60) / 600)
        cost_factor = max(0.5, 1 - perf.avg_cost / 0.1)
        return base * perf.success_rate * time_factor * cost_factor

    def exchange_score(self, exchange: ToolInfo) -> float:
        base = EXCHANGE_PREFERENCES.get(exchange.key.lower(), DEFAULT_PREFERENCE)
        perf = self._performance.get(exchange.key) or ProviderPerformance(0.95, 30, 0.003, 0)
        time_factor = max(0.5, 1 - (perf.avg_time - 10) / 60)
        cost_factor = max(0.5, 1 - perf.avg_cost / 0.01)
        return base * perf.success_rate * time_factor * cost_factor

    # ------------------------------------------------------------------
    # Performance
    # ------------------------------------------------------------------

    async def record_provider_performance(
        self,
        tool: str,
        success: bool,
        execution_time: float,
        cost: float,
    ) -> ProviderPerformance:
        async with self._performance_lock:
            existing = self._performance.get(tool) or ProviderPerformance()
            total = existing.total_transactions + 1
            successes = existing.success_rate * existing.total_transactions + (1 if success else 0)
            updated = ProviderPerformance(
                success_rate=successes / total,
                avg_time=(existing.avg_time * existing.total_transactions + execution_time) / total,
                avg_cost=(existing.avg_cost * existing.total_transactions + cost) / total,
                total_transactions=total,
            )
            self._performance[tool] = updated

        self._logger.info(
            "Updated performance for %s: %.1f%% success, %.1fs avg time",
            tool,
            updated.success_rate * 100,
            updated.avg_time,
        )
        return updated

    def get_provider_performance(self, tool: str) -> Optional[ProviderPerformance]:
        return self._performance.get(tool)

    def all_provider_performance(self) -> Dict[str, ProviderPerformance]:
        return dict(self._performance)

    def reliability_score(self, tool: str) -> float:
        """0.7 * success rate + 0.3 * speed score; 0.5 for tools never seen."""
        perf = self._performance.get(tool)
        if perf is None:
            return 0.5
        speed = min(1.0, 60 / perf.avg_time) if perf.avg_time > 0 else 0.5
        return perf.success_rate * 0.7 + speed * 0.3

    async def sweep(self) -> int:
        return await self._cache.sweep()
