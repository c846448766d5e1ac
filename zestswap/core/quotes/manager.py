"""
Quote Manager

Fetches quotes through the rate limiter, repairs and tags them, caches them
for a short TTL and builds multi-route comparisons.
"""

import hashlib
import json
import logging
import secrets
import time
from typing import Any, Callable, Dict, List, Optional

from ...cache import TTLCache
from ...config import Settings, settings as default_settings
from ...providers.base import Aggregator, ToolInfo
from ..errors import ValidationError
from ..ratelimit import RateLimiter
from ..registry import ToolRegistry
from ..units import parse_quantity
from .models import (
    ComparisonMetrics,
    ComparisonOptions,
    GasEstimateSummary,
    QuoteRequest,
    QuoteResponse,
    QuoteStep,
    QuoteType,
    RouteComparison,
    RouteValidationResult,
    SlippageConfig,
)

logger = logging.getLogger(__name__)

_RESERVED_EXTRAS = {"tags", "createdAt", "created_at"}


def generate_quote_id(now: Optional[float] = None) -> str:
    millis = int((now if now is not None else time.time()) * 1000)
    return f"quote_{millis}_{secrets.token_hex(5)}"


class QuoteManager:
    """Quote acquisition, caching and comparison."""

    def __init__(
        self,
        aggregator: Aggregator,
        registry: ToolRegistry,
        rate_limiter: RateLimiter,
        config: Optional[Settings] = None,
        *,
        quote_cache: Optional[TTLCache[QuoteResponse]] = None,
        route_cache: Optional[TTLCache[List[QuoteResponse]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._aggregator = aggregator
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._config = config or default_settings
        self._clock = clock
        self._quote_cache: TTLCache[QuoteResponse] = quote_cache or TTLCache(
            default_ttl=self._config.quote_cache_ttl_seconds,
            max_size=self._config.max_cache_size,
            clock=clock,
        )
        self._route_cache: TTLCache[List[QuoteResponse]] = route_cache or TTLCache(
            default_ttl=self._config.route_cache_ttl_seconds,
            max_size=self._config.max_cache_size,
            clock=clock,
        )

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def get_quote(self, request: QuoteRequest) -> QuoteResponse:
        """Return a processed quote, served from cache when an identical one is fresh."""
        self._validate_request(request)
        slippage = self.calculate_slippage(request)
        cache_key = self._cache_key(request, slippage)

        cached = await self._quote_cache.get(cache_key)
        if cached is not None:
            logger.info("Returning cached quote %s", cached.id)
            return cached

        upstream_request = request.model_copy(update={"slippage": slippage})
        raw = await self._rate_limiter.execute(lambda: self._aggregator.get_quote(upstream_request))
        quote = self._process_quote(raw, request)

        await self._quote_cache.set(cache_key, quote)
        logger.info(
            "Quote generated: %s -> %s, from %s to %s (%s)",
            request.from_chain,
            request.to_chain,
            request.from_amount,
            quote.estimate.to_amount if quote.estimate else "?",
            quote.tool,
        )
        return quote

    async def get_quote_comparison(
        self,
        request: QuoteRequest,
        options: Optional[ComparisonOptions] = None,
    ) -> RouteComparison:
        options = options or ComparisonOptions()
        self._validate_request(request)
        cache_key = "comparison:" + self._cache_key(request, self.calculate_slippage(request))

        cached = await self._route_cache.get(cache_key)
        if cached is not None:
            return self._build_comparison(cached)

        quotes = [await self.get_quote(request)]
        if options.include_alternative_routes and options.max_quotes > 1:
            quotes.extend(
                await self._alternative_routes(request, options.max_quotes - 1, options.preferred_tools)
            )

        await self._route_cache.set(cache_key, quotes)
        return self._build_comparison(quotes)

    async def validate_route(self, quote: QuoteResponse) -> RouteValidationResult:
        errors: List[str] = []
        warnings: List[str] = []
        estimate = quote.estimate

        if estimate is None or not estimate.to_amount:
            errors.append("Invalid quote structure")

        action = quote.action
        if action is not None:
            if not self._config.is_chain_supported(action.from_chain_id):
                errors.append(f"Source chain {action.from_chain_id} is not supported")
            if not self._config.is_chain_supported(action.to_chain_id):
                errors.append(f"Destination chain {action.to_chain_id} is not supported")

            try:
                token = await self._registry.find_token(action.from_chain_id, action.from_token.address)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Token lookup failed during route validation: %s", exc)
                token = None
            if token is None:
                warnings.append("Source token not found in token list")

        gas_estimate = None
        if estimate is not None:
            if estimate.gas_costs:
                total_gas = sum(parse_quantity(cost.estimate, default=0) for cost in estimate.gas_costs)
                gas_estimate = GasEstimateSummary(
                    estimated=str(total_gas),
                    limit=str(int(total_gas * 1.2)),
                    price=estimate.gas_costs[0].price or "0",
                )

            to_amount = float(estimate.to_amount or 0)
            to_amount_min = float(estimate.to_amount_min or 0)
            if to_amount > 0 and to_amount_min > 0:
                slippage = (to_amount - to_amount_min) / to_amount
                if slippage > 0.05:
                    warnings.append(f"High slippage detected: {slippage * 100:.2f}%")

            if estimate.execution_duration > 600:
                warnings.append(f"Long execution time: {round(estimate.execution_duration / 60)} minutes")

        return RouteValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            gas_estimate=gas_estimate,
        )

    # ------------------------------------------------------------------
    # Slippage
    # ------------------------------------------------------------------

    def get_slippage_config(self) -> SlippageConfig:
        return SlippageConfig()

    def calculate_slippage(self, request: QuoteRequest) -> float:
        config = self.get_slippage_config()
        if request.slippage:
            return max(config.minimum, min(config.maximum, request.slippage))
        if not config.auto:
            return config.default

        slippage = config.default
        if config.volatility_adjustment:
            if request.is_cross_chain:
                slippage *= 1.5
            if self._amount(request) > 10000:
                slippage *= 1.2
        return max(config.minimum, min(config.maximum, slippage))

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def get_cache_stats(self) -> Dict[str, Dict[str, int]]:
        return {
            "quotes": {"size": self._quote_cache.size(), "max_size": self._quote_cache.max_size},
            "routes": {"size": self._route_cache.size(), "max_size": self._route_cache.max_size},
        }

    async def clear_cache(self) -> None:
        await self._quote_cache.clear()
        await self._route_cache.clear()
        logger.info("Quote and route caches cleared")

    async def sweep_expired(self) -> int:
        removed = await self._quote_cache.sweep() + await self._route_cache.sweep()
        logger.debug(
            "Cache swept: %d removed, %d quotes and %d routes cached",
            removed,
            self._quote_cache.size(),
            self._route_cache.size(),
        )
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _amount(request: QuoteRequest) -> float:
        try:
            return float(request.from_amount)
        except (TypeError, ValueError):
            return 0.0

    def _validate_request(self, request: QuoteRequest) -> None:
        if not request.from_chain or not request.to_chain:
            raise ValidationError("Source and destination chains are required")
        if not request.from_token or not request.to_token:
            raise ValidationError("Source and destination tokens are required")
        if self._amount(request) <= 0:
            raise ValidationError("Valid amount is required", {"from_amount": request.from_amount})
        if not request.from_address:
            raise ValidationError("From address is required")
        if not self._config.is_chain_supported(request.from_chain):
            raise ValidationError(f"Source chain {request.from_chain} is not supported")
        if not self._config.is_chain_supported(request.to_chain):
            raise ValidationError(f"Destination chain {request.to_chain} is not supported")

    @staticmethod
    def _cache_key(request: QuoteRequest, slippage: float) -> str:
        parts: Dict[str, Any] = {
            "from_chain": request.from_chain,
            "to_chain": request.to_chain,
            "from_token": request.from_token.lower(),
            "to_token": request.to_token.lower(),
            "from_amount": request.from_amount,
            "from_address": request.from_address.lower(),
            "slippage": round(slippage, 6),
            "allow_bridges": sorted(request.allow_bridges or []),
            "deny_bridges": sorted(request.deny_bridges or []),
        }
        encoded = json.dumps(parts, sort_keys=True).encode()
        return hashlib.sha256(encoded).hexdigest()

    def _process_quote(self, raw: QuoteStep, request: QuoteRequest) -> QuoteResponse:
        """Force sender/receiver to match the request and stamp id, type and tags."""
        to_address = request.to_address or request.from_address
        addresses = {"from_address": request.from_address, "to_address": to_address}

        action = raw.action.model_copy(update=addresses) if raw.action else None
        steps = [
            step.model_copy(update={"action": step.action.model_copy(update=addresses)})
            if step.action
            else step
            for step in raw.included_steps
        ]

        extras = {k: v for k, v in (raw.model_extra or {}).items() if k not in _RESERVED_EXTRAS}
        now = self._clock()
        return QuoteResponse(
            **extras,
            id=generate_quote_id(now),
            type=QuoteType.CROSS_CHAIN if request.is_cross_chain else QuoteType.SAME_CHAIN,
            tool=raw.tool,
            tool_details=raw.tool_details,
            action=action,
            estimate=raw.estimate,
            included_steps=steps,
            transaction_request=raw.transaction_request,
            tags=self._tags(raw, request),
            created_at=now,
        )

    @staticmethod
    def _tags(raw: QuoteStep, request: QuoteRequest) -> List[str]:
        tags = ["cross-chain", "bridge"] if request.is_cross_chain else ["same-chain", "swap"]

        tool_name = raw.tool_details.get("name") or raw.tool
        if tool_name:
            tags.append(f"tool:{str(tool_name).lower()}")

        estimate = raw.estimate
        if estimate is not None:
            duration = estimate.execution_duration
            if duration:
                if duration < 60:
                    tags.append("fast")
                elif duration > 300:
                    tags.append("slow")
            if estimate.gas_costs:
                gas_usd = estimate.gas_cost_usd
                if gas_usd < 1:
                    tags.append("low-cost")
                elif gas_usd > 10:
                    tags.append("high-cost")
        return tags

    async def _alternative_routes(
        self,
        request: QuoteRequest,
        max_routes: int,
        preferred_tools: Optional[List[str]] = None,
    ) -> List[QuoteResponse]:
        denied = {b.lower() for b in (request.deny_bridges or [])}
        try:
            if preferred_tools:
                candidates = [ToolInfo(key=tool, name=tool) for tool in preferred_tools]
            else:
                candidates = await self._registry.recommended_bridges(
                    request.from_chain, request.to_chain, limit=max_routes
                )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to load alternative routes: %s", exc)
            return []

        routes: List[QuoteResponse] = []
        for tool in candidates:
            if len(routes) >= max_routes:
                break
            if tool.key.lower() in denied:
                continue
            tool_request = request.model_copy(update={"allow_bridges": [tool.key], "deny_bridges": None})
            try:
                routes.append(await self.get_quote(tool_request))
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to get alternative route via %s: %s", tool.key, exc)
        return routes

    def _build_comparison(self, quotes: List[QuoteResponse]) -> RouteComparison:
        if not quotes:
            raise ValidationError("No quotes available for comparison")

        by_output = max(quotes, key=lambda q: q.to_amount)
        by_speed = min(quotes, key=lambda q: q.execution_duration)
        by_cost = min(quotes, key=lambda q: q.gas_cost_usd)
        by_reliability = max(quotes, key=lambda q: self._registry.reliability_score(q.tool))

        count = len(quotes)
        metrics = ComparisonMetrics(
            total_quotes=count,
            average_output=str(sum(q.to_amount for q in quotes) / count),
            average_time=sum(q.execution_duration for q in quotes) / count,
            average_cost=str(sum(q.gas_cost_usd for q in quotes) / count),
        )

        return RouteComparison(
            quotes=quotes,
            best_quote=by_output,
            by_output=by_output,
            by_speed=by_speed,
            by_cost=by_cost,
            by_reliability=by_reliability,
            metrics=metrics,
        )
