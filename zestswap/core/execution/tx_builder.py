"""
Transaction builder: turns aggregator quotes into signable transactions,
validates them before execution and prices gas.
"""

import logging
import time
from typing import Callable, Dict, List, Optional

from ...cache import TTLCache
from ...config import Settings, settings as default_settings
from ...providers.base import ChainReader
from ..errors import ConfigurationError, ValidationError
from ..quotes.manager import QuoteManager
from ..quotes.models import QuoteResponse
from ..units import is_native_token, parse_quantity
from .models import (
    FeeEstimate,
    GasOptimization,
    GasTier,
    NetworkFees,
    PreparedTransaction,
    TransactionBuildRequest,
    TransactionType,
    TransactionValidation,
    ValidationChecks,
)

logger = logging.getLogger(__name__)

ERC20_APPROVE_SELECTOR = "0x095ea7b3"  # approve(address,uint256)

# Maximum uint256 for unlimited approval
MAX_UINT256 = 2**256 - 1

APPROVAL_GAS_LIMIT = 100_000
DEFAULT_GAS_LIMIT = 21_000
MIN_GAS_LIMIT = 21_000
MAX_GAS_LIMIT = 10_000_000
MAX_ACCEPTABLE_SLIPPAGE = 0.05
ROUTE_MAX_AGE_SECONDS = 120

GWEI = 10**9

# Static per-chain gas prices used when live fee data is unavailable.
FALLBACK_GAS_PRICES: Dict[int, int] = {
    1: 20 * GWEI,
    137: 30 * GWEI,
    56: 5 * GWEI,
    42161: GWEI // 10,
    10: GWEI // 1000,
    43114: 25 * GWEI,
    250: 20 * GWEI,
    5000: 20 * GWEI,
    5003: 20 * GWEI,
}
DEFAULT_FALLBACK_GAS_PRICE = 20 * GWEI


def _encode_uint256(value: int) -> str:
    """Encode a uint256 as a 32-byte hex string (without 0x prefix)."""
    return format(value, "064x")


def _encode_address(address: str) -> str:
    """Encode an address as a 32-byte hex string (without 0x prefix)."""
    return address.lower().replace("0x", "").zfill(64)


def encode_approve(spender: str, amount: int) -> str:
    return ERC20_APPROVE_SELECTOR + _encode_address(spender) + _encode_uint256(amount)


def _congestion(priority_fee: int) -> str:
    if priority_fee < GWEI:
        return "low"
    if priority_fee > 5 * GWEI:
        return "high"
    return "medium"


class TransactionBuilder:
    """
    Builds and validates transactions from quotes.

    Handles:
    - Normalizing aggregator call data into PreparedTransaction
    - Pre-execution checks (balance, gas, approval, slippage, freshness)
    - ERC20 approvals for non-native source tokens
    - Gas price tiers, live or from a static fallback table
    """

    def __init__(
        self,
        quote_manager: QuoteManager,
        chain_reader: Optional[ChainReader] = None,
        config: Optional[Settings] = None,
        *,
        gas_cache: Optional[TTLCache[GasOptimization]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._quote_manager = quote_manager
        self._chain_reader = chain_reader
        self._config = config or default_settings
        self._clock = clock
        self._gas_cache: TTLCache[GasOptimization] = gas_cache or TTLCache(
            default_ttl=self._config.gas_cache_ttl_seconds,
            max_size=self._config.max_cache_size,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build_transaction(self, request: TransactionBuildRequest) -> PreparedTransaction:
        await self._validate_build_request(request)

        quote = request.quote
        tx_request = quote.transaction_request
        if tx_request is None or not tx_request.to or not tx_request.data:
            raise ConfigurationError("Quote does not contain transaction data")

        gas = request.gas
        prepared = PreparedTransaction(
            to=tx_request.to,
            data=tx_request.data,
            chain_id=quote.action.from_chain_id,
            value=parse_quantity(tx_request.value, default=0),
            gas_limit=gas.gas_limit or parse_quantity(tx_request.gas_limit, default=DEFAULT_GAS_LIMIT),
            gas_price=gas.gas_price or parse_quantity(tx_request.gas_price),
            max_fee_per_gas=gas.max_fee_per_gas or parse_quantity(tx_request.max_fee_per_gas),
            max_priority_fee_per_gas=(
                gas.max_priority_fee_per_gas or parse_quantity(tx_request.max_priority_fee_per_gas)
            ),
            nonce=request.nonce,
            from_address=request.from_address,
        )

        logger.info(
            "Transaction built: to=%s value=%d gas_limit=%d chain=%d",
            prepared.to,
            prepared.value,
            prepared.gas_limit,
            prepared.chain_id,
        )
        return prepared

    async def _validate_build_request(self, request: TransactionBuildRequest) -> None:
        if request.quote is None:
            raise ValidationError("Quote is required")
        if not request.from_address:
            raise ValidationError("From address is required")

        action = request.quote.action
        if action is None or not self._config.is_chain_supported(action.from_chain_id):
            raise ValidationError("Unsupported source chain")

        validation = await self._quote_manager.validate_route(request.quote)
        if not validation.is_valid:
            raise ValidationError(f"Invalid quote: {', '.join(validation.errors)}")

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    async def validate_transaction(
        self,
        tx: PreparedTransaction,
        from_address: str,
        quote: QuoteResponse,
    ) -> TransactionValidation:
        errors: List[str] = []
        warnings: List[str] = []
        checks = ValidationChecks()

        if self._chain_reader is None:
            checks.balance_sufficient = True
            warnings.append("Balance check skipped: no chain reader configured")
        else:
            checks.balance_sufficient = await self._check_balance(from_address, tx, quote)
            if not checks.balance_sufficient:
                errors.append("Insufficient balance for transaction")

        checks.gas_estimate_valid = MIN_GAS_LIMIT <= tx.gas_limit <= MAX_GAS_LIMIT
        if not checks.gas_estimate_valid:
            warnings.append("Gas estimate may be inaccurate")

        checks.approval_required = self._approval_required(quote)
        if checks.approval_required:
            warnings.append("Token approval required before execution")

        checks.slippage_acceptable = self._slippage_acceptable(quote)
        if not checks.slippage_acceptable:
            warnings.append("High slippage detected")

        checks.route_still_valid = quote.age_seconds(self._clock()) < ROUTE_MAX_AGE_SECONDS
        if not checks.route_still_valid:
            errors.append("Route is no longer valid, please get a new quote")

        validation = TransactionValidation(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            checks=checks,
        )
        logger.info(
            "Transaction validation: valid=%s errors=%d warnings=%d",
            validation.is_valid,
            len(errors),
            len(warnings),
        )
        return validation

    async def _check_balance(
        self,
        from_address: str,
        tx: PreparedTransaction,
        quote: QuoteResponse,
    ) -> bool:
        gas_price = tx.max_fee_per_gas or tx.gas_price or 0
        required_native = tx.value + tx.gas_limit * gas_price
        try:
            native = await self._chain_reader.get_native_balance(tx.chain_id, from_address)
            if native < required_native:
                return False

            token = quote.action.from_token if quote.action else None
            if token is not None and not is_native_token(token.address):
                amount = parse_quantity(quote.action.from_amount, default=0)
                balance = await self._chain_reader.get_token_balance(tx.chain_id, token.address, from_address)
                return balance >= amount
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning("Balance check failed: %s", exc)
            return False

    @staticmethod
    def _approval_required(quote: QuoteResponse) -> bool:
        token = quote.action.from_token if quote.action else None
        if token is None or is_native_token(token.address):
            return False
        return True

    @staticmethod
    def _slippage_acceptable(quote: QuoteResponse) -> bool:
        estimate = quote.estimate
        if estimate is None:
            return True
        to_amount = float(estimate.to_amount or 0)
        to_amount_min = float(estimate.to_amount_min or 0)
        if to_amount <= 0 or to_amount_min <= 0:
            return True
        return (to_amount - to_amount_min) / to_amount <= MAX_ACCEPTABLE_SLIPPAGE

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def build_approval_transaction(self, request: TransactionBuildRequest) -> Optional[PreparedTransaction]:
        """ERC20 ``approve(spender, amount)`` for the source token, or None for native tokens."""
        quote = request.quote
        if quote is None or quote.action is None:
            return None

        token = quote.action.from_token
        if is_native_token(token.address):
            return None

        spender = None
        if quote.estimate is not None and quote.estimate.approval_address:
            spender = quote.estimate.approval_address
        elif quote.transaction_request is not None:
            spender = quote.transaction_request.to
        if not spender:
            logger.warning("Could not determine spender address for approval")
            return None

        if request.allow_infinite_approval:
            amount = MAX_UINT256
        else:
            source = quote.estimate.from_amount if quote.estimate else quote.action.from_amount
            amount = parse_quantity(source, default=0)

        gas = request.gas
        approval = PreparedTransaction(
            to=token.address,
            data=encode_approve(spender, amount),
            chain_id=quote.action.from_chain_id,
            value=0,
            gas_limit=APPROVAL_GAS_LIMIT,
            gas_price=gas.gas_price,
            max_fee_per_gas=gas.max_fee_per_gas,
            max_priority_fee_per_gas=gas.max_priority_fee_per_gas,
            nonce=request.nonce,
            from_address=request.from_address,
            tx_type=TransactionType.APPROVE,
        )
        logger.info("Built approval for token %s, spender %s", token.address, spender)
        return approval

    # ------------------------------------------------------------------
    # Gas
    # ------------------------------------------------------------------

    async def optimize_gas_price(self, chain_id: int) -> GasOptimization:
        key = f"gas:{chain_id}"
        cached = await self._gas_cache.get(key)
        if cached is not None:
            return cached

        if self._chain_reader is None:
            return self._fallback_gas_optimization(chain_id)

        try:
            fees = await self._chain_reader.get_fee_data(chain_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Gas optimization failed for chain %d, using fallback: %s", chain_id, exc)
            return self._fallback_gas_optimization(chain_id)

        base, priority = fees.base_fee, fees.priority_fee
        optimization = GasOptimization(
            slow=GasTier(
                gas_price=base + priority // 2,
                max_fee_per_gas=base * 2 + priority // 2,
                max_priority_fee_per_gas=priority // 2,
                estimated_time=300,
            ),
            recommended=GasTier(
                gas_price=base + priority,
                max_fee_per_gas=base * 2 + priority,
                max_priority_fee_per_gas=priority,
                estimated_time=120,
            ),
            fast=GasTier(
                gas_price=base + priority * 2,
                max_fee_per_gas=base * 2 + priority * 2,
                max_priority_fee_per_gas=priority * 2,
                estimated_time=60,
            ),
            current=NetworkFees(
                base_fee=base,
                priority_fee=priority,
                network_congestion=_congestion(priority),
            ),
        )
        await self._gas_cache.set(key, optimization)
        logger.info(
            "Gas optimization for chain %d: recommended=%d congestion=%s",
            chain_id,
            optimization.recommended.gas_price,
            optimization.current.network_congestion,
        )
        return optimization

    @staticmethod
    def _fallback_gas_optimization(chain_id: int) -> GasOptimization:
        price = FALLBACK_GAS_PRICES.get(chain_id, DEFAULT_FALLBACK_GAS_PRICE)
        return GasOptimization(
            slow=GasTier(
                gas_price=price * 8 // 10,
                max_fee_per_gas=price * 15 // 10,
                max_priority_fee_per_gas=price // 20,
                estimated_time=300,
            ),
            recommended=GasTier(
                gas_price=price,
                max_fee_per_gas=price * 2,
                max_priority_fee_per_gas=price // 10,
                estimated_time=120,
            ),
            fast=GasTier(
                gas_price=price * 15 // 10,
                max_fee_per_gas=price * 3,
                max_priority_fee_per_gas=price // 5,
                estimated_time=60,
            ),
            current=NetworkFees(base_fee=price, priority_fee=price // 10, network_congestion="medium"),
            is_fallback=True,
        )

    async def estimate_transaction_fees(
        self,
        tx: PreparedTransaction,
        optimization: Optional[GasOptimization] = None,
    ) -> FeeEstimate:
        optimization = optimization or await self.optimize_gas_price(tx.chain_id)
        recommended = optimization.recommended
        gas_price = tx.gas_price or recommended.gas_price
        return FeeEstimate(
            gas_limit=tx.gas_limit,
            gas_price=gas_price,
            max_fee_per_gas=tx.max_fee_per_gas or recommended.max_fee_per_gas,
            max_priority_fee_per_gas=tx.max_priority_fee_per_gas or recommended.max_priority_fee_per_gas,
            total_fee=tx.gas_limit * gas_price,
        )

    async def clear_gas_cache(self) -> None:
        await self._gas_cache.clear()
        logger.info("Gas cache cleared")

    async def sweep_gas_cache(self) -> int:
        return await self._gas_cache.sweep()

    def get_cache_stats(self) -> Dict[str, int]:
        return {"gas_cache": self._gas_cache.size()}
