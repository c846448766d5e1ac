"""
Quote Data Models

Typed shapes for aggregator quotes. Upstream payloads are parsed into these
at the provider boundary; unknown upstream fields are preserved as extras.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

NumberLike = Union[str, int, float]


def _to_float(value: Optional[NumberLike]) -> float:
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class _UpstreamModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class QuoteType(str, Enum):
    SAME_CHAIN = "same-chain"
    CROSS_CHAIN = "cross-chain"


class Token(_UpstreamModel):
    address: str = Field(..., description="Token contract address (zero address for native)")
    chain_id: int = Field(0, alias="chainId")
    symbol: str = ""
    decimals: int = 18
    name: str = ""
    logo_uri: Optional[str] = Field(None, alias="logoURI")
    price_usd: Optional[str] = Field(None, alias="priceUSD")


class QuoteAction(_UpstreamModel):
    from_chain_id: int = Field(..., alias="fromChainId")
    to_chain_id: int = Field(..., alias="toChainId")
    from_token: Token = Field(..., alias="fromToken")
    to_token: Token = Field(..., alias="toToken")
    from_amount: str = Field("0", alias="fromAmount")
    slippage: Optional[float] = None
    from_address: Optional[str] = Field(None, alias="fromAddress")
    to_address: Optional[str] = Field(None, alias="toAddress")


class FeeCost(_UpstreamModel):
    name: str = ""
    description: str = ""
    percentage: Optional[str] = None
    token: Optional[Token] = None
    amount: str = "0"
    amount_usd: Optional[str] = Field(None, alias="amountUSD")
    included: bool = False

    @property
    def usd(self) -> float:
        return _to_float(self.amount_usd)


class GasCost(_UpstreamModel):
    type: str = ""
    price: Optional[str] = None
    estimate: Optional[str] = None
    limit: Optional[str] = None
    amount: str = "0"
    amount_usd: Optional[str] = Field(None, alias="amountUSD")
    token: Optional[Token] = None


class QuoteEstimate(_UpstreamModel):
    from_amount: str = Field("0", alias="fromAmount")
    to_amount: str = Field("0", alias="toAmount")
    to_amount_min: str = Field("0", alias="toAmountMin")
    approval_address: Optional[str] = Field(None, alias="approvalAddress")
    execution_duration: float = Field(0, alias="executionDuration")
    fee_costs: List[FeeCost] = Field(default_factory=list, alias="feeCosts")
    gas_costs: List[GasCost] = Field(default_factory=list, alias="gasCosts")

    @property
    def gas_cost_usd(self) -> float:
        return sum(_to_float(cost.amount_usd) for cost in self.gas_costs)


class TransactionRequest(_UpstreamModel):
    """Call data produced by the aggregator. Numeric fields may be hex or decimal."""

    to: Optional[str] = None
    data: Optional[str] = None
    value: Optional[NumberLike] = None
    from_address: Optional[str] = Field(None, alias="from")
    chain_id: Optional[int] = Field(None, alias="chainId")
    gas_limit: Optional[NumberLike] = Field(None, alias="gasLimit")
    gas_price: Optional[NumberLike] = Field(None, alias="gasPrice")
    max_fee_per_gas: Optional[NumberLike] = Field(None, alias="maxFeePerGas")
    max_priority_fee_per_gas: Optional[NumberLike] = Field(None, alias="maxPriorityFeePerGas")


class QuoteStep(_UpstreamModel):
    """One step as returned by the aggregator (also the raw /quote response)."""

    id: str = ""
    type: str = "swap"
    tool: str = ""
    tool_details: Dict[str, Any] = Field(default_factory=dict, alias="toolDetails")
    action: Optional[QuoteAction] = None
    estimate: Optional[QuoteEstimate] = None
    included_steps: List["QuoteStep"] = Field(default_factory=list, alias="includedSteps")
    transaction_request: Optional[TransactionRequest] = Field(None, alias="transactionRequest")


class QuoteRequest(_UpstreamModel):
    from_chain: int = Field(..., alias="fromChain")
    to_chain: int = Field(..., alias="toChain")
    from_token: str = Field(..., alias="fromToken")
    to_token: str = Field(..., alias="toToken")
    from_amount: str = Field(..., alias="fromAmount")
    from_address: str = Field("", alias="fromAddress")
    to_address: Optional[str] = Field(None, alias="toAddress")
    slippage: Optional[float] = None
    allow_bridges: Optional[List[str]] = Field(None, alias="allowBridges")
    deny_bridges: Optional[List[str]] = Field(None, alias="denyBridges")
    allow_exchanges: Optional[List[str]] = Field(None, alias="allowExchanges")
    deny_exchanges: Optional[List[str]] = Field(None, alias="denyExchanges")
    preferred_tools: Optional[List[str]] = Field(None, alias="preferredTools")
    integrator: Optional[str] = None

    @property
    def is_cross_chain(self) -> bool:
        return self.from_chain != self.to_chain


class QuoteResponse(_UpstreamModel):
    """A processed quote: addresses repaired, tagged, and stamped with an id."""

    id: str
    type: QuoteType
    tool: str = ""
    tool_details: Dict[str, Any] = Field(default_factory=dict, alias="toolDetails")
    action: Optional[QuoteAction] = None
    estimate: Optional[QuoteEstimate] = None
    included_steps: List[QuoteStep] = Field(default_factory=list, alias="includedSteps")
    transaction_request: Optional[TransactionRequest] = Field(None, alias="transactionRequest")
    tags: List[str] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time, alias="createdAt")

    @property
    def is_cross_chain(self) -> bool:
        return self.type == QuoteType.CROSS_CHAIN

    @property
    def to_amount(self) -> float:
        return _to_float(self.estimate.to_amount) if self.estimate else 0.0

    @property
    def execution_duration(self) -> float:
        return self.estimate.execution_duration if self.estimate else 0.0

    @property
    def gas_cost_usd(self) -> float:
        return self.estimate.gas_cost_usd if self.estimate else 0.0

    def age_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created_at

    def as_step(self) -> QuoteStep:
        """The whole quote viewed as a single executable step."""
        return QuoteStep(
            id=self.id,
            type="cross" if self.is_cross_chain else "swap",
            tool=self.tool,
            tool_details=self.tool_details,
            action=self.action,
            estimate=self.estimate,
            transaction_request=self.transaction_request,
        )


class ComparisonMetrics(BaseModel):
    total_quotes: int
    average_output: str
    average_time: float
    average_cost: str


class RouteComparison(BaseModel):
    quotes: List[QuoteResponse]
    best_quote: QuoteResponse
    by_output: QuoteResponse
    by_speed: QuoteResponse
    by_cost: QuoteResponse
    by_reliability: QuoteResponse
    metrics: ComparisonMetrics


class GasEstimateSummary(BaseModel):
    estimated: str
    limit: str
    price: str


class RouteValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    gas_estimate: Optional[GasEstimateSummary] = None


class SlippageConfig(BaseModel):
    default: float = 0.005
    minimum: float = 0.001
    maximum: float = 0.05
    auto: bool = True
    volatility_adjustment: bool = True


class ComparisonOptions(BaseModel):
    include_alternative_routes: bool = True
    max_quotes: int = Field(5, ge=1)
    preferred_tools: Optional[List[str]] = None


QuoteStep.model_rebuild()
