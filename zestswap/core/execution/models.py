"""
Transaction execution models and types.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ...config import Settings, settings as default_settings
from ..quotes.models import QuoteResponse


class ExecutionStatus(str, Enum):
    """Execution lifecycle status."""
    PENDING = "PENDING"
    STARTED = "STARTED"
    ACTION_REQUIRED = "ACTION_REQUIRED"
    CHAIN_SWITCH_REQUIRED = "CHAIN_SWITCH_REQUIRED"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    EXECUTING = "EXECUTING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.DONE, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class StepType(str, Enum):
    APPROVAL = "approval"
    SWAP = "swap"
    BRIDGE = "bridge"
    CROSS_CHAIN = "cross-chain"


class TransactionType(str, Enum):
    APPROVE = "approve"
    ROUTE = "route"


@dataclass
class GasSettings:
    """Optional caller overrides, in wei."""
    gas_price: Optional[int] = None
    gas_limit: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None


@dataclass
class TransactionBuildRequest:
    quote: Optional[QuoteResponse]
    from_address: str
    to_address: Optional[str] = None
    gas: GasSettings = field(default_factory=GasSettings)
    nonce: Optional[int] = None
    allow_infinite_approval: bool = False
    slippage_tolerance: Optional[float] = None


@dataclass
class PreparedTransaction:
    """A transaction ready to be signed and broadcast."""
    to: str
    data: str
    chain_id: int
    value: int = 0
    gas_limit: int = 21000
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    nonce: Optional[int] = None
    from_address: Optional[str] = None
    tx_type: TransactionType = TransactionType.ROUTE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-RPC style dict for signing."""
        tx: Dict[str, Any] = {
            "to": self.to,
            "data": self.data,
            "value": hex(self.value),
            "chainId": hex(self.chain_id),
            "gas": hex(self.gas_limit),
        }
        if self.from_address:
            tx["from"] = self.from_address
        if self.nonce is not None:
            tx["nonce"] = hex(self.nonce)
        if self.max_fee_per_gas is not None:
            tx["maxFeePerGas"] = hex(self.max_fee_per_gas)
            tx["maxPriorityFeePerGas"] = hex(self.max_priority_fee_per_gas or 0)
        elif self.gas_price is not None:
            tx["gasPrice"] = hex(self.gas_price)
        return tx


@dataclass
class GasTier:
    gas_price: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    estimated_time: int                         # seconds


@dataclass
class NetworkFees:
    base_fee: int
    priority_fee: int
    network_congestion: str                     # low | medium | high


@dataclass
class GasOptimization:
    slow: GasTier
    recommended: GasTier
    fast: GasTier
    current: NetworkFees
    is_fallback: bool = False


@dataclass
class FeeEstimate:
    gas_limit: int
    gas_price: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    total_fee: int                              # wei


@dataclass
class ValidationChecks:
    balance_sufficient: bool = False
    gas_estimate_valid: bool = False
    approval_required: bool = False
    slippage_acceptable: bool = False
    route_still_valid: bool = False


@dataclass
class TransactionValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    checks: ValidationChecks = field(default_factory=ValidationChecks)


@dataclass
class ExecutionConfig:
    max_retries: int = 3
    retry_delay: float = 5.0                    # seconds
    timeout: float = 1800.0                     # seconds
    max_slippage_increase: float = 0.02
    enable_fallback: bool = True
    retryable_errors: Optional[List[str]] = None  # None retries everything but validation/config

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "ExecutionConfig":
        config = config or default_settings
        return cls(
            max_retries=config.execution_max_retries,
            retry_delay=config.execution_retry_delay_seconds,
            timeout=config.execution_timeout_seconds,
            max_slippage_increase=config.max_slippage_increase,
        )


@dataclass
class ExecutionRequest:
    quote: QuoteResponse
    from_address: str
    to_address: Optional[str] = None
    gas: GasSettings = field(default_factory=GasSettings)
    slippage_tolerance: Optional[float] = None
    allow_infinite_approval: bool = False
    skip_validation: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionStep:
    step_id: str
    type: StepType
    status: ExecutionStatus = ExecutionStatus.PENDING
    transaction_hash: Optional[str] = None
    error: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    retry_count: int = 0
    tool: str = ""


@dataclass
class ExecutionResult:
    execution_id: str
    success: bool
    status: ExecutionStatus
    transaction_hash: Optional[str] = None
    error: Optional[str] = None
    execution_time: float = 0.0                 # seconds
    steps: List[ExecutionStep] = field(default_factory=list)
    retry_count: int = 0
    completed_at: float = field(default_factory=time.time)
    request: Optional[ExecutionRequest] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionMonitor:
    """Live progress for one in-flight execution.

    Progress never decreases and the terminal status is set at most once.
    """
    execution_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    progress: float = 0.0
    current_step: int = 0
    total_steps: int = 1
    estimated_time_remaining: float = 0.0       # seconds
    last_update: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def set_status(self, status: ExecutionStatus) -> bool:
        if self.is_terminal:
            return False
        self.status = status
        self.last_update = time.time()
        return True

    def advance(self, progress: float) -> None:
        if self.is_terminal:
            return
        self.progress = max(self.progress, min(100.0, progress))
        self.last_update = time.time()
