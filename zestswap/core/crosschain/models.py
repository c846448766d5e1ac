"""
Cross-chain execution models.

A cross-chain execution is tracked on two axes: ``status`` (what is happening
now) and ``current_phase`` (how far along the pipeline it is). Phases only
move forward.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..execution.models import ExecutionStatus, GasSettings


class CrossChainStatus(str, Enum):
    INITIALIZING = "INITIALIZING"
    QUOTE_GENERATION = "QUOTE_GENERATION"
    SOURCE_EXECUTION = "SOURCE_EXECUTION"
    BRIDGING = "BRIDGING"
    DESTINATION_EXECUTION = "DESTINATION_EXECUTION"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (CrossChainStatus.COMPLETED, CrossChainStatus.FAILED, CrossChainStatus.CANCELLED)


class CrossChainPhase(str, Enum):
    PREPARATION = "PREPARATION"
    SOURCE_CHAIN = "SOURCE_CHAIN"
    BRIDGE = "BRIDGE"
    DESTINATION_CHAIN = "DESTINATION_CHAIN"
    FINALIZATION = "FINALIZATION"

    @property
    def order(self) -> int:
        return _PHASE_ORDER.index(self)

    @property
    def cancellable(self) -> bool:
        return self in (CrossChainPhase.PREPARATION, CrossChainPhase.SOURCE_CHAIN)


_PHASE_ORDER = list(CrossChainPhase)


class BridgeStatus(str, Enum):
    PENDING = "PENDING"
    INITIATED = "INITIATED"
    IN_PROGRESS = "IN_PROGRESS"
    CONFIRMING = "CONFIRMING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class BridgePreferences:
    preferred_bridges: Optional[List[str]] = None
    excluded_bridges: Optional[List[str]] = None
    max_bridge_slippage: Optional[float] = None


@dataclass
class ExecutionOptions:
    enable_fallback: bool = True
    max_wait_time: Optional[float] = None       # seconds; defaults to the bridge wait cap


@dataclass
class CrossChainExecutionRequest:
    from_chain: int
    to_chain: int
    from_token: str
    to_token: str
    from_amount: str
    from_address: str
    to_address: Optional[str] = None
    slippage_tolerance: Optional[float] = None
    gas: GasSettings = field(default_factory=GasSettings)
    bridge_preferences: BridgePreferences = field(default_factory=BridgePreferences)
    options: ExecutionOptions = field(default_factory=ExecutionOptions)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_cross_chain(self) -> bool:
        return self.from_chain != self.to_chain


@dataclass
class ChainTransaction:
    hash: str
    chain_id: int
    status: ExecutionStatus


@dataclass
class BridgeTransaction:
    hash: str
    source_chain_id: int
    target_chain_id: int
    status: ExecutionStatus
    bridge_name: str
    estimated_arrival: Optional[float] = None   # seconds
    actual_time: Optional[float] = None         # seconds


@dataclass
class FeeBreakdown:
    """Fee totals in USD."""
    gas: float = 0.0
    bridge: float = 0.0
    protocol: float = 0.0
    total: float = 0.0


@dataclass
class CrossChainExecutionResult:
    execution_id: str
    success: bool = False
    status: CrossChainStatus = CrossChainStatus.INITIALIZING
    source_transaction: Optional[ChainTransaction] = None
    bridge_transaction: Optional[BridgeTransaction] = None
    destination_transaction: Optional[ChainTransaction] = None
    total_execution_time: float = 0.0           # seconds
    final_amount: str = "0"
    fees: FeeBreakdown = field(default_factory=FeeBreakdown)
    error: Optional[str] = None
    tool: str = ""
    completed_at: float = field(default_factory=time.time)


@dataclass
class ChainLeg:
    chain_id: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    transaction_hash: Optional[str] = None


@dataclass
class BridgeLeg:
    name: str = ""
    status: BridgeStatus = BridgeStatus.PENDING
    started_at: Optional[float] = None
    estimated_time: Optional[float] = None      # seconds
    actual_time: Optional[float] = None         # seconds


@dataclass
class CrossChainMonitor:
    execution_id: str
    source_chain: ChainLeg
    destination_chain: ChainLeg
    bridge: BridgeLeg = field(default_factory=BridgeLeg)
    status: CrossChainStatus = CrossChainStatus.INITIALIZING
    current_phase: CrossChainPhase = CrossChainPhase.PREPARATION
    progress: float = 0.0
    last_update: float = field(default_factory=time.time)
    estimated_completion: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def enter(self, status: CrossChainStatus, phase: CrossChainPhase, progress: float) -> None:
        """Move to ``phase``. Phases never go backwards and terminal monitors are frozen."""
        if self.is_terminal:
            return
        if phase.order < self.current_phase.order:
            raise ValueError(f"Cannot move from {self.current_phase.value} back to {phase.value}")
        self.status = status
        self.current_phase = phase
        self.advance(progress)

    def advance(self, progress: float) -> None:
        if self.is_terminal:
            return
        self.progress = max(self.progress, min(100.0, progress))
        self.last_update = time.time()

    def finish(self, status: CrossChainStatus) -> bool:
        if self.is_terminal:
            return False
        self.status = status
        if status == CrossChainStatus.COMPLETED:
            self.progress = 100.0
        self.last_update = time.time()
        return True
