"""Single-chain route execution."""

from .engine import ExecutionEngine, generate_execution_id, map_execution_status
from .models import (
    ExecutionConfig,
    ExecutionMonitor,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    GasSettings,
    PreparedTransaction,
)
from .tx_builder import TransactionBuilder

__all__ = [
    "ExecutionEngine",
    "generate_execution_id",
    "map_execution_status",
    "ExecutionConfig",
    "ExecutionMonitor",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionStatus",
    "GasSettings",
    "PreparedTransaction",
    "TransactionBuilder",
]
