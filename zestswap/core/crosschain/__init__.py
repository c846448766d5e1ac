"""Cross-chain orchestration components."""

from typing import TYPE_CHECKING

from .models import (
    BridgeStatus,
    CrossChainExecutionRequest,
    CrossChainExecutionResult,
    CrossChainMonitor,
    CrossChainPhase,
    CrossChainStatus,
)

if TYPE_CHECKING:  # pragma: no cover
    from .executor import CrossChainExecutor
    from .fallback import FallbackRoute, RetryConfig, RouteExecutor

__all__ = [
    "BridgeStatus",
    "CrossChainExecutionRequest",
    "CrossChainExecutionResult",
    "CrossChainMonitor",
    "CrossChainPhase",
    "CrossChainStatus",
    "CrossChainExecutor",
    "FallbackRoute",
    "RetryConfig",
    "RouteExecutor",
]


def __getattr__(name: str):  # pragma: no cover - simple thunk
    if name == "CrossChainExecutor":
        from .executor import CrossChainExecutor as _CrossChainExecutor

        return _CrossChainExecutor
    if name in ("FallbackRoute", "RetryConfig", "RouteExecutor"):
        from . import fallback

        return getattr(fallback, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
