"""Quote acquisition, caching and comparison."""

from typing import TYPE_CHECKING

from .models import (
    ComparisonOptions,
    QuoteRequest,
    QuoteResponse,
    QuoteStep,
    QuoteType,
    RouteComparison,
    RouteValidationResult,
    SlippageConfig,
)

if TYPE_CHECKING:  # pragma: no cover
    from .manager import QuoteManager

__all__ = [
    "QuoteManager",
    "ComparisonOptions",
    "QuoteRequest",
    "QuoteResponse",
    "QuoteStep",
    "QuoteType",
    "RouteComparison",
    "RouteValidationResult",
    "SlippageConfig",
]


def __getattr__(name: str):  # pragma: no cover - simple thunk
    if name == "QuoteManager":
        from .manager import QuoteManager as _QuoteManager

        return _QuoteManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
