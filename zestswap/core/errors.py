"""
Error taxonomy for quoting and execution.

Errors are split into recoverable (retried by the rate-limit wrapper or the
fallback layer) and unrecoverable (surfaced to the caller immediately).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional


class ErrorCategory(str, Enum):
    """Categories of errors for retry decisions."""

    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UPSTREAM = "upstream"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    TRANSACTION_REVERTED = "transaction_reverted"
    SLIPPAGE = "slippage"
    BRIDGE = "bridge"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


DEFAULT_RETRYABLE_ERRORS = ("network", "timeout", "gas", "nonce")


@dataclass
class ErrorContext:
    """Additional context about an error."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    recoverable: bool = True
    retry_after_seconds: Optional[float] = None
    suggested_action: Optional[str] = None
    chain_id: Optional[int] = None
    tx_hash: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class RecoverableError(Exception):
    """Base class for transient errors that may succeed on retry."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        retry_after: Optional[float] = None,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.retry_after = retry_after
        self.context = context or ErrorContext(
            category=category,
            recoverable=True,
            retry_after_seconds=retry_after,
        )


class UnrecoverableError(Exception):
    """Base class for errors that must not be retried automatically."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext(category=category, recoverable=False)


class ValidationError(UnrecoverableError):
    """Bad input: unsupported chain or token, non-positive amount, invalid route."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            context=ErrorContext(
                category=ErrorCategory.VALIDATION,
                recoverable=False,
                suggested_action="Fix the request parameters",
                details=details or {},
            ),
        )


class ConfigurationError(UnrecoverableError):
    """A quote or request is missing a field execution cannot do without."""

    def __init__(self, message: str):
        super().__init__(message, category=ErrorCategory.CONFIGURATION)


class UpstreamRateLimitedError(RecoverableError):
    """The aggregator answered 429."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.RATE_LIMIT,
            retry_after=retry_after,
            context=ErrorContext(
                category=ErrorCategory.RATE_LIMIT,
                recoverable=True,
                retry_after_seconds=retry_after,
                suggested_action="Try again later",
            ),
        )


class UpstreamTransientError(RecoverableError):
    """Network failure or timeout talking to the aggregator or an RPC node."""

    def __init__(self, message: str = "Network error", timeout: bool = False):
        category = ErrorCategory.TIMEOUT if timeout else ErrorCategory.NETWORK
        super().__init__(message, category=category)


class UpstreamError(UnrecoverableError):
    """Non-retryable HTTP error from the aggregator."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(
            message,
            category=ErrorCategory.UPSTREAM,
            context=ErrorContext(
                category=ErrorCategory.UPSTREAM,
                recoverable=False,
                details={"status_code": status_code} if status_code else {},
            ),
        )
        self.status_code = status_code


class ExecutionFailure(UnrecoverableError):
    """
    An execution ended FAILED.

    ``result`` carries whatever progress was made before the failure so
    already-broadcast legs can be reconciled by hand.
    """

    def __init__(
        self,
        message: str,
        result: Any = None,
        category: ErrorCategory = ErrorCategory.TRANSACTION_REVERTED,
        tx_hash: Optional[str] = None,
    ):
        super().__init__(
            message,
            category=category,
            context=ErrorContext(category=category, recoverable=False, tx_hash=tx_hash),
        )
        self.result = result


class BridgeTimeoutError(ExecutionFailure):
    def __init__(self, message: str = "Bridge execution timeout", tx_hash: Optional[str] = None):
        super().__init__(message, category=ErrorCategory.BRIDGE, tx_hash=tx_hash)


class BridgeFailedError(ExecutionFailure):
    def __init__(self, message: str = "Bridge execution failed", tx_hash: Optional[str] = None):
        super().__init__(message, category=ErrorCategory.BRIDGE, tx_hash=tx_hash)


class ActionRequiredError(ExecutionFailure):
    """A slippage update exceeded the auto-accept threshold."""

    def __init__(self, message: str = "Slippage increase requires user approval"):
        super().__init__(message, category=ErrorCategory.SLIPPAGE)


_PATTERNS = (
    (ErrorCategory.RATE_LIMIT, True, ("rate limit", "too many requests", "429", "throttl")),
    (ErrorCategory.TIMEOUT, True, ("timeout", "timed out", "deadline")),
    (ErrorCategory.NETWORK, True, ("network", "connection", "unreachable", "refused", "socket")),
    (ErrorCategory.INSUFFICIENT_FUNDS, False, ("insufficient", "not enough", "exceeds balance")),
    (ErrorCategory.TRANSACTION_REVERTED, False, ("revert", "transaction failed", "out of gas")),
    (ErrorCategory.SLIPPAGE, True, ("slippage", "price impact", "price changed")),
)


def classify_error(error: Exception) -> ErrorContext:
    """Classify an exception by type first, then by message patterns."""
    if isinstance(error, (RecoverableError, UnrecoverableError)):
        return error.context

    message = str(error).lower()
    for category, recoverable, patterns in _PATTERNS:
        if any(p in message for p in patterns):
            return ErrorContext(category=category, recoverable=recoverable)

    return ErrorContext(category=ErrorCategory.UNKNOWN, recoverable=True)


def is_rate_limit_error(error: Exception) -> bool:
    if isinstance(error, UpstreamRateLimitedError):
        return True
    message = str(error).lower()
    return "429" in message or "rate limit" in message


def is_transient_error(error: Exception) -> bool:
    if isinstance(error, UpstreamTransientError):
        return True
    message = str(error).lower()
    return "network" in message or "timeout" in message


def is_retryable_error(message: str, allow_list: Optional[Iterable[str]] = None) -> bool:
    """True when ``message`` contains any allow-listed substring (case-insensitive)."""
    lowered = (message or "").lower()
    patterns = DEFAULT_RETRYABLE_ERRORS if allow_list is None else allow_list
    return any(p.lower() in lowered for p in patterns)
