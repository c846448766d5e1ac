"""Contracts for the external collaborators the orchestration core depends on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.quotes.models import QuoteRequest, QuoteStep, Token


class _UpstreamModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ChainInfo(_UpstreamModel):
    id: int
    key: str = ""
    name: str = ""
    coin: str = ""
    mainnet: bool = True


class ToolInfo(_UpstreamModel):
    key: str
    name: str = ""
    supported_chains: List[Any] = Field(default_factory=list, alias="supportedChains")


class ToolsInfo(_UpstreamModel):
    bridges: List[ToolInfo] = Field(default_factory=list)
    exchanges: List[ToolInfo] = Field(default_factory=list)


class TransferLeg(_UpstreamModel):
    tx_hash: Optional[str] = Field(None, alias="txHash")
    chain_id: Optional[int] = Field(None, alias="chainId")
    amount: Optional[str] = None
    token: Optional[Token] = None


class BridgeStatusInfo(_UpstreamModel):
    """Aggregator transfer status (NOT_FOUND, INVALID, PENDING, DONE, FAILED)."""

    status: str = "NOT_FOUND"
    substatus: Optional[str] = None
    substatus_message: Optional[str] = Field(None, alias="substatusMessage")
    tool: Optional[str] = None
    sending: Optional[TransferLeg] = None
    receiving: Optional[TransferLeg] = None


@dataclass
class FeeData:
    """Current EIP-1559 fee data for a chain, in wei."""

    base_fee: int
    priority_fee: int


@dataclass
class StepProgress:
    """Execution state of one route step as reported by the aggregator."""

    step_index: int
    status: str = "NOT_STARTED"
    tool: str = ""
    step_type: str = "swap"
    tx_hash: Optional[str] = None
    chain_id: Optional[int] = None
    message: Optional[str] = None


@dataclass
class RouteExecution:
    steps: List[StepProgress] = field(default_factory=list)

    @property
    def source_tx_hash(self) -> Optional[str]:
        for step in self.steps:
            if step.tx_hash:
                return step.tx_hash
        return None

    @property
    def final_tx_hash(self) -> Optional[str]:
        for step in reversed(self.steps):
            if step.tx_hash:
                return step.tx_hash
        return None


class Signer(ABC):
    """A wallet able to send transactions on one chain. Never exposes key material."""

    @property
    @abstractmethod
    def address(self) -> str:
        pass

    @property
    @abstractmethod
    def chain_id(self) -> int:
        pass

    @abstractmethod
    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        """Sign and broadcast; returns the transaction hash."""
        pass

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict[str, Any]:
        """Wait for inclusion; the receipt carries ``status`` and ``blockNumber``."""
        pass


class SignerProvider(ABC):
    @abstractmethod
    async def get_signer(self, address: str, chain_id: Optional[int] = None) -> Signer:
        """Return a signer for ``address`` that is ready on ``chain_id``."""
        pass


@dataclass
class RouteHooks:
    """Callbacks supplied to ``Aggregator.execute_route``.

    ``switch_chain`` resolves only once a signer for the target chain is
    ready. ``accept_exchange_rate_update`` gates continuation: False stops
    the route.
    """

    update_route: Callable[[List[StepProgress]], Awaitable[None]]
    switch_chain: Callable[[int], Awaitable[Signer]]
    accept_exchange_rate_update: Callable[[float, float], Awaitable[bool]]


class Aggregator(ABC):
    """Upstream quoting and execution capability."""

    name: str = "aggregator"

    @abstractmethod
    async def get_quote(self, request: QuoteRequest) -> QuoteStep:
        pass

    @abstractmethod
    async def execute_route(
        self,
        route: List[QuoteStep],
        signer: Signer,
        hooks: RouteHooks,
    ) -> RouteExecution:
        pass

    @abstractmethod
    async def get_status(self, tx_hash: str, bridge: Optional[str] = None) -> BridgeStatusInfo:
        pass

    @abstractmethod
    async def get_chains(self) -> List[ChainInfo]:
        pass

    @abstractmethod
    async def get_tokens(self, chain_id: int) -> List[Token]:
        pass

    @abstractmethod
    async def get_tools(self) -> ToolsInfo:
        pass


class ChainReader(ABC):
    """Read-only chain access used for gas pricing and balance checks."""

    @abstractmethod
    async def get_fee_data(self, chain_id: int) -> FeeData:
        pass

    @abstractmethod
    async def get_native_balance(self, chain_id: int, address: str) -> int:
        pass

    @abstractmethod
    async def get_token_balance(self, chain_id: int, token: str, address: str) -> int:
        pass


class HistoryStore(ABC):
    """Append-only transaction history keyed by execution id. Writes are fire-and-forget."""

    @abstractmethod
    async def save(self, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def update_status(self, record_id: str, status: str, fields: Optional[Dict[str, Any]] = None) -> None:
        pass

    @abstractmethod
    async def update_hash(self, record_id: str, tx_hash: str, block_number: Optional[int] = None) -> None:
        pass
