"""JSON-RPC chain reader for fee data and balances."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import settings
from ..core.errors import ConfigurationError, UpstreamError, UpstreamTransientError
from ..core.units import parse_quantity
from .base import ChainReader, FeeData

logger = logging.getLogger(__name__)

ERC20_BALANCE_OF_SELECTOR = "0x70a08231"
DEFAULT_PRIORITY_FEE = 1_000_000_000


class RpcChainReader(ChainReader):
    """Reads chain state over plain JSON-RPC."""

    def __init__(
        self,
        rpc_urls: Optional[Dict[int, str]] = None,
        *,
        timeout_s: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._rpc_urls = rpc_urls if rpc_urls is not None else dict(settings.rpc_urls)
        self._client = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def _rpc_call(self, chain_id: int, method: str, params: List[Any]) -> Any:
        rpc_url = self._rpc_urls.get(chain_id)
        if not rpc_url:
            raise ConfigurationError(f"No RPC URL configured for chain {chain_id}")

        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": 1,
        }

        try:
            response = await self._client.post(rpc_url, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise UpstreamTransientError(f"RPC {method} timeout on chain {chain_id}", timeout=True) from exc
        except httpx.RequestError as exc:
            raise UpstreamTransientError(f"RPC {method} network error on chain {chain_id}: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(
                f"RPC {method} failed on chain {chain_id}",
                status_code=exc.response.status_code,
            ) from exc

        result = response.json()
        if "error" in result:
            raise UpstreamError(f"RPC error: {result['error']}")

        return result.get("result")

    async def get_fee_data(self, chain_id: int) -> FeeData:
        fee_history = await self._rpc_call(chain_id, "eth_feeHistory", [1, "latest", [50]])

        base_fee = parse_quantity(fee_history["baseFeePerGas"][-1], default=0)
        reward = fee_history.get("reward") or []
        if reward and reward[0]:
            priority_fee = parse_quantity(reward[0][0], default=DEFAULT_PRIORITY_FEE)
        else:
            priority_fee = DEFAULT_PRIORITY_FEE

        return FeeData(base_fee=base_fee, priority_fee=priority_fee)

    async def get_native_balance(self, chain_id: int, address: str) -> int:
        result = await self._rpc_call(chain_id, "eth_getBalance", [address, "latest"])
        return parse_quantity(result, default=0)

    async def get_token_balance(self, chain_id: int, token: str, address: str) -> int:
        data = ERC20_BALANCE_OF_SELECTOR + address.lower().replace("0x", "").zfill(64)
        result = await self._rpc_call(chain_id, "eth_call", [{"to": token, "data": data}, "latest"])
        if not result or result == "0x":
            return 0
        return parse_quantity(result, default=0)
