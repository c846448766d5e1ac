"""Async client for the LI.FI aggregator REST API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import Settings, settings as default_settings
from ..core.errors import (
    ActionRequiredError,
    ConfigurationError,
    ExecutionFailure,
    UpstreamError,
    UpstreamRateLimitedError,
    UpstreamTransientError,
)
from ..core.quotes.models import QuoteRequest, QuoteStep, Token
from ..core.ratelimit import RateLimiter
from ..core.units import parse_quantity
from .base import (
    Aggregator,
    BridgeStatusInfo,
    ChainInfo,
    RouteExecution,
    RouteHooks,
    Signer,
    StepProgress,
    ToolsInfo,
)

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("retry-after")
    if not header:
        return None
    try:
        return float(header)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body)
    return str(body)


class LiFiProvider(Aggregator):
    """Thin wrapper around https://li.quest/v1 endpoints."""

    name = "lifi"

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout_s: Optional[int] = None,
        receipt_timeout_s: Optional[float] = None,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.config = config or default_settings
        self.base_url = (base_url or self.config.lifi_api_url).rstrip("/")
        self.timeout_s = timeout_s or self.config.request_timeout_seconds
        self.receipt_timeout_s = receipt_timeout_s or self.config.receipt_timeout_seconds
        self._transport = transport
        # Gates requests made mid-route; read endpoints are gated by their callers.
        self.rate_limiter = rate_limiter

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_s,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers=self.config.lifi_headers(),
                )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            message = _error_message(exc.response)
            if status == 429:
                raise UpstreamRateLimitedError(
                    f"LI.FI rate limit (429): {message}",
                    retry_after=_retry_after(exc.response),
                ) from exc
            raise UpstreamError(f"LI.FI {path} failed ({status}): {message}", status_code=status) from exc
        except httpx.TimeoutException as exc:
            raise UpstreamTransientError(f"LI.FI {path} timeout: {exc}", timeout=True) from exc
        except httpx.RequestError as exc:
            raise UpstreamTransientError(f"LI.FI {path} network error: {exc}") from exc

    # ------------------------------------------------------------------
    # Read endpoints
    # ------------------------------------------------------------------

    async def get_quote(self, request: QuoteRequest) -> QuoteStep:
        params: Dict[str, Any] = {
            "fromChain": request.from_chain,
            "toChain": request.to_chain,
            "fromToken": request.from_token,
            "toToken": request.to_token,
            "fromAmount": request.from_amount,
            "fromAddress": request.from_address,
            "toAddress": request.to_address or request.from_address,
            "integrator": request.integrator or self.config.lifi_integrator,
        }
        if request.slippage is not None:
            params["slippage"] = request.slippage
        for key, values in (
            ("allowBridges", request.allow_bridges),
            ("denyBridges", request.deny_bridges),
            ("allowExchanges", request.allow_exchanges),
            ("denyExchanges", request.deny_exchanges),
        ):
            if values:
                params[key] = ",".join(values)

        data = await self._request("GET", "/quote", params=params)
        return QuoteStep.model_validate(data)

    async def get_status(self, tx_hash: str, bridge: Optional[str] = None) -> BridgeStatusInfo:
        params = {"txHash": tx_hash}
        if bridge:
            params["bridge"] = bridge
        data = await self._request("GET", "/status", params=params)
        return BridgeStatusInfo.model_validate(data)

    async def get_chains(self) -> List[ChainInfo]:
        data = await self._request("GET", "/chains")
        return [ChainInfo.model_validate(c) for c in data.get("chains", [])]

    async def get_tokens(self, chain_id: int) -> List[Token]:
        data = await self._request("GET", "/tokens", params={"chains": chain_id})
        tokens = data.get("tokens", {}).get(str(chain_id), [])
        return [Token.model_validate(t) for t in tokens]

    async def get_tools(self) -> ToolsInfo:
        data = await self._request("GET", "/tools")
        return ToolsInfo.model_validate(data)

    async def get_step_transaction(self, step: QuoteStep) -> QuoteStep:
        """Ask LI.FI to populate ``transactionRequest`` for a step."""
        payload = step.model_dump(by_alias=True, exclude_none=True)
        data = await self._request("POST", "/advanced/stepTransaction", json=payload)
        return QuoteStep.model_validate(data)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_route(
        self,
        route: List[QuoteStep],
        signer: Signer,
        hooks: RouteHooks,
    ) -> RouteExecution:
        if not route:
            raise ConfigurationError("Route must contain at least one step")

        progress = [
            StepProgress(
                step_index=index,
                tool=step.tool,
                step_type=step.type,
                chain_id=step.action.from_chain_id if step.action else None,
            )
            for index, step in enumerate(route)
        ]
        await hooks.update_route(progress)

        for index, step in enumerate(route):
            state = progress[index]
            chain_id = step.action.from_chain_id if step.action else signer.chain_id

            if chain_id != signer.chain_id:
                state.status = "CHAIN_SWITCH_REQUIRED"
                await hooks.update_route(progress)
                signer = await hooks.switch_chain(chain_id)

            if step.transaction_request is None or not step.transaction_request.data:
                step = await self._refresh_step(step, state, progress, hooks)

            state.status = "STARTED"
            await hooks.update_route(progress)

            tx_hash = await signer.send_transaction(self._signer_tx(step, signer))
            state.tx_hash = tx_hash
            state.status = "PENDING"
            await hooks.update_route(progress)

            receipt = await signer.wait_for_receipt(tx_hash, self.receipt_timeout_s)
            if parse_quantity(receipt.get("status"), default=1) == 0:
                state.status = "FAILED"
                state.message = "Transaction reverted"
                await hooks.update_route(progress)
                raise ExecutionFailure(f"Transaction {tx_hash} reverted", tx_hash=tx_hash)

            state.status = "DONE"
            await hooks.update_route(progress)
            logger.info("Step %d (%s) confirmed: %s", index, step.tool, tx_hash)

        return RouteExecution(steps=progress)

    async def _refresh_step(
        self,
        step: QuoteStep,
        state: StepProgress,
        progress: List[StepProgress],
        hooks: RouteHooks,
    ) -> QuoteStep:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        fresh = await self.get_step_transaction(step)
        old = step.action.slippage if step.action else None
        new = fresh.action.slippage if fresh.action else None
        if old is not None and new is not None and new > old:
            accepted = await hooks.accept_exchange_rate_update(old, new)
            if not accepted:
                state.status = "ACTION_REQUIRED"
                state.message = f"Slippage increased from {old} to {new}"
                await hooks.update_route(progress)
                raise ActionRequiredError(state.message)
        if fresh.transaction_request is None or not fresh.transaction_request.data:
            raise ConfigurationError(f"No transaction data for step {step.id or step.tool}")
        return fresh

    @staticmethod
    def _signer_tx(step: QuoteStep, signer: Signer) -> Dict[str, Any]:
        request = step.transaction_request
        tx: Dict[str, Any] = {
            "from": signer.address,
            "to": request.to,
            "data": request.data,
            "value": parse_quantity(request.value, default=0),
            "chainId": request.chain_id or signer.chain_id,
        }
        for key, value in (
            ("gas", request.gas_limit),
            ("gasPrice", request.gas_price),
            ("maxFeePerGas", request.max_fee_per_gas),
            ("maxPriorityFeePerGas", request.max_priority_fee_per_gas),
        ):
            parsed = parse_quantity(value)
            if parsed is not None:
                tx[key] = parsed
        return tx
