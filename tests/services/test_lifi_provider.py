"""
Tests for the LI.FI provider

HTTP is served by ``httpx.MockTransport`` so request shapes and error mapping
are checked without the network.
"""

from typing import List

import httpx
import pytest

from fakes import ADDRESS, ROUTER, SOURCE_TX, USDC_ETH, USDT_MANTLE, FakeSigner, build_step, fast_rate_limiter
from zestswap.config import Settings
from zestswap.core.errors import (
    ActionRequiredError,
    ConfigurationError,
    ErrorCategory,
    ExecutionFailure,
    UpstreamError,
    UpstreamRateLimitedError,
    UpstreamTransientError,
)
from zestswap.core.quotes.models import QuoteRequest
from zestswap.providers.base import RouteHooks, StepProgress
from zestswap.providers.lifi import LiFiProvider


def _provider(handler, **settings) -> LiFiProvider:
    config = Settings(_env_file=None, **settings)
    return LiFiProvider(config=config, transport=httpx.MockTransport(handler))


def _quote_request(**kwargs) -> QuoteRequest:
    params = dict(
        from_chain=1,
        to_chain=5000,
        from_token=USDC_ETH,
        to_token=USDT_MANTLE,
        from_amount="1000000",
        from_address=ADDRESS,
    )
    params.update(kwargs)
    return QuoteRequest(**params)


def _step_payload(**kwargs):
    return build_step(**kwargs).model_dump(mode="json", by_alias=True, exclude_none=True)


class RecordingHooks:
    """Hooks that record every progress snapshot."""

    def __init__(self, accept: bool = True):
        self.snapshots: List[List[str]] = []
        self.switches: List[int] = []
        self.rate_updates: List[tuple] = []
        self.accept = accept

    async def update_route(self, progress: List[StepProgress]) -> None:
        self.snapshots.append([p.status for p in progress])

    async def switch_chain(self, chain_id: int):
        self.switches.append(chain_id)
        return FakeSigner(ADDRESS, chain_id)

    async def accept_exchange_rate_update(self, old: float, new: float) -> bool:
        self.rate_updates.append((old, new))
        return self.accept

    def as_hooks(self) -> RouteHooks:
        return RouteHooks(
            update_route=self.update_route,
            switch_chain=self.switch_chain,
            accept_exchange_rate_update=self.accept_exchange_rate_update,
        )


# =============================================================================
# Read endpoints
# =============================================================================

class TestReadEndpoints:

    @pytest.mark.asyncio
    async def test_quote_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["headers"] = request.headers
            return httpx.Response(200, json=_step_payload())

        provider = _provider(handler, lifi_api_key="secret", lifi_integrator="zest-test")
        step = await provider.get_quote(
            _quote_request(slippage=0.01, allow_bridges=["stargate", "hop"], deny_bridges=["across"])
        )

        assert step.tool == "stargate"
        assert step.transaction_request.to == ROUTER
        assert seen["path"] == "/v1/quote"
        assert seen["params"]["fromChain"] == "1"
        assert seen["params"]["toAddress"] == ADDRESS
        assert seen["params"]["integrator"] == "zest-test"
        assert seen["params"]["slippage"] == "0.01"
        assert seen["params"]["allowBridges"] == "stargate,hop"
        assert seen["params"]["denyBridges"] == "across"
        assert "allowExchanges" not in seen["params"]
        assert seen["headers"]["x-lifi-api-key"] == "secret"
        assert seen["headers"]["x-lifi-integrator"] == "zest-test"

    @pytest.mark.asyncio
    async def test_status_and_tokens(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/status"):
                assert request.url.params["bridge"] == "stargate"
                return httpx.Response(
                    200,
                    json={
                        "status": "DONE",
                        "substatus": "COMPLETED",
                        "receiving": {"txHash": "0xdest", "chainId": 5000, "amount": "4985000"},
                    },
                )
            if request.url.path.endswith("/tokens"):
                return httpx.Response(
                    200,
                    json={"tokens": {"1": [{"address": USDC_ETH, "chainId": 1, "symbol": "USDC", "decimals": 6}]}},
                )
            if request.url.path.endswith("/chains"):
                return httpx.Response(200, json={"chains": [{"id": 5000, "key": "mnt", "name": "Mantle"}]})
            return httpx.Response(200, json={"bridges": [{"key": "hop", "name": "Hop"}], "exchanges": []})

        provider = _provider(handler)

        status = await provider.get_status(SOURCE_TX, "stargate")
        assert status.status == "DONE"
        assert status.receiving.tx_hash == "0xdest"
        assert status.receiving.amount == "4985000"

        tokens = await provider.get_tokens(1)
        assert [t.symbol for t in tokens] == ["USDC"]
        assert tokens[0].decimals == 6

        chains = await provider.get_chains()
        assert chains[0].id == 5000

        tools = await provider.get_tools()
        assert tools.bridges[0].key == "hop"


# =============================================================================
# Error mapping
# =============================================================================

class TestErrorMapping:

    @pytest.mark.asyncio
    async def test_rate_limit(self):
        def handler(request):
            return httpx.Response(429, headers={"retry-after": "12"}, json={"message": "slow down"})

        with pytest.raises(UpstreamRateLimitedError) as exc_info:
            await _provider(handler).get_quote(_quote_request())

        assert exc_info.value.retry_after == 12
        assert "slow down" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_server_error(self):
        def handler(request):
            return httpx.Response(500, text="internal")

        with pytest.raises(UpstreamError) as exc_info:
            await _provider(handler).get_tools()

        assert exc_info.value.status_code == 500
        assert "internal" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UpstreamTransientError) as exc_info:
            await _provider(handler).get_chains()

        assert exc_info.value.category == ErrorCategory.NETWORK

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(UpstreamTransientError) as exc_info:
            await _provider(handler).get_status(SOURCE_TX)

        assert exc_info.value.category == ErrorCategory.TIMEOUT


# =============================================================================
# Route execution
# =============================================================================

class TestExecuteRoute:

    def _offline(self):
        def handler(request):
            raise AssertionError(f"unexpected request to {request.url}")

        return _provider(handler)

    @pytest.mark.asyncio
    async def test_single_step_success(self):
        signer = FakeSigner(ADDRESS, 1)
        hooks = RecordingHooks()

        execution = await self._offline().execute_route([build_step()], signer, hooks.as_hooks())

        assert execution.source_tx_hash == "0x" + "01" * 32
        assert hooks.snapshots == [["NOT_STARTED"], ["STARTED"], ["PENDING"], ["DONE"]]
        sent = signer.sent[0]
        assert sent["to"] == ROUTER
        assert sent["from"] == ADDRESS
        assert sent["value"] == 0
        assert sent["gas"] == 250000
        assert sent["gasPrice"] == 20 * 10**9

    @pytest.mark.asyncio
    async def test_chain_switch(self):
        hooks = RecordingHooks()

        execution = await self._offline().execute_route(
            [build_step(from_chain=137)], FakeSigner(ADDRESS, 1), hooks.as_hooks()
        )

        assert hooks.switches == [137]
        assert ["CHAIN_SWITCH_REQUIRED"] in hooks.snapshots
        assert execution.steps[0].status == "DONE"

    @pytest.mark.asyncio
    async def test_reverted_receipt(self):
        hooks = RecordingHooks()

        with pytest.raises(ExecutionFailure, match="reverted"):
            await self._offline().execute_route(
                [build_step()], FakeSigner(ADDRESS, 1, receipt_status="0x0"), hooks.as_hooks()
            )

        assert hooks.snapshots[-1] == ["FAILED"]

    @pytest.mark.asyncio
    async def test_empty_route(self):
        with pytest.raises(ConfigurationError):
            await self._offline().execute_route([], FakeSigner(), RecordingHooks().as_hooks())

    @pytest.mark.asyncio
    async def test_missing_call_data_is_refreshed(self):
        def handler(request):
            assert request.method == "POST"
            assert request.url.path.endswith("/advanced/stepTransaction")
            return httpx.Response(200, json=_step_payload(slippage=0.006))

        hooks = RecordingHooks()
        signer = FakeSigner(ADDRESS, 1)

        await _provider(handler).execute_route([build_step(with_tx=False)], signer, hooks.as_hooks())

        assert hooks.rate_updates == [(0.005, 0.006)]
        assert signer.sent[0]["data"] == "0xdeadbeef"

    @pytest.mark.asyncio
    async def test_step_refresh_takes_a_rate_limit_token(self, monkeypatch):
        def handler(request):
            return httpx.Response(200, json=_step_payload())

        limiter = fast_rate_limiter()
        acquired = []
        original = limiter.acquire

        async def counting_acquire():
            acquired.append(1)
            await original()

        monkeypatch.setattr(limiter, "acquire", counting_acquire)
        provider = _provider(handler)
        provider.rate_limiter = limiter

        await provider.execute_route([build_step(with_tx=False)], FakeSigner(ADDRESS, 1), RecordingHooks().as_hooks())

        assert len(acquired) == 1

    @pytest.mark.asyncio
    async def test_rejected_slippage_increase(self):
        def handler(request):
            return httpx.Response(200, json=_step_payload(slippage=0.05))

        hooks = RecordingHooks(accept=False)
        signer = FakeSigner(ADDRESS, 1)

        with pytest.raises(ActionRequiredError):
            await _provider(handler).execute_route([build_step(with_tx=False)], signer, hooks.as_hooks())

        assert signer.sent == []
        assert hooks.snapshots[-1] == ["ACTION_REQUIRED"]
