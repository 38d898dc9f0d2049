from __future__ import annotations

import json

import httpx
import pytest
import respx
from conftest import DEFILLAMA_URL, GATEWAY_URL, tool_response

from destaker.clients.ai_gateway import AIGatewayClient, extract_tool_arguments
from destaker.clients.defillama import fetch_pools, parse_pools
from destaker.clients.ethereum import get_block_number
from destaker.exceptions import (
    ClassifierQuotaExceeded,
    ClassifierRateLimited,
    ClassifierTimeout,
    ClassifierUnavailable,
    MalformedClassifierResponse,
    UpstreamFetchError,
)
from destaker.http import HttpClient
from destaker.models import Outcome


class TestParsePools:
    def test_upstream_keys_are_mapped(self, llama_payload) -> None:
        pools = parse_pools(llama_payload)
        lido = pools[0]
        assert lido.pool_id == "747c1d2a-c668-4682-b9f9-296708a3dd90"
        assert lido.tvl_usd == 2.1e10
        assert lido.apy_mean_30d == 3.05
        assert lido.il_risk == "no"
        assert pools[2].stablecoin is True

    def test_bad_entries_are_skipped(self) -> None:
        pools = parse_pools({"data": [{"symbol": "NOID"}, "junk", {"pool": "ok", "symbol": "RETH"}]})
        assert [p.pool_id for p in pools] == ["ok"]

    def test_bad_fields_degrade_to_none(self) -> None:
        (pool,) = parse_pools(
            {
                "data": [
                    {
                        "pool": "x",
                        "symbol": {"nested": True},
                        "apy": float("nan"),
                        "tvlUsd": "lots",
                        "apyBase": True,
                        "stablecoin": "yes",
                    }
                ]
            }
        )
        assert pool.symbol is None
        assert pool.apy is None
        assert pool.tvl_usd is None
        assert pool.apy_base is None
        assert pool.stablecoin is False

    @pytest.mark.parametrize("payload", [None, [], {"status": "success"}, {"data": "nope"}])
    def test_missing_data_list_is_an_upstream_error(self, payload) -> None:
        with pytest.raises(UpstreamFetchError):
            parse_pools(payload)


class TestFetchPools:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetches_and_parses(self, llama_payload) -> None:
        respx.get(DEFILLAMA_URL).mock(return_value=httpx.Response(200, json=llama_payload))
        pools = await fetch_pools(HttpClient(max_attempts=1), DEFILLAMA_URL)
        assert len(pools) == 4

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_raises_after_retries(self) -> None:
        route = respx.get(DEFILLAMA_URL).mock(return_value=httpx.Response(503))
        with pytest.raises(UpstreamFetchError):
            await fetch_pools(HttpClient(max_attempts=2, backoff=0), DEFILLAMA_URL)
        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_transient_error_is_retried(self, llama_payload) -> None:
        respx.get(DEFILLAMA_URL).mock(
            side_effect=[httpx.Response(502), httpx.Response(200, json=llama_payload)]
        )
        pools = await fetch_pools(HttpClient(max_attempts=2, backoff=0), DEFILLAMA_URL)
        assert len(pools) == 4

    @pytest.mark.asyncio
    @respx.mock
    async def test_client_error_is_not_retried(self) -> None:
        route = respx.get(DEFILLAMA_URL).mock(return_value=httpx.Response(404))
        with pytest.raises(UpstreamFetchError) as exc:
            await fetch_pools(HttpClient(max_attempts=3, backoff=0), DEFILLAMA_URL)
        assert exc.value.status_code == 404
        assert route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_json(self) -> None:
        respx.get(DEFILLAMA_URL).mock(return_value=httpx.Response(200, text="<html>"))
        with pytest.raises(UpstreamFetchError):
            await fetch_pools(HttpClient(max_attempts=1), DEFILLAMA_URL)


class TestExtractToolArguments:
    def test_returns_arguments(self) -> None:
        body = tool_response("settle_market", {"outcome": "YES", "confidence": 0.9})
        assert extract_tool_arguments(body, "settle_market") == {"outcome": "YES", "confidence": 0.9}

    def test_plain_text_answer_is_malformed(self) -> None:
        body = {"choices": [{"message": {"content": "YES probably"}}]}
        with pytest.raises(MalformedClassifierResponse):
            extract_tool_arguments(body, "settle_market")

    def test_wrong_tool_is_malformed(self) -> None:
        with pytest.raises(MalformedClassifierResponse):
            extract_tool_arguments(tool_response("predict_yield", {}), "settle_market")

    def test_broken_json_is_malformed(self) -> None:
        body = tool_response("settle_market", {})
        body["choices"][0]["message"]["tool_calls"][0]["function"]["arguments"] = "{not json"
        with pytest.raises(MalformedClassifierResponse):
            extract_tool_arguments(body, "settle_market")


class TestAIGatewayClient:
    @pytest.fixture
    def gateway(self) -> AIGatewayClient:
        return AIGatewayClient(HttpClient(max_attempts=1), GATEWAY_URL, "test-key", timeout=5)

    @pytest.mark.asyncio
    @respx.mock
    async def test_settle_market_forces_the_tool(self, gateway, settle_yes) -> None:
        route = respx.post(GATEWAY_URL).mock(return_value=httpx.Response(200, json=settle_yes))

        verdict = await gateway.settle_market("Will stETH APY exceed 3.5%?", model="google/gemini-2.5-flash-lite")

        assert verdict.outcome is Outcome.YES
        assert verdict.confidence == 0.92
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer test-key"
        sent = json.loads(request.content)
        assert sent["model"] == "google/gemini-2.5-flash-lite"
        assert sent["tool_choice"] == {"type": "function", "function": {"name": "settle_market"}}
        assert sent["messages"][1]["content"] == "Will stETH APY exceed 3.5%?"

    @pytest.mark.asyncio
    @respx.mock
    async def test_predict_yield(self, gateway, prediction_body) -> None:
        respx.post(GATEWAY_URL).mock(return_value=httpx.Response(200, json=prediction_body))

        prediction = await gateway.predict_yield("prompt", model="google/gemini-3-flash-preview")

        assert prediction.prediction_direction == "below"
        assert prediction.probability_above_threshold == 0.237
        assert prediction.risk_factors == ["validator queue", "MEV volatility"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, exc_type",
        [(429, ClassifierRateLimited), (402, ClassifierQuotaExceeded), (400, ClassifierUnavailable)],
    )
    @respx.mock
    async def test_error_statuses(self, gateway, status, exc_type) -> None:
        respx.post(GATEWAY_URL).mock(return_value=httpx.Response(status, json={"error": "x"}))
        with pytest.raises(exc_type) as exc:
            await gateway.settle_market("p", model="m")
        assert exc.value.status_code == status

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_is_unavailable(self, gateway) -> None:
        respx.post(GATEWAY_URL).mock(return_value=httpx.Response(500))
        with pytest.raises(ClassifierUnavailable) as exc:
            await gateway.settle_market("p", model="m")
        assert exc.value.reason == "unavailable"

    @pytest.mark.asyncio
    @respx.mock
    async def test_timeout(self, gateway) -> None:
        respx.post(GATEWAY_URL).mock(side_effect=httpx.ReadTimeout("too slow"))
        with pytest.raises(ClassifierTimeout):
            await gateway.settle_market("p", model="m")

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_verdict_is_malformed(self, gateway) -> None:
        body = tool_response("settle_market", {"outcome": "MAYBE", "confidence": 0.5})
        respx.post(GATEWAY_URL).mock(return_value=httpx.Response(200, json=body))
        with pytest.raises(MalformedClassifierResponse):
            await gateway.settle_market("p", model="m")


@pytest.mark.asyncio
@respx.mock
async def test_block_number_read() -> None:
    rpc = "https://rpc.test"

    def reply(request: httpx.Request) -> httpx.Response:
        method = json.loads(request.content)["method"]
        result = {"eth_blockNumber": "0x1312d00", "eth_chainId": "0x1"}[method]
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})

    respx.post(rpc).mock(side_effect=reply)

    assert await get_block_number(HttpClient(max_attempts=1), rpc) == (20_000_000, 1)


@pytest.mark.asyncio
@respx.mock
async def test_block_number_read_is_best_effort() -> None:
    rpc = "https://rpc.test"
    respx.post(rpc).mock(side_effect=httpx.ConnectError("down"))

    assert await get_block_number(HttpClient(max_attempts=1), rpc) == (None, None)
