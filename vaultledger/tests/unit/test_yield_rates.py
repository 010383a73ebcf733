from __future__ import annotations

import httpx
import pytest

from vaultledger.core.errors import IntegrationUnavailableError
from vaultledger.providers.yield_rates.base import pick_usdt_rate
from vaultledger.providers.yield_rates.http_sources import (
    MARGINFI_POOLS_URL,
    SOLEND_RESERVES_URL,
    MarginfiRateSource,
    SolendRateSource,
)
from vaultledger.providers.yield_rates.registry import build_rate_sources
from vaultledger.services.telemetry import counters_snapshot
from vaultledger.services.yield_scheduler import YieldScheduler


def _client(routes: dict[str, httpx.Response]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        response = routes.get(str(request.url))
        if response is None:
            return httpx.Response(404)
        return response

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_pick_usdt_rate_prefers_first_usdt_entry() -> None:
    entries = [
        {"symbol": "USDC", "supplyApy": 9.0},
        {"symbol": "usdt", "supplyApy": "n/a", "supplyInterest": 4.2},
        {"symbol": "USDT", "supplyApy": 7.7},
    ]
    assert pick_usdt_rate(entries, ("supplyApy", "supplyInterest")) == 4.2
    assert pick_usdt_rate([{"symbol": "SOL", "supplyApy": 1.0}], ("supplyApy",)) == 0.0
    assert pick_usdt_rate({"not": "a list"}, ("supplyApy",)) == 0.0


@pytest.mark.asyncio
async def test_solend_and_marginfi_payload_shapes() -> None:
    client = _client(
        {
            SOLEND_RESERVES_URL: httpx.Response(200, json={"reserves": [{"symbol": "USDT", "supplyApy": 5.25}]}),
            MARGINFI_POOLS_URL: httpx.Response(200, json=[{"symbol": "USDT", "deposit_apy": 6.5}]),
        }
    )
    async with client:
        assert await SolendRateSource(client).fetch_rate() == 5.25
        assert await MarginfiRateSource(client).fetch_rate() == 6.5


@pytest.mark.asyncio
async def test_http_failure_is_integration_unavailable() -> None:
    client = _client({SOLEND_RESERVES_URL: httpx.Response(503)})
    async with client:
        with pytest.raises(IntegrationUnavailableError):
            await SolendRateSource(client).fetch_rate()


@pytest.mark.asyncio
async def test_non_json_body_is_integration_unavailable() -> None:
    client = _client({MARGINFI_POOLS_URL: httpx.Response(200, text="<html>maintenance</html>")})
    async with client:
        with pytest.raises(IntegrationUnavailableError):
            await MarginfiRateSource(client).fetch_rate()


def test_registry_ignores_unknown_names() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    sources = build_rate_sources(client, ["marginfi", "mango"])
    assert [source.name for source in sources] == ["marginfi"]


@pytest.mark.asyncio
async def test_scheduler_skips_unavailable_sources(ctx) -> None:
    client = _client(
        {
            SOLEND_RESERVES_URL: httpx.Response(500),
            MARGINFI_POOLS_URL: httpx.Response(200, json=[{"symbol": "USDT", "deposit_apy": 3.1}]),
        }
    )
    scheduler = YieldScheduler(ctx, client=client)
    try:
        sampled = await scheduler.tick()
        latest = await scheduler.latest()
    finally:
        await client.aclose()

    assert sampled == {"marginfi": 3.1}
    assert latest == {"marginfi": 3.1}
    assert counters_snapshot()["yield_fetch_failures_total.solend"] == 1
