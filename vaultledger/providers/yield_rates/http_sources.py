from __future__ import annotations

import time
from typing import Any

import httpx

from vaultledger.core.errors import IntegrationUnavailableError
from vaultledger.providers.yield_rates.base import pick_usdt_rate
from vaultledger.services.telemetry import record_external_call


SOLEND_RESERVES_URL = "https://api.solend.fi/v1/reserves?scope=mainnet"
MARGINFI_POOLS_URL = "https://api.marginfi.com/v1/pools"


async def _get_json(client: httpx.AsyncClient, url: str, *, integration: str) -> Any:
    start = time.monotonic()
    success = False
    try:
        response = await client.get(url)
        response.raise_for_status()
        payload = response.json()
        success = True
        return payload
    except (httpx.HTTPError, ValueError) as exc:
        raise IntegrationUnavailableError(f"{integration} request failed: {exc.__class__.__name__}") from exc
    finally:
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )


class SolendRateSource:
    name = "solend"

    def __init__(self, client: httpx.AsyncClient, url: str = SOLEND_RESERVES_URL) -> None:
        self._client = client
        self._url = url

    async def fetch_rate(self) -> float:
        payload = await _get_json(self._client, self._url, integration="yield.solend")
        reserves = payload.get("reserves") if isinstance(payload, dict) else None
        return pick_usdt_rate(reserves, ("supplyApy", "supplyInterest"))


class MarginfiRateSource:
    name = "marginfi"

    def __init__(self, client: httpx.AsyncClient, url: str = MARGINFI_POOLS_URL) -> None:
        self._client = client
        self._url = url

    async def fetch_rate(self) -> float:
        payload = await _get_json(self._client, self._url, integration="yield.marginfi")
        return pick_usdt_rate(payload, ("deposit_apy", "supplyApy"))
