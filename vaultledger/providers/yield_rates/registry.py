from __future__ import annotations

from typing import Callable

import httpx

from vaultledger.providers.yield_rates.base import YieldRateSource
from vaultledger.providers.yield_rates.http_sources import MarginfiRateSource, SolendRateSource


# One adapter per external yield venue; add a venue by registering a factory here.
YIELD_SOURCES: dict[str, Callable[[httpx.AsyncClient], YieldRateSource]] = {
    "solend": SolendRateSource,
    "marginfi": MarginfiRateSource,
}


def build_rate_sources(
    client: httpx.AsyncClient, names: list[str] | None = None
) -> list[YieldRateSource]:
    selected = names if names is not None else list(YIELD_SOURCES)
    return [YIELD_SOURCES[name](client) for name in selected if name in YIELD_SOURCES]
