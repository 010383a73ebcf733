from __future__ import annotations

import asyncio
import logging
from typing import Sequence

import httpx

from vaultledger.core.errors import IntegrationUnavailableError
from vaultledger.persistence.repos import yields as yields_repo
from vaultledger.providers.yield_rates.base import YieldRateSource
from vaultledger.providers.yield_rates.registry import build_rate_sources
from vaultledger.services.context import EngineContext
from vaultledger.services.loops import run_periodic
from vaultledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class YieldScheduler:
    """Samples venue USDT rates on a fixed cadence into ``protocol_apys``."""

    def __init__(
        self,
        ctx: EngineContext,
        *,
        sources: Sequence[YieldRateSource] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._ctx = ctx
        self._owns_client = client is None and sources is None
        self._client = client
        if sources is None:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=ctx.settings.yield_request_timeout_ms / 1000.0
                )
            sources = build_rate_sources(self._client, list(ctx.settings.yield_sources))
        self._sources = list(sources)

    @property
    def source_names(self) -> list[str]:
        return [source.name for source in self._sources]

    async def tick(self) -> dict[str, float]:
        sampled: dict[str, float] = {}
        for source in self._sources:
            try:
                rate = await source.fetch_rate()
            except IntegrationUnavailableError as exc:
                # No sample beats a fabricated zero in the rate history.
                increment_counter(f"yield_fetch_failures_total.{source.name}")
                logger.warning("yield_rate_unavailable protocol=%s", source.name, exc_info=exc)
                continue
            sampled[source.name] = float(rate)

        if sampled:
            async with self._ctx.sessions() as session:
                for protocol, apy in sampled.items():
                    await yields_repo.insert_protocol_apy(session, protocol=protocol, apy=apy)
                await session.commit()
        logger.info("yield_scheduler_tick sampled=%s skipped=%s", len(sampled), len(self._sources) - len(sampled))
        return sampled

    async def latest(self) -> dict[str, float]:
        async with self._ctx.sessions() as session:
            return await yields_repo.latest_apys(session)

    async def run(self, shutdown: asyncio.Event) -> None:
        try:
            await run_periodic(
                "yield_scheduler",
                self.tick,
                interval_s=self._ctx.settings.yield_scheduler_interval_s,
                shutdown=shutdown,
            )
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
