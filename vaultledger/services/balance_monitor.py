from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from vaultledger.persistence.repos import vaults as vaults_repo
from vaultledger.services.context import EngineContext
from vaultledger.services.loops import run_periodic
from vaultledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass
class MonitorTick:
    changes: dict[str, int] = field(default_factory=dict)
    low_balance: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)


class BalanceMonitor:
    """Watches live settlement balances and publishes changes.

    Observational only: the ledger is never written from here. The first
    observation of a vault seeds the baseline and emits no change event.
    """

    def __init__(self, ctx: EngineContext) -> None:
        self._ctx = ctx
        self._last_seen: dict[str, int] = {}

    def last_seen(self, owner: str) -> int | None:
        return self._last_seen.get(owner)

    async def tick(self) -> MonitorTick:
        result = MonitorTick()
        threshold = int(self._ctx.settings.low_balance_threshold)
        async with self._ctx.sessions() as session:
            vaults = [
                (vault.owner, vault.settlement_account, int(vault.locked_balance))
                for vault in await vaults_repo.list_linked_vaults(session, active_only=True)
            ]

        for owner, settlement_account, locked in vaults:
            try:
                balance = int(await self._ctx.chain.get_token_account_balance(settlement_account))
            except Exception as exc:  # noqa: BLE001 - observe again on the next tick
                result.failures.append(owner)
                increment_counter("balance_monitor_fetch_failures_total")
                logger.warning("balance_monitor_fetch_failed owner=%s", owner, exc_info=exc)
                continue

            previous = self._last_seen.get(owner)
            self._last_seen[owner] = balance
            if previous is not None and previous != balance:
                delta = balance - previous
                result.changes[owner] = delta
                logger.info(
                    "balance_change_detected owner=%s previous=%s balance=%s delta=%s",
                    owner,
                    previous,
                    balance,
                    delta,
                )
                self._ctx.notifier.publish(
                    "balance_update",
                    {"owner": owner, "balance": balance, "previous_balance": previous, "delta": delta},
                )

            available = balance - locked
            if threshold > 0 and 0 < available < threshold:
                result.low_balance.append(owner)
                self._ctx.notifier.publish(
                    "low_balance_alert",
                    {"owner": owner, "available_balance": available, "threshold": threshold},
                )
        return result

    async def run(self, shutdown: asyncio.Event) -> None:
        await run_periodic(
            "balance_monitor",
            self.tick,
            interval_s=self._ctx.settings.balance_monitor_interval_s,
            shutdown=shutdown,
        )
