from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from vaultledger.core.errors import ConfigError
from vaultledger.persistence.repos import reconciliation as reconciliation_repo
from vaultledger.persistence.repos import vaults as vaults_repo
from vaultledger.services.context import EngineContext
from vaultledger.services.loops import run_periodic
from vaultledger.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Drift:
    owner: str
    settlement_account: str | None
    db_balance: int
    chain_balance: int
    discrepancy: int
    threshold: int


@dataclass
class SweepReport:
    checked: int = 0
    drifts: list[Drift] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)


class ReconciliationLoop:
    """Detects and records drift between ledger snapshots and live balances.

    The sweep never writes vault balances; correcting drift is a separate,
    explicit action.
    """

    def __init__(self, ctx: EngineContext) -> None:
        self._ctx = ctx
        threshold = int(ctx.settings.reconciliation_threshold)
        if threshold < 0:
            raise ConfigError("reconciliation_threshold must be non-negative")
        self._threshold = threshold

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        # Read the vault list, then release the connection before any chain call.
        async with self._ctx.sessions() as session:
            vaults = [
                (vault.owner, vault.settlement_account, int(vault.total_balance))
                for vault in await vaults_repo.list_linked_vaults(session)
            ]

        for owner, settlement_account, db_balance in vaults:
            report.checked += 1
            try:
                chain_balance = await self._ctx.chain.get_token_account_balance(settlement_account)
            except Exception as exc:  # noqa: BLE001 - retried on the next interval
                report.failures.append(owner)
                increment_counter("reconciliation_fetch_failures_total")
                logger.warning(
                    "reconciliation_fetch_failed owner=%s account=%s", owner, settlement_account, exc_info=exc
                )
                continue

            discrepancy = int(chain_balance) - db_balance
            if abs(discrepancy) <= self._threshold:
                continue

            drift = Drift(
                owner=owner,
                settlement_account=settlement_account,
                db_balance=db_balance,
                chain_balance=int(chain_balance),
                discrepancy=discrepancy,
                threshold=self._threshold,
            )
            async with self._ctx.sessions() as session:
                try:
                    await reconciliation_repo.insert_log(
                        session,
                        vault_owner=owner,
                        settlement_account=settlement_account,
                        db_balance=db_balance,
                        chain_balance=drift.chain_balance,
                        discrepancy=discrepancy,
                        threshold=self._threshold,
                    )
                    await session.commit()
                except SQLAlchemyError as exc:
                    # One failed write must not stop the sweep for the remaining vaults.
                    await session.rollback()
                    report.failures.append(owner)
                    increment_counter("reconciliation_log_write_failures_total")
                    logger.error("reconciliation_log_write_failed owner=%s", owner, exc_info=exc)
                    continue
            report.drifts.append(drift)
            increment_counter("reconciliation_drift_total")
            logger.warning(
                "reconciliation_drift owner=%s db_balance=%s chain_balance=%s discrepancy=%s threshold=%s",
                owner,
                db_balance,
                drift.chain_balance,
                discrepancy,
                self._threshold,
            )
            self._ctx.notifier.publish(
                "drift_alert",
                {
                    "owner": owner,
                    "settlement_account": settlement_account,
                    "db_balance": db_balance,
                    "chain_balance": drift.chain_balance,
                    "discrepancy": discrepancy,
                    "threshold": self._threshold,
                },
            )

        set_gauge("reconciliation_last_drift_count", float(len(report.drifts)))
        logger.info(
            "reconciliation_sweep_done checked=%s drifts=%s failures=%s",
            report.checked,
            len(report.drifts),
            len(report.failures),
        )
        return report

    async def run(self, shutdown: asyncio.Event) -> None:
        await run_periodic(
            "reconciliation",
            self.sweep,
            interval_s=self._ctx.settings.reconciliation_interval_s,
            shutdown=shutdown,
        )
