from __future__ import annotations

import asyncio
import contextlib
import logging

from vaultledger.services.balance_monitor import BalanceMonitor
from vaultledger.services.context import EngineContext
from vaultledger.services.indexer import EventIndexer
from vaultledger.services.reconciliation import ReconciliationLoop
from vaultledger.services.submitter import TransactionSubmitter
from vaultledger.services.timelocks import TimelockService
from vaultledger.services.yield_scheduler import YieldScheduler


logger = logging.getLogger(__name__)


def start_background_loops(
    ctx: EngineContext,
    submitter: TransactionSubmitter,
    shutdown: asyncio.Event,
) -> list[asyncio.Task]:
    """Start every long-running loop; each one exits when ``shutdown`` is set."""
    loops = []
    if ctx.settings.indexer_enabled:
        loops.append(("indexer", EventIndexer(ctx).run(shutdown)))
    loops.extend(
        [
            ("reconciliation", ReconciliationLoop(ctx).run(shutdown)),
            ("balance_monitor", BalanceMonitor(ctx).run(shutdown)),
            ("timelocks", TimelockService(ctx, submitter).run(shutdown)),
            ("yield_scheduler", YieldScheduler(ctx).run(shutdown)),
        ]
    )
    tasks = [asyncio.create_task(coro, name=f"vaultledger.{name}") for name, coro in loops]
    logger.info("background_loops_started loops=%s", ",".join(name for name, _ in loops))
    return tasks


async def stop_background_loops(
    tasks: list[asyncio.Task],
    shutdown: asyncio.Event,
    *,
    grace_s: float = 10.0,
) -> None:
    shutdown.set()
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=grace_s)
    for task in pending:
        logger.warning("background_loop_cancelled name=%s", task.get_name())
        task.cancel()
    for task in pending:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    logger.info("background_loops_stopped")
