from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from vaultledger.core.config import get_settings
from vaultledger.core.logging import configure_logging
from vaultledger.services.context import build_context
from vaultledger.services.reconciliation import ReconciliationLoop
from vaultledger.services.runtime import start_background_loops, stop_background_loops
from vaultledger.services.submitter import TransactionSubmitter
from vaultledger.services.vaults import VaultService

logger = logging.getLogger(__name__)


async def submit_withdrawal(ctx, owner: str, amount: int) -> str:
    # Replay protection happens at enqueue time; the job only signs and submits.
    service = VaultService(ctx["engine"], ctx["submitter"])
    signature = await service.submit_withdraw(owner, amount)
    logger.info("withdrawal_job_submitted owner=%s amount=%s signature=%s", owner, amount, signature)
    return signature


async def reconcile_now(ctx) -> int:
    report = await ReconciliationLoop(ctx["engine"]).sweep()
    return len(report.drifts)


async def _startup(ctx) -> None:
    configure_logging()
    engine_ctx = build_context()
    submitter = TransactionSubmitter(engine_ctx)
    shutdown = asyncio.Event()
    ctx["engine"] = engine_ctx
    ctx["submitter"] = submitter
    ctx["loop_shutdown"] = shutdown
    ctx["loop_tasks"] = start_background_loops(engine_ctx, submitter, shutdown)


async def _shutdown(ctx) -> None:
    shutdown = ctx.get("loop_shutdown")
    if shutdown is not None:
        await stop_background_loops(ctx.get("loop_tasks", []), shutdown)
    engine_ctx = ctx.get("engine")
    if engine_ctx is not None:
        await engine_ctx.aclose()


class WorkerSettings:
    # Class attributes are read directly by the arq CLI.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.arq_queue_name
    # Submission already retries transient chain errors internally; do not re-sign on job retry.
    max_tries = 1
    functions = [submit_withdrawal, reconcile_now]
    on_startup = _startup
    on_shutdown = _shutdown
