from __future__ import annotations

import asyncio

import pytest

from vaultledger.persistence.repos import transactions as transactions_repo
from vaultledger.services.runtime import start_background_loops, stop_background_loops
from vaultledger.tests.utils.factories import make_settings
from vaultledger.workers.settlement_worker import WorkerSettings, reconcile_now, submit_withdrawal


@pytest.fixture
def settings():
    # No yield venues so the scheduler never leaves the process.
    return make_settings(yield_sources=[], indexer_reconnect_delay_s=0.01)


@pytest.mark.asyncio
async def test_loops_start_and_stop_on_shutdown(ctx, submitter, chain) -> None:
    shutdown = asyncio.Event()
    tasks = start_background_loops(ctx, submitter, shutdown)
    assert sorted(task.get_name() for task in tasks) == [
        "vaultledger.balance_monitor",
        "vaultledger.indexer",
        "vaultledger.reconciliation",
        "vaultledger.timelocks",
        "vaultledger.yield_scheduler",
    ]

    for _ in range(100):
        if chain.subscriptions:
            break
        await asyncio.sleep(0.01)
    await stop_background_loops(tasks, shutdown, grace_s=2)

    assert all(task.done() for task in tasks)
    assert not any(task.cancelled() for task in tasks)


@pytest.mark.asyncio
async def test_indexer_can_be_disabled(ctx, submitter) -> None:
    ctx.settings.indexer_enabled = False
    shutdown = asyncio.Event()
    tasks = start_background_loops(ctx, submitter, shutdown)
    try:
        assert "vaultledger.indexer" not in {task.get_name() for task in tasks}
    finally:
        await stop_background_loops(tasks, shutdown, grace_s=2)


@pytest.mark.asyncio
async def test_worker_jobs_use_engine_context(ctx, submitter, fee_payer) -> None:
    job_ctx = {"engine": ctx, "submitter": submitter}

    signature = await submit_withdrawal(job_ctx, str(fee_payer.pubkey()), 10)

    async with ctx.sessions() as session:
        row = await transactions_repo.get_by_signature(session, signature)
    assert row.status == "pending"
    assert await reconcile_now(job_ctx) == 0


def test_worker_never_retries_signed_submissions() -> None:
    assert WorkerSettings.max_tries == 1
    assert submit_withdrawal in WorkerSettings.functions
