from __future__ import annotations

import asyncio

import pytest

from vaultledger.core.errors import ChainTransientError
from vaultledger.persistence.repos import transactions as transactions_repo
from vaultledger.persistence.repos import vaults as vaults_repo
from vaultledger.program.instructions import discriminator, encode_u64
from vaultledger.services.indexer import EventIndexer, classify_log_kind, decode_amount
from vaultledger.services.telemetry import counters_snapshot
from vaultledger.tests.utils.factories import log_event, make_settings, new_address, observed_transfer


@pytest.fixture
def settings():
    return make_settings(indexer_reconnect_delay_s=0.01)


def test_classify_prefers_emergency_over_withdraw() -> None:
    assert classify_log_kind(["Program log: Instruction: EmergencyWithdraw"]) == "emergency_withdraw"
    assert classify_log_kind(["Program log: Instruction: Withdraw"]) == "withdraw"
    assert classify_log_kind(["Program log: Instruction: Unlock"]) == "unlock"
    assert classify_log_kind(["Program log: Instruction: Deposit"]) == "deposit"


def test_classify_ignores_yield_movements_and_noise() -> None:
    assert classify_log_kind(["Program log: Instruction: YieldDeposit"]) is None
    assert classify_log_kind(["Program log: Instruction: CompoundYield", "withdraw"]) is None
    assert classify_log_kind(["Program log: Instruction: SetRiskLevel"]) is None


def test_decode_amount_layouts() -> None:
    assert decode_amount(discriminator("deposit") + encode_u64(1_000_000)) == 1_000_000
    assert decode_amount(bytes([3]) + encode_u64(42)) == 42
    assert decode_amount(b"\x01\x02") is None


@pytest.mark.asyncio
async def test_deposit_is_recorded_and_published(ctx, chain) -> None:
    owner = new_address()
    sub = ctx.notifier.subscribe()
    chain.transactions["sig-d"] = observed_transfer(signature="sig-d", owner=owner, method="deposit", amount=1_000_000)

    event = await EventIndexer(ctx).handle_log(log_event("sig-d", "Program log: Instruction: Deposit"))

    assert event is not None
    assert (event.owner, event.kind, event.amount, event.balance, event.previous_balance) == (
        owner,
        "deposit",
        1_000_000,
        1_000_000,
        0,
    )
    async with ctx.sessions() as session:
        row = await transactions_repo.get_by_signature(session, "sig-d")
        vault = await vaults_repo.get_vault(session, owner)
    assert (row.status, row.kind, row.amount) == ("confirmed", "deposit", 1_000_000)
    assert (vault.total_balance, vault.total_deposits, vault.available_balance) == (1_000_000, 1_000_000, 1_000_000)
    published = sub.queue.get_nowait()
    assert published["type"] == "balance_update"
    assert published["data"]["balance"] == 1_000_000


@pytest.mark.asyncio
async def test_replayed_signature_is_ignored(ctx, chain) -> None:
    owner = new_address()
    chain.transactions["sig-r"] = observed_transfer(signature="sig-r", owner=owner, method="deposit", amount=500)
    indexer = EventIndexer(ctx)
    log = log_event("sig-r", "Program log: Instruction: Deposit")

    assert await indexer.handle_log(log) is not None
    assert await indexer.handle_log(log) is None

    async with ctx.sessions() as session:
        vault = await vaults_repo.get_vault(session, owner)
    assert vault.total_balance == 500
    assert vault.total_deposits == 500
    assert counters_snapshot()["indexer_duplicates_total"] == 1


@pytest.mark.asyncio
async def test_failed_and_unclassified_logs_are_skipped(ctx, chain) -> None:
    indexer = EventIndexer(ctx)
    assert await indexer.handle_log(log_event("sig-e", "Instruction: Deposit", err={"InstructionError": [0, 1]})) is None
    assert await indexer.handle_log(log_event("sig-y", "Instruction: YieldWithdraw")) is None
    assert await indexer.handle_log(log_event("sig-missing", "Instruction: Deposit")) is None

    chain.transactions["sig-other"] = observed_transfer(
        signature="sig-other", owner=new_address(), method="deposit", amount=1, program_id=new_address()
    )
    assert await indexer.handle_log(log_event("sig-other", "Instruction: Deposit")) is None

    async with ctx.sessions() as session:
        assert await transactions_repo.get_by_signature(session, "sig-other") is None
    counters = counters_snapshot()
    assert counters["indexer_skipped_total.failed_tx"] == 1
    assert counters["indexer_skipped_total.unclassified"] == 1
    assert counters["indexer_skipped_total.unavailable_tx"] == 1
    assert counters["indexer_skipped_total.no_program_ix"] == 1


@pytest.mark.asyncio
async def test_pending_submission_is_confirmed_by_observation(ctx, chain) -> None:
    owner, account = new_address(), new_address()
    async with ctx.sessions() as session:
        await vaults_repo.update_snapshot(session, owner, new_total_balance=900, deposit_delta=900)
        await vaults_repo.link_settlement_account(session, owner, account)
        await transactions_repo.insert_transaction(session, signature="sig-w", owner=owner, amount=400, kind="withdraw")
        await session.commit()
    chain.balances[account] = 500
    chain.transactions["sig-w"] = observed_transfer(signature="sig-w", owner=owner, method="withdraw", amount=400)

    event = await EventIndexer(ctx).handle_log(log_event("sig-w", "Program log: Instruction: Withdraw"))

    assert event is not None and event.balance == 500
    async with ctx.sessions() as session:
        row = await transactions_repo.get_by_signature(session, "sig-w")
        vault = await vaults_repo.get_vault(session, owner)
    assert row.status == "confirmed"
    assert (vault.total_balance, vault.total_withdrawals) == (500, 400)


@pytest.mark.asyncio
async def test_balance_fetch_failure_falls_back_to_local_arithmetic(ctx, chain) -> None:
    owner, account = new_address(), new_address()
    async with ctx.sessions() as session:
        await vaults_repo.update_snapshot(session, owner, new_total_balance=1_000, deposit_delta=1_000)
        await vaults_repo.link_settlement_account(session, owner, account)
        await session.commit()
    chain.balance_failures[account] = ChainTransientError("rpc down")
    chain.transactions["sig-f"] = observed_transfer(signature="sig-f", owner=owner, method="deposit", amount=250)

    event = await EventIndexer(ctx).handle_log(log_event("sig-f", "Program log: Instruction: Deposit"))

    assert event.balance == 1_250
    assert counters_snapshot()["indexer_balance_fallbacks_total"] == 1


@pytest.mark.asyncio
async def test_run_resubscribes_after_stream_ends(ctx, chain) -> None:
    owner = new_address()
    chain.push_log(
        log_event("sig-s", "Program log: Instruction: Deposit"),
        observed_transfer(signature="sig-s", owner=owner, method="deposit", amount=77),
    )
    chain.end_stream()
    shutdown = asyncio.Event()
    task = asyncio.create_task(EventIndexer(ctx).run(shutdown))

    for _ in range(200):
        if chain.subscriptions >= 2:
            break
        await asyncio.sleep(0.01)
    shutdown.set()
    await asyncio.wait_for(task, timeout=2)

    assert chain.subscriptions >= 2
    assert counters_snapshot()["indexer_reconnects_total"] >= 1
    async with ctx.sessions() as session:
        row = await transactions_repo.get_by_signature(session, "sig-s")
    assert row is not None and row.amount == 77


@pytest.mark.asyncio
async def test_run_without_program_id_returns_immediately(ctx) -> None:
    ctx.settings.program_id = ""
    await asyncio.wait_for(EventIndexer(ctx).run(asyncio.Event()), timeout=1)
