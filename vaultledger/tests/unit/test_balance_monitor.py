from __future__ import annotations

import pytest

from vaultledger.core.errors import ChainTransientError
from vaultledger.persistence.repos import vaults as vaults_repo
from vaultledger.services.balance_monitor import BalanceMonitor
from vaultledger.tests.utils.factories import make_settings, new_address


@pytest.fixture
def settings():
    return make_settings(low_balance_threshold=1_000)


async def _linked(ctx, *, total: int = 0, locked: int = 0) -> tuple[str, str]:
    owner, account = new_address(), new_address()
    async with ctx.sessions() as session:
        await vaults_repo.update_snapshot(session, owner, new_total_balance=total)
        await vaults_repo.link_settlement_account(session, owner, account)
        if locked:
            await vaults_repo.adjust_locked_balance(session, owner, locked)
        await session.commit()
    return owner, account


@pytest.mark.asyncio
async def test_first_observation_seeds_baseline(ctx, chain) -> None:
    owner, account = await _linked(ctx)
    chain.balances[account] = 50_000
    sub = ctx.notifier.subscribe()
    monitor = BalanceMonitor(ctx)

    tick = await monitor.tick()

    assert tick.changes == {}
    assert monitor.last_seen(owner) == 50_000
    assert sub.queue.empty()


@pytest.mark.asyncio
async def test_change_publishes_delta_without_touching_ledger(ctx, chain) -> None:
    owner, account = await _linked(ctx, total=50_000)
    chain.balances[account] = 50_000
    monitor = BalanceMonitor(ctx)
    await monitor.tick()
    sub = ctx.notifier.subscribe()

    chain.balances[account] = 42_000
    tick = await monitor.tick()

    assert tick.changes == {owner: -8_000}
    event = sub.queue.get_nowait()
    assert event["type"] == "balance_update"
    assert (event["data"]["previous_balance"], event["data"]["balance"]) == (50_000, 42_000)
    async with ctx.sessions() as session:
        vault = await vaults_repo.get_vault(session, owner)
    assert vault.total_balance == 50_000


@pytest.mark.asyncio
async def test_low_balance_alert_uses_unlocked_funds(ctx, chain) -> None:
    owner, account = await _linked(ctx, total=10_000, locked=9_500)
    chain.balances[account] = 10_000
    sub = ctx.notifier.subscribe()

    tick = await BalanceMonitor(ctx).tick()

    assert tick.low_balance == [owner]
    alert = sub.queue.get_nowait()
    assert alert["type"] == "low_balance_alert"
    assert alert["data"]["available_balance"] == 500


@pytest.mark.asyncio
async def test_empty_vault_is_not_low_balance(ctx, chain) -> None:
    _, account = await _linked(ctx)
    chain.balances[account] = 0
    assert (await BalanceMonitor(ctx).tick()).low_balance == []


@pytest.mark.asyncio
async def test_fetch_failure_keeps_previous_baseline(ctx, chain) -> None:
    owner, account = await _linked(ctx)
    chain.balances[account] = 700
    monitor = BalanceMonitor(ctx)
    await monitor.tick()
    chain.balance_failures[account] = ChainTransientError("rpc down")

    tick = await monitor.tick()

    assert tick.failures == [owner]
    assert monitor.last_seen(owner) == 700
