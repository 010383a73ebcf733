from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from solders.transaction import Transaction

from vaultledger.core.errors import SigningError, ValidationError
from vaultledger.program.instructions import discriminator
from vaultledger.services.timelocks import TimelockService
from vaultledger.tests.utils.factories import new_address


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def timelocks(ctx, submitter, clock) -> TimelockService:
    return TimelockService(ctx, submitter, clock=clock)


@pytest.mark.asyncio
async def test_schedule_submits_and_records(timelocks, chain, fee_payer) -> None:
    owner = str(fee_payer.pubkey())

    payload = await timelocks.schedule(owner, 5_000, 600)

    assert payload["status"] == "scheduled"
    assert payload["unlock_at"] == "2026-01-01T12:10:00+00:00"
    tx = Transaction.from_bytes(chain.sent[0])
    assert payload["signature"] == str(tx.signatures[0])
    program_ix = tx.message.instructions[-1]
    assert bytes(program_ix.data)[:8] == discriminator("schedule_timelock")
    assert [item["id"] for item in await timelocks.list_for_owner(owner)] == [payload["id"]]


@pytest.mark.asyncio
async def test_schedule_rejects_bad_input(timelocks, fee_payer) -> None:
    owner = str(fee_payer.pubkey())
    with pytest.raises(ValidationError):
        await timelocks.schedule(owner, 0, 60)
    with pytest.raises(ValidationError):
        await timelocks.schedule(owner, 10, 0)
    with pytest.raises(ValidationError):
        await timelocks.schedule("not-a-key", 10, 60)


@pytest.mark.asyncio
async def test_schedule_for_foreign_owner_needs_their_signature(timelocks, chain) -> None:
    with pytest.raises(SigningError):
        await timelocks.schedule(new_address(), 10, 60)
    assert chain.sent == []


@pytest.mark.asyncio
async def test_sweep_announces_each_transition_once(ctx, timelocks, clock, fee_payer) -> None:
    owner = str(fee_payer.pubkey())
    sub = ctx.notifier.subscribe()
    scheduled = await timelocks.schedule(owner, 1_000, 3_600)

    assert (await timelocks.sweep()).due_soon == []

    clock.advance(3_600 - ctx.settings.timelock_due_soon_s)
    first = await timelocks.sweep()
    second = await timelocks.sweep()
    assert first.due_soon == [scheduled["id"]]
    assert second.due_soon == []

    clock.advance(ctx.settings.timelock_due_soon_s)
    assert (await timelocks.sweep()).available == [scheduled["id"]]
    assert (await timelocks.sweep()).available == []

    events = [sub.queue.get_nowait() for _ in range(sub.queue.qsize())]
    assert [event["type"] for event in events] == ["timelock_due_soon", "timelock_available"]
    assert events[1]["data"]["status"] == "available"
    assert (await timelocks.list_for_owner(owner))[0]["status"] == "available"
