from __future__ import annotations

import base64

import pytest

from vaultledger.core.errors import (
    AuthorizationError,
    ChainPermanentError,
    NotFoundError,
    SigningError,
    ValidationError,
)
from vaultledger.persistence.repos import programs as programs_repo
from vaultledger.persistence.repos import transactions as transactions_repo
from vaultledger.persistence.repos import vaults as vaults_repo
from vaultledger.program.instructions import discriminator
from vaultledger.services.vaults import VaultService
from vaultledger.tests.utils.factories import PROGRAM_ID, new_address


@pytest.fixture
def service(ctx, submitter) -> VaultService:
    return VaultService(ctx, submitter)


@pytest.fixture
def owner(fee_payer) -> str:
    # Custodial setup: the engine key owns the vault it manages.
    return str(fee_payer.pubkey())


async def _fund(ctx, owner: str, total: int) -> None:
    async with ctx.sessions() as session:
        await vaults_repo.update_snapshot(session, owner, new_total_balance=total, deposit_delta=total)
        await session.commit()


@pytest.mark.asyncio
async def test_build_instruction_fills_deployment_defaults(service) -> None:
    payload = await service.build_instruction("deposit", {"owner": new_address(), "amount": 1_000_000})

    assert payload["operation"] == "deposit"
    assert payload["program_id"] == PROGRAM_ID
    data = base64.b64decode(payload["data"])
    assert data[:8] == discriminator("deposit")
    assert int.from_bytes(data[8:], "little") == 1_000_000
    assert payload["accounts"][0]["is_signer"] is True


@pytest.mark.asyncio
async def test_build_instruction_rejects_unknown_operation_and_fields(service) -> None:
    with pytest.raises(ValidationError):
        await service.build_instruction("mint_money", {})
    with pytest.raises(ValidationError):
        await service.build_instruction("deposit", {"owner": new_address(), "amount": 1, "memo": "x"})
    with pytest.raises(ValidationError):
        await service.build_instruction("deposit", {"owner": new_address(), "amount": -1})


@pytest.mark.asyncio
async def test_transfer_collateral_requires_allowlisted_caller(ctx, service) -> None:
    caller = new_address()
    fields = {"caller_program": caller, "from_owner": new_address(), "to_owner": new_address(), "amount": 10}

    with pytest.raises(AuthorizationError):
        await service.build_instruction("transfer_collateral", fields)

    async with ctx.sessions() as session:
        await programs_repo.add_authorized_program(session, caller)
        await session.commit()
    payload = await service.build_instruction("transfer_collateral", fields)
    assert payload["accounts"][0]["pubkey"] == caller


@pytest.mark.asyncio
async def test_withdraw_records_pending_and_publishes(ctx, service, chain, owner) -> None:
    sub = ctx.notifier.subscribe()

    signature = await service.submit_withdraw(owner, 250)

    assert len(chain.sent) == 1
    async with ctx.sessions() as session:
        row = await transactions_repo.get_by_signature(session, signature)
    assert (row.kind, row.status, row.amount) == ("withdraw", "pending", 250)
    event = sub.queue.get_nowait()
    assert event["type"] == "withdrawal_submitted"
    assert event["data"]["signature"] == signature


@pytest.mark.asyncio
async def test_withdraw_for_foreign_owner_cannot_be_signed(service, chain) -> None:
    with pytest.raises(SigningError):
        await service.submit_withdraw(new_address(), 250)
    assert chain.sent == []


@pytest.mark.asyncio
async def test_emergency_withdraw_defaults_to_fee_payer_authority(ctx, service, chain) -> None:
    target = new_address()
    signature = await service.submit_emergency_withdraw(target, 99)
    async with ctx.sessions() as session:
        row = await transactions_repo.get_by_signature(session, signature)
    assert (row.owner, row.kind) == (target, "emergency_withdraw")


@pytest.mark.asyncio
async def test_lock_and_unlock_track_available_balance(ctx, service, owner) -> None:
    await _fund(ctx, owner, 100_000)
    sub = ctx.notifier.subscribe()

    await service.lock(owner, 30_000)
    await service.unlock(owner, 10_000)

    vault = await service.get_vault(owner)
    assert (vault.locked_balance, vault.available_balance) == (20_000, 80_000)
    assert await service.available_balance(owner) == 80_000
    kinds = [item["kind"] for item in await service.list_transactions(owner)]
    assert sorted(kinds) == ["lock", "unlock"]
    events = [sub.queue.get_nowait() for _ in range(sub.queue.qsize())]
    assert [event["type"] for event in events] == ["lock", "unlock"]
    assert events[0]["data"]["available_balance"] == 70_000


@pytest.mark.asyncio
async def test_lock_beyond_available_never_reaches_chain(ctx, service, chain, owner) -> None:
    await _fund(ctx, owner, 1_000)
    with pytest.raises(ValidationError):
        await service.lock(owner, 1_001)
    assert chain.send_attempts == 0


@pytest.mark.asyncio
async def test_failed_lock_submission_releases_reservation(ctx, service, chain, owner) -> None:
    await _fund(ctx, owner, 5_000)
    chain.send_failures.append(ChainPermanentError("custom program error: 0x1"))

    with pytest.raises(ChainPermanentError):
        await service.lock(owner, 2_000)

    vault = await service.get_vault(owner)
    assert (vault.locked_balance, vault.available_balance) == (0, 5_000)


@pytest.mark.asyncio
async def test_unsignable_lock_releases_reservation(ctx, service, chain) -> None:
    # A vault whose owner key the engine does not hold cannot sign the position-manager call.
    foreign = new_address()
    await _fund(ctx, foreign, 5_000)

    with pytest.raises(SigningError):
        await service.lock(foreign, 2_000)

    vault = await service.get_vault(foreign)
    assert (vault.locked_balance, vault.available_balance) == (0, 5_000)
    assert chain.send_attempts == 0


@pytest.mark.asyncio
async def test_unlock_more_than_locked_is_rejected(ctx, service, chain, owner) -> None:
    await _fund(ctx, owner, 5_000)
    with pytest.raises(ValidationError):
        await service.unlock(owner, 1)
    with pytest.raises(NotFoundError):
        await service.unlock(new_address(), 1)
    assert chain.send_attempts == 0


@pytest.mark.asyncio
async def test_live_balance_prefers_linked_account(service, chain) -> None:
    owner, account = new_address(), new_address()
    chain.balances[owner] = 1
    chain.balances[account] = 777
    assert await service.query_live_balance(owner) == 1

    await service.link_settlement_account(owner, account)
    assert await service.query_live_balance(owner) == 777


@pytest.mark.asyncio
async def test_deactivate_and_missing_vault(service) -> None:
    owner = new_address()
    with pytest.raises(NotFoundError):
        await service.get_vault(owner)
    with pytest.raises(NotFoundError):
        await service.deactivate(owner)
    assert await service.available_balance(owner) == 0

    await service.link_settlement_account(owner, new_address())
    await service.deactivate(owner)
    assert (await service.get_vault(owner)).status == "inactive"
