from __future__ import annotations

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vaultledger.core.errors import NotFoundError, ValidationError
from vaultledger.domain.models import Vault
from vaultledger.persistence.guards import dialect_insert


async def get_vault(session: AsyncSession, owner: str) -> Vault | None:
    result = await session.execute(
        select(Vault).where(Vault.owner == owner).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_vaults(session: AsyncSession) -> list[Vault]:
    result = await session.execute(select(Vault).order_by(Vault.owner.asc()))
    return list(result.scalars().all())


async def list_linked_vaults(session: AsyncSession, *, active_only: bool = False) -> list[Vault]:
    # Only vaults with a settlement account can be compared against live chain state.
    # Deactivated vaults may still hold funds on-chain, so they are listed unless asked otherwise.
    stmt = select(Vault).where(Vault.settlement_account.is_not(None))
    if active_only:
        stmt = stmt.where(Vault.status == "active")
    result = await session.execute(stmt.order_by(Vault.owner.asc()))
    return list(result.scalars().all())


async def link_settlement_account(session: AsyncSession, owner: str, settlement_account: str) -> None:
    # Explicit account linking creates the vault when it does not exist yet.
    stmt = dialect_insert(session, Vault).values(
        owner=owner,
        settlement_account=settlement_account,
        total_balance=0,
        locked_balance=0,
        available_balance=0,
        total_deposits=0,
        total_withdrawals=0,
        status="active",
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Vault.owner],
        set_={"settlement_account": settlement_account, "updated_at": func.now()},
    )
    await session.execute(stmt)


async def update_snapshot(
    session: AsyncSession,
    owner: str,
    *,
    new_total_balance: int,
    deposit_delta: int = 0,
    withdraw_delta: int = 0,
) -> None:
    # Overwrite the balance with the authoritative value and accumulate running totals.
    new_total = max(0, int(new_total_balance))
    deposit_delta = max(0, int(deposit_delta))
    withdraw_delta = max(0, int(withdraw_delta))
    # Chain truth wins; clamp locked funds so locked <= total keeps holding.
    locked_after = case(
        (Vault.locked_balance > new_total, literal(new_total)),
        else_=Vault.locked_balance,
    )
    stmt = dialect_insert(session, Vault).values(
        owner=owner,
        total_balance=new_total,
        locked_balance=0,
        available_balance=new_total,
        total_deposits=deposit_delta,
        total_withdrawals=withdraw_delta,
        status="active",
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Vault.owner],
        set_={
            "total_balance": new_total,
            "locked_balance": locked_after,
            "available_balance": literal(new_total) - locked_after,
            "total_deposits": Vault.total_deposits + deposit_delta,
            "total_withdrawals": Vault.total_withdrawals + withdraw_delta,
            "updated_at": func.now(),
        },
    )
    await session.execute(stmt)


async def adjust_locked_balance(session: AsyncSession, owner: str, delta: int) -> Vault:
    # Conditional update keeps 0 <= locked <= total under concurrent lock/unlock calls.
    locked_after = Vault.locked_balance + delta
    stmt = (
        update(Vault)
        .where(
            Vault.owner == owner,
            locked_after >= 0,
            locked_after <= Vault.total_balance,
        )
        .values(
            locked_balance=locked_after,
            available_balance=Vault.total_balance - locked_after,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session="fetch")
    )
    result = await session.execute(stmt)
    vault = await get_vault(session, owner)
    if vault is None:
        raise NotFoundError(f"vault {owner} not found")
    if result.rowcount != 1:
        if delta > 0:
            raise ValidationError(
                f"lock of {delta} exceeds available balance {vault.available_balance}"
            )
        raise ValidationError(f"unlock of {-delta} exceeds locked balance {vault.locked_balance}")
    return vault


async def set_status(session: AsyncSession, owner: str, status: str) -> bool:
    result = await session.execute(
        update(Vault)
        .where(Vault.owner == owner)
        .values(status=status, updated_at=func.now())
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1
