from __future__ import annotations

import dataclasses
import logging
from typing import Any, Sequence

from solders.keypair import Keypair
from sqlalchemy.exc import SQLAlchemyError

from vaultledger.core.errors import (
    AuthorizationError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from vaultledger.persistence.repos import programs as programs_repo
from vaultledger.persistence.repos import transactions as transactions_repo
from vaultledger.persistence.repos import vaults as vaults_repo
from vaultledger.program.addresses import parse_pubkey
from vaultledger.program.instructions import (
    OPERATIONS,
    EmergencyWithdrawParams,
    PositionManagerParams,
    WithdrawParams,
    build_emergency_withdraw,
    build_operation,
    build_pm_lock,
    build_pm_unlock,
    build_withdraw,
    encode_u64,
    instruction_to_dict,
)
from vaultledger.services.context import EngineContext
from vaultledger.services.submitter import TransactionSubmitter


logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class VaultBalance:
    owner: str
    settlement_account: str | None
    total_balance: int
    locked_balance: int
    available_balance: int
    status: str


def _positive_amount(amount: Any) -> int:
    encode_u64(amount)
    if amount <= 0:
        raise ValidationError("amount must be positive")
    return int(amount)


class VaultService:
    def __init__(self, ctx: EngineContext, submitter: TransactionSubmitter) -> None:
        self._ctx = ctx
        self._submitter = submitter

    async def build_instruction(self, operation: str, fields: dict[str, Any]) -> dict[str, Any]:
        op_def = OPERATIONS.get(operation)
        if op_def is None:
            raise ValidationError(f"unsupported operation: {operation}")
        settings = self._ctx.settings
        params = dict(fields)
        accepted = {item.name for item in dataclasses.fields(op_def.params_type)}
        # Deployment-wide accounts come from configuration unless the caller overrides them.
        for name, default in (("program_id", settings.program_id), ("mint", settings.usdt_mint)):
            if name in accepted and default:
                params.setdefault(name, default)
        if operation == "transfer_collateral":
            await self._require_authorized_caller(params.get("caller_program"))
        instruction = build_operation(operation, params)
        payload = instruction_to_dict(instruction)
        payload["operation"] = operation
        return payload

    async def _require_authorized_caller(self, caller_program: Any) -> None:
        caller = str(parse_pubkey(caller_program, field="caller_program"))
        async with self._ctx.sessions() as session:
            allowed = await programs_repo.is_authorized_program(session, caller)
        if not allowed:
            raise AuthorizationError(f"caller program {caller} is not authorized for collateral transfers")

    async def _record_pending(self, *, signature: str, owner: str, amount: int, kind: str) -> None:
        async with self._ctx.sessions() as session:
            try:
                await transactions_repo.insert_transaction(
                    session, signature=signature, owner=owner, amount=amount, kind=kind, status="pending"
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                # The chain already accepted it; the indexer will record the observed fact.
                logger.exception("pending_record_failed signature=%s kind=%s", signature, kind)
                raise PersistenceError(f"transaction {signature} submitted but not recorded") from exc

    async def submit_withdraw(
        self, owner: str, amount: int, *, extra_signers: Sequence[Keypair] = ()
    ) -> str:
        amount = _positive_amount(amount)
        settings = self._ctx.settings
        instruction = build_withdraw(
            WithdrawParams(program_id=settings.program_id, owner=owner, mint=settings.usdt_mint, amount=amount)
        )
        signature = await self._submitter.submit([instruction], extra_signers=extra_signers)
        owner_key = str(parse_pubkey(owner, field="owner"))
        await self._record_pending(signature=signature, owner=owner_key, amount=amount, kind="withdraw")
        self._ctx.notifier.publish(
            "withdrawal_submitted",
            {"owner": owner_key, "amount": amount, "signature": signature, "kind": "withdraw"},
        )
        return signature

    async def submit_emergency_withdraw(
        self,
        owner: str,
        amount: int,
        *,
        authority: str | None = None,
        extra_signers: Sequence[Keypair] = (),
    ) -> str:
        amount = _positive_amount(amount)
        settings = self._ctx.settings
        # Governance path: the custodial fee payer is the default authority.
        authority_key = authority or str(self._submitter.fee_payer.pubkey())
        instruction = build_emergency_withdraw(
            EmergencyWithdrawParams(
                program_id=settings.program_id,
                authority=authority_key,
                owner=owner,
                mint=settings.usdt_mint,
                amount=amount,
            )
        )
        signature = await self._submitter.submit([instruction], extra_signers=extra_signers)
        owner_key = str(parse_pubkey(owner, field="owner"))
        await self._record_pending(
            signature=signature, owner=owner_key, amount=amount, kind="emergency_withdraw"
        )
        logger.warning("emergency_withdraw_submitted owner=%s amount=%s signature=%s", owner_key, amount, signature)
        self._ctx.notifier.publish(
            "withdrawal_submitted",
            {"owner": owner_key, "amount": amount, "signature": signature, "kind": "emergency_withdraw"},
        )
        return signature

    async def _adjust_locked(self, owner: str, delta: int):
        async with self._ctx.sessions() as session:
            vault = await vaults_repo.adjust_locked_balance(session, owner, delta)
            await session.commit()
            return vault

    async def _submit_position_manager(self, *, owner: str, amount: int, lock: bool) -> str:
        settings = self._ctx.settings
        params = PositionManagerParams(
            position_manager_program_id=settings.position_manager_program_id,
            vault_program_id=settings.program_id,
            owner=owner,
            amount=amount,
        )
        instruction = build_pm_lock(params) if lock else build_pm_unlock(params)
        return await self._submitter.submit([instruction])

    async def lock(self, owner: str, amount: int) -> str:
        amount = _positive_amount(amount)
        owner_key = str(parse_pubkey(owner, field="owner"))
        # Reserve in the ledger first so concurrent locks cannot overcommit available funds.
        vault = await self._adjust_locked(owner_key, amount)
        submitted = False
        try:
            signature = await self._submit_position_manager(owner=owner_key, amount=amount, lock=True)
            submitted = True
        finally:
            # Any exit without a signature, cancellation included, releases the reservation.
            if not submitted:
                await self._adjust_locked(owner_key, -amount)
        await self._record_pending(signature=signature, owner=owner_key, amount=amount, kind="lock")
        logger.info("collateral_locked owner=%s amount=%s signature=%s", owner_key, amount, signature)
        self._ctx.notifier.publish(
            "lock",
            {
                "owner": owner_key,
                "amount": amount,
                "signature": signature,
                "locked_balance": int(vault.locked_balance),
                "available_balance": int(vault.available_balance),
            },
        )
        return signature

    async def unlock(self, owner: str, amount: int) -> str:
        amount = _positive_amount(amount)
        owner_key = str(parse_pubkey(owner, field="owner"))
        async with self._ctx.sessions() as session:
            vault = await vaults_repo.get_vault(session, owner_key)
        if vault is None:
            raise NotFoundError(f"vault {owner_key} not found")
        if amount > int(vault.locked_balance):
            raise ValidationError(f"unlock of {amount} exceeds locked balance {vault.locked_balance}")
        # Release only after the chain accepted the unlock.
        signature = await self._submit_position_manager(owner=owner_key, amount=amount, lock=False)
        vault = await self._adjust_locked(owner_key, -amount)
        await self._record_pending(signature=signature, owner=owner_key, amount=amount, kind="unlock")
        logger.info("collateral_unlocked owner=%s amount=%s signature=%s", owner_key, amount, signature)
        self._ctx.notifier.publish(
            "unlock",
            {
                "owner": owner_key,
                "amount": amount,
                "signature": signature,
                "locked_balance": int(vault.locked_balance),
                "available_balance": int(vault.available_balance),
            },
        )
        return signature

    async def link_settlement_account(self, owner: str, settlement_account: str) -> VaultBalance:
        owner_key = str(parse_pubkey(owner, field="owner"))
        account_key = str(parse_pubkey(settlement_account, field="settlement_account"))
        async with self._ctx.sessions() as session:
            await vaults_repo.link_settlement_account(session, owner_key, account_key)
            await session.commit()
        logger.info("settlement_account_linked owner=%s account=%s", owner_key, account_key)
        return await self.get_vault(owner_key)

    async def get_vault(self, owner: str) -> VaultBalance:
        async with self._ctx.sessions() as session:
            vault = await vaults_repo.get_vault(session, owner)
        if vault is None:
            raise NotFoundError(f"vault {owner} not found")
        return VaultBalance(
            owner=vault.owner,
            settlement_account=vault.settlement_account,
            total_balance=int(vault.total_balance),
            locked_balance=int(vault.locked_balance),
            available_balance=int(vault.available_balance),
            status=vault.status,
        )

    async def query_live_balance(self, owner: str) -> int:
        # Linked settlement account first; otherwise treat the identity itself as a token account.
        async with self._ctx.sessions() as session:
            vault = await vaults_repo.get_vault(session, owner)
        if vault is not None and vault.settlement_account:
            return await self._ctx.chain.get_token_account_balance(vault.settlement_account)
        account = str(parse_pubkey(owner, field="owner"))
        return await self._ctx.chain.get_token_account_balance(account)

    async def available_balance(self, owner: str) -> int:
        async with self._ctx.sessions() as session:
            vault = await vaults_repo.get_vault(session, owner)
        if vault is None:
            return 0
        return int(vault.total_balance) - int(vault.locked_balance)

    async def deactivate(self, owner: str) -> None:
        async with self._ctx.sessions() as session:
            updated = await vaults_repo.set_status(session, owner, "inactive")
            await session.commit()
        if not updated:
            raise NotFoundError(f"vault {owner} not found")
        logger.info("vault_deactivated owner=%s", owner)

    async def list_transactions(self, owner: str, *, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        async with self._ctx.sessions() as session:
            rows = await transactions_repo.list_for_owner(session, owner, limit=limit, offset=offset)
        return [
            {
                "signature": row.signature,
                "owner": row.owner,
                "amount": row.amount,
                "kind": row.kind,
                "status": row.status,
                "retry_count": row.retry_count,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ]
