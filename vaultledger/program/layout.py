from __future__ import annotations

import struct
from dataclasses import dataclass

from solders.pubkey import Pubkey

from vaultledger.core.errors import ChainPermanentError
from vaultledger.program.addresses import derive_vault_address


ACCOUNT_DISCRIMINATOR_LEN = 8
# owner, token_account, usdt_mint, 7 x u64, i64, yield program, i64, bump, threshold, vec len.
_HEAD = struct.Struct("<32s32s32sQQQQQQQq32sqBBI")


@dataclass(frozen=True)
class VaultAccount:
    owner: Pubkey
    token_account: Pubkey
    usdt_mint: Pubkey
    total_balance: int
    locked_balance: int
    available_balance: int
    total_deposited: int
    total_withdrawn: int
    yield_deposited_balance: int
    yield_accrued_balance: int
    last_compounded_at: int
    active_yield_program: Pubkey
    created_at: int
    bump: int
    multisig_threshold: int
    multisig_signers: tuple[Pubkey, ...]


def decode_vault_account(data: bytes) -> VaultAccount:
    body = memoryview(bytes(data))[ACCOUNT_DISCRIMINATOR_LEN:]
    if len(body) < _HEAD.size:
        raise ChainPermanentError(f"vault account too small: {len(data)} bytes")
    (
        owner,
        token_account,
        usdt_mint,
        total,
        locked,
        available,
        total_deposited,
        total_withdrawn,
        yield_deposited,
        yield_accrued,
        last_compounded_at,
        active_yield_program,
        created_at,
        bump,
        threshold,
        signer_count,
    ) = _HEAD.unpack_from(body, 0)
    offset = _HEAD.size
    if len(body) < offset + 32 * signer_count:
        raise ChainPermanentError(f"vault account truncated: {signer_count} signers declared")
    signers = tuple(
        Pubkey.from_bytes(bytes(body[offset + 32 * idx : offset + 32 * (idx + 1)]))
        for idx in range(signer_count)
    )
    return VaultAccount(
        owner=Pubkey.from_bytes(owner),
        token_account=Pubkey.from_bytes(token_account),
        usdt_mint=Pubkey.from_bytes(usdt_mint),
        total_balance=total,
        locked_balance=locked,
        available_balance=available,
        total_deposited=total_deposited,
        total_withdrawn=total_withdrawn,
        yield_deposited_balance=yield_deposited,
        yield_accrued_balance=yield_accrued,
        last_compounded_at=last_compounded_at,
        active_yield_program=Pubkey.from_bytes(active_yield_program),
        created_at=created_at,
        bump=bump,
        multisig_threshold=threshold,
        multisig_signers=signers,
    )


def encode_vault_account(account: VaultAccount, *, account_discriminator: bytes = b"\x00" * 8) -> bytes:
    # Inverse of decode_vault_account; used to seed fake chain state.
    head = _HEAD.pack(
        bytes(account.owner),
        bytes(account.token_account),
        bytes(account.usdt_mint),
        account.total_balance,
        account.locked_balance,
        account.available_balance,
        account.total_deposited,
        account.total_withdrawn,
        account.yield_deposited_balance,
        account.yield_accrued_balance,
        account.last_compounded_at,
        bytes(account.active_yield_program),
        account.created_at,
        account.bump,
        account.multisig_threshold,
        len(account.multisig_signers),
    )
    return account_discriminator + head + b"".join(bytes(key) for key in account.multisig_signers)


async def fetch_vault_account(chain, owner: Pubkey | str, program_id: Pubkey | str) -> VaultAccount | None:
    vault = derive_vault_address(owner, program_id).address
    data = await chain.get_account_data(str(vault))
    if data is None:
        return None
    return decode_vault_account(data)


async def fetch_vault_multisig_config(
    chain, owner: Pubkey | str, program_id: Pubkey | str
) -> tuple[int, list[str]]:
    account = await fetch_vault_account(chain, owner, program_id)
    if account is None:
        return 0, []
    return account.multisig_threshold, [str(key) for key in account.multisig_signers]
