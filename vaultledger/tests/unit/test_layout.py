from __future__ import annotations

import pytest
from solders.pubkey import Pubkey

from vaultledger.core.errors import ChainPermanentError
from vaultledger.program.addresses import derive_vault_address
from vaultledger.program.layout import (
    VaultAccount,
    decode_vault_account,
    encode_vault_account,
    fetch_vault_multisig_config,
)
from vaultledger.tests.utils.factories import PROGRAM_ID, USDT_MINT


def _account(owner: Pubkey, signers: tuple[Pubkey, ...], threshold: int) -> VaultAccount:
    return VaultAccount(
        owner=owner,
        token_account=Pubkey(bytes([2]) * 32),
        usdt_mint=Pubkey.from_string(USDT_MINT),
        total_balance=100_000,
        locked_balance=30_000,
        available_balance=70_000,
        total_deposited=120_000,
        total_withdrawn=20_000,
        yield_deposited_balance=0,
        yield_accrued_balance=0,
        last_compounded_at=-1,
        active_yield_program=Pubkey.default(),
        created_at=1_700_000_000,
        bump=254,
        multisig_threshold=threshold,
        multisig_signers=signers,
    )


def test_decode_reads_head_and_signers() -> None:
    owner = Pubkey(bytes([5]) * 32)
    signers = (Pubkey(bytes([11]) * 32), Pubkey(bytes([12]) * 32))
    data = encode_vault_account(_account(owner, signers, 2), account_discriminator=b"\xaa" * 8)
    decoded = decode_vault_account(data)
    assert decoded.owner == owner
    assert decoded.locked_balance == 30_000
    assert decoded.last_compounded_at == -1
    assert decoded.multisig_threshold == 2
    assert decoded.multisig_signers == signers


def test_decode_rejects_truncated_account() -> None:
    data = encode_vault_account(_account(Pubkey(bytes([5]) * 32), (Pubkey(bytes([11]) * 32),), 1))
    with pytest.raises(ChainPermanentError):
        decode_vault_account(data[:40])
    with pytest.raises(ChainPermanentError):
        decode_vault_account(data[:-1])


@pytest.mark.asyncio
async def test_multisig_config_comes_from_vault_account(chain) -> None:
    owner = Pubkey(bytes([5]) * 32)
    signers = (Pubkey(bytes([11]) * 32), Pubkey(bytes([12]) * 32), Pubkey(bytes([13]) * 32))
    vault = derive_vault_address(owner, PROGRAM_ID).address
    chain.accounts[str(vault)] = encode_vault_account(_account(owner, signers, 2))
    threshold, configured = await fetch_vault_multisig_config(chain, owner, PROGRAM_ID)
    assert threshold == 2
    assert configured == [str(key) for key in signers]


@pytest.mark.asyncio
async def test_missing_vault_account_has_no_config(chain) -> None:
    assert await fetch_vault_multisig_config(chain, Pubkey(bytes([5]) * 32), PROGRAM_ID) == (0, [])
