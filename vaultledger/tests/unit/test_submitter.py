from __future__ import annotations

import base64

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from vaultledger.core.errors import ChainPermanentError, ChainTransientError, SigningError
from vaultledger.program.instructions import (
    DepositParams,
    WithdrawMultisigParams,
    build_deposit,
    build_withdraw_multisig,
)
from vaultledger.providers.chain.keys import load_fee_payer
from vaultledger.services.submitter import TransactionSubmitter
from vaultledger.tests.utils.factories import PROGRAM_ID, USDT_MINT, make_settings

COMPUTE_BUDGET = Pubkey.from_string("ComputeBudget111111111111111111111111111111")


def _deposit_for(owner: Keypair):
    return build_deposit(
        DepositParams(program_id=PROGRAM_ID, owner=str(owner.pubkey()), mint=USDT_MINT, amount=1_000)
    )


@pytest.mark.asyncio
async def test_submit_signs_with_fee_payer_and_prepends_budget(submitter, fee_payer, chain) -> None:
    signature = await submitter.submit([_deposit_for(fee_payer)])
    assert chain.send_attempts == 1
    tx = Transaction.from_bytes(chain.sent[0])
    assert str(tx.signatures[0]) == signature
    assert tx.message.account_keys[0] == fee_payer.pubkey()
    programs = [tx.message.account_keys[ix.program_id_index] for ix in tx.message.instructions]
    assert programs[:2] == [COMPUTE_BUDGET, COMPUTE_BUDGET]
    assert str(programs[2]) == PROGRAM_ID
    tx.verify()


@pytest.mark.asyncio
async def test_transient_failure_retries_same_bytes_with_linear_backoff(
    submitter, fee_payer, chain, recording_sleep
) -> None:
    chain.send_failures = [ChainTransientError("timeout"), ChainTransientError("timeout")]
    signature = await submitter.submit([_deposit_for(fee_payer)])
    assert chain.send_attempts == 3
    assert recording_sleep.calls == [0.5, 1.0]
    assert str(Transaction.from_bytes(chain.sent[0]).signatures[0]) == signature


@pytest.mark.asyncio
async def test_retries_are_bounded(submitter, fee_payer, chain) -> None:
    chain.send_failures = [ChainTransientError("down")] * 3
    with pytest.raises(ChainTransientError):
        await submitter.submit([_deposit_for(fee_payer)])
    assert chain.send_attempts == 3


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(submitter, fee_payer, chain, recording_sleep) -> None:
    chain.send_failures = [ChainPermanentError("custom program error: 0x1")]
    with pytest.raises(ChainPermanentError):
        await submitter.submit([_deposit_for(fee_payer)])
    assert chain.send_attempts == 1
    assert recording_sleep.calls == []


@pytest.mark.asyncio
async def test_missing_required_signer_is_a_signing_error(submitter, chain) -> None:
    with pytest.raises(SigningError):
        await submitter.submit([_deposit_for(Keypair())])
    assert chain.send_attempts == 0


@pytest.mark.asyncio
async def test_partial_transaction_leaves_cosigner_slots_empty(submitter, fee_payer) -> None:
    authority, cosigner = Keypair(), Keypair()
    instruction = build_withdraw_multisig(
        WithdrawMultisigParams(
            program_id=PROGRAM_ID,
            owner=str(Keypair().pubkey()),
            authority=str(authority.pubkey()),
            amount=10,
            other_signers=[str(cosigner.pubkey())],
        )
    )
    raw = await submitter.build_partial_transaction([instruction], compute_unit_limit=1_200_000)
    tx = Transaction.from_bytes(raw)
    assert tx.message.header.num_required_signatures == 3
    assert tx.message.account_keys[0] == fee_payer.pubkey()
    assert tx.signatures[0] != tx.signatures[1]
    assert str(tx.signatures[1]) == str(tx.signatures[2])


def test_fee_payer_prefers_base64_secret(tmp_path) -> None:
    keypair = Keypair()
    file_keypair = Keypair()
    path = tmp_path / "id.json"
    path.write_text(str(list(bytes(file_keypair))), encoding="utf-8")
    settings = make_settings(
        deployer_keypair_base64=base64.b64encode(bytes(keypair)).decode("ascii"),
        deployer_keypair_path=str(path),
    )
    assert load_fee_payer(settings).pubkey() == keypair.pubkey()
    assert load_fee_payer(make_settings(deployer_keypair_path=str(path))).pubkey() == file_keypair.pubkey()


def test_unconfigured_fee_payer_raises() -> None:
    with pytest.raises(SigningError):
        load_fee_payer(make_settings(deployer_keypair_path="", deployer_keypair_base64=None))


@pytest.mark.asyncio
async def test_fee_payer_loaded_lazily(ctx) -> None:
    submitter = TransactionSubmitter(ctx)
    with pytest.raises(SigningError):
        _ = submitter.fee_payer


@pytest.mark.asyncio
async def test_owner_cosigns_and_unneeded_signers_are_ignored(submitter, fee_payer, chain) -> None:
    owner = Keypair()
    await submitter.submit([_deposit_for(owner)], extra_signers=[Keypair(), owner])
    tx = Transaction.from_bytes(chain.sent[0])
    assert tx.message.account_keys[:2] == [fee_payer.pubkey(), owner.pubkey()]
    assert len(tx.signatures) == 2
    tx.verify()
