from __future__ import annotations

import pytest
from solders.pubkey import Pubkey

from vaultledger.core.errors import AddressDerivationError, ValidationError
from vaultledger.program.addresses import (
    TOKEN_PROGRAM_ID,
    ASSOCIATED_TOKEN_PROGRAM_ID,
    derive_associated_token_address,
    derive_vault_address,
    derive_vault_authority_address,
    parse_pubkey,
)
from vaultledger.tests.utils.factories import PROGRAM_ID, USDT_MINT, new_address


def test_vault_address_is_deterministic_per_owner() -> None:
    owner = new_address()
    first = derive_vault_address(owner, PROGRAM_ID)
    second = derive_vault_address(Pubkey.from_string(owner), Pubkey.from_string(PROGRAM_ID))
    assert first == second
    assert 0 <= first.bump <= 255
    assert derive_vault_address(new_address(), PROGRAM_ID).address != first.address


def test_vault_address_matches_seed_layout() -> None:
    owner = Pubkey.from_string(new_address())
    expected, bump = Pubkey.find_program_address([b"vault", bytes(owner)], Pubkey.from_string(PROGRAM_ID))
    derived = derive_vault_address(owner, PROGRAM_ID)
    assert derived.address == expected
    assert derived.bump == bump
    assert not derived.address.is_on_curve()


def test_vault_authority_is_singular_for_program() -> None:
    first = derive_vault_authority_address(PROGRAM_ID)
    assert first == derive_vault_authority_address(PROGRAM_ID)
    expected, _ = Pubkey.find_program_address([b"vault_authority"], Pubkey.from_string(PROGRAM_ID))
    assert first.address == expected
    other_program = str(Pubkey(bytes([3]) * 32))
    assert derive_vault_authority_address(other_program).address != first.address


def test_associated_token_address_uses_token_program_seeds() -> None:
    owner = Pubkey.from_string(new_address())
    mint = Pubkey.from_string(USDT_MINT)
    expected, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )
    assert derive_associated_token_address(owner, mint) == expected


@pytest.mark.parametrize("value", ["", "not-a-key", "0OIl", b"\x01" * 31, 42])
def test_malformed_identity_is_rejected(value) -> None:
    with pytest.raises(AddressDerivationError):
        derive_vault_address(value, PROGRAM_ID)


def test_address_error_is_a_validation_error() -> None:
    with pytest.raises(ValidationError) as excinfo:
        parse_pubkey("bogus", field="owner")
    assert excinfo.value.kind == "validation"
    assert "owner" in excinfo.value.message


def test_parse_pubkey_accepts_raw_bytes() -> None:
    raw = bytes(range(32))
    assert parse_pubkey(raw) == Pubkey(raw)
