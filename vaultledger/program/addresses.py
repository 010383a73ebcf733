from __future__ import annotations

from dataclasses import dataclass

from solders.pubkey import Pubkey

from vaultledger.core.errors import AddressDerivationError


TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
RENT_SYSVAR_ID = Pubkey.from_string("SysvarRent111111111111111111111111111111111")
INSTRUCTIONS_SYSVAR_ID = Pubkey.from_string("Sysvar1nstructions1111111111111111111111111")

VAULT_SEED = b"vault"
VAULT_AUTHORITY_SEED = b"vault_authority"


@dataclass(frozen=True)
class DerivedAddress:
    address: Pubkey
    # Collision-avoidance byte produced alongside the program-derived address.
    bump: int


def parse_pubkey(value: Pubkey | str | bytes, *, field: str = "address") -> Pubkey:
    # Accept base58 strings, raw 32-byte values, or already-parsed keys.
    if isinstance(value, Pubkey):
        return value
    try:
        if isinstance(value, (bytes, bytearray)):
            if len(value) != 32:
                raise ValueError(f"expected 32 bytes, got {len(value)}")
            return Pubkey.from_bytes(bytes(value))
        if isinstance(value, str) and value.strip():
            return Pubkey.from_string(value.strip())
    except (ValueError, TypeError) as exc:
        raise AddressDerivationError(f"invalid {field}: {value!r}") from exc
    raise AddressDerivationError(f"invalid {field}: {value!r}")


def derive_vault_address(owner: Pubkey | str, program_id: Pubkey | str) -> DerivedAddress:
    owner_key = parse_pubkey(owner, field="owner")
    program_key = parse_pubkey(program_id, field="program_id")
    address, bump = Pubkey.find_program_address([VAULT_SEED, bytes(owner_key)], program_key)
    return DerivedAddress(address=address, bump=bump)


def derive_vault_authority_address(program_id: Pubkey | str) -> DerivedAddress:
    program_key = parse_pubkey(program_id, field="program_id")
    address, bump = Pubkey.find_program_address([VAULT_AUTHORITY_SEED], program_key)
    return DerivedAddress(address=address, bump=bump)


def derive_associated_token_address(owner: Pubkey | str, mint: Pubkey | str) -> Pubkey:
    owner_key = parse_pubkey(owner, field="owner")
    mint_key = parse_pubkey(mint, field="mint")
    address, _ = Pubkey.find_program_address(
        [bytes(owner_key), bytes(TOKEN_PROGRAM_ID), bytes(mint_key)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address
