from __future__ import annotations

import base64
import hashlib
import struct
from dataclasses import dataclass, field
from typing import Any, Callable

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from vaultledger.core.errors import ValidationError
from vaultledger.program.addresses import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    INSTRUCTIONS_SYSVAR_ID,
    RENT_SYSVAR_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    derive_associated_token_address,
    derive_vault_address,
    derive_vault_authority_address,
    parse_pubkey,
)


# Position manager routes on a single leading opcode byte rather than a hashed discriminator.
PM_LOCK_OPCODE = 10
PM_UNLOCK_OPCODE = 11

# Vault methods whose payload is discriminator || u64 amount.
AMOUNT_METHODS = (
    "deposit",
    "withdraw",
    "emergency_withdraw",
    "request_withdraw",
    "schedule_timelock",
    "yield_deposit",
    "yield_withdraw",
    "compound_yield",
    "transfer_collateral",
)

Key = Pubkey | str


def discriminator(method_name: str) -> bytes:
    # Must match the program's router bit-for-bit.
    return hashlib.sha256(f"global:{method_name}".encode("utf-8")).digest()[:8]


def _pack(fmt: str, value: int, *, name: str, low: int, high: int) -> bytes:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    if value < low or value > high:
        raise ValidationError(f"{name} out of range: {value}")
    return struct.pack(fmt, value)


def encode_u64(value: int, *, name: str = "amount") -> bytes:
    return _pack("<Q", value, name=name, low=0, high=2**64 - 1)


def encode_i64(value: int, *, name: str) -> bytes:
    return _pack("<q", value, name=name, low=-(2**63), high=2**63 - 1)


def encode_u32(value: int, *, name: str) -> bytes:
    return _pack("<I", value, name=name, low=0, high=2**32 - 1)


def encode_u8(value: int, *, name: str) -> bytes:
    return _pack("<B", value, name=name, low=0, high=255)


def _writable(key: Pubkey, *, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=key, is_signer=signer, is_writable=True)


def _readonly(key: Pubkey, *, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=key, is_signer=signer, is_writable=False)


@dataclass(frozen=True)
class InitializeVaultParams:
    program_id: Key
    owner: Key
    mint: Key


@dataclass(frozen=True)
class DepositParams:
    program_id: Key
    owner: Key
    mint: Key
    amount: int


@dataclass(frozen=True)
class WithdrawParams:
    program_id: Key
    owner: Key
    mint: Key
    amount: int


@dataclass(frozen=True)
class WithdrawMultisigParams:
    program_id: Key
    owner: Key
    authority: Key
    amount: int
    other_signers: list[Key] = field(default_factory=list)


@dataclass(frozen=True)
class ScheduleTimelockParams:
    program_id: Key
    owner: Key
    amount: int
    duration_seconds: int


@dataclass(frozen=True)
class RequestWithdrawParams:
    program_id: Key
    owner: Key
    amount: int


@dataclass(frozen=True)
class EmergencyWithdrawParams:
    program_id: Key
    # Signs the instruction; the owner or governance.
    authority: Key
    owner: Key
    mint: Key
    amount: int


@dataclass(frozen=True)
class WhitelistParams:
    program_id: Key
    owner: Key
    address: Key


@dataclass(frozen=True)
class MinDelayParams:
    program_id: Key
    owner: Key
    seconds: int


@dataclass(frozen=True)
class RateLimitParams:
    program_id: Key
    owner: Key
    window_seconds: int
    max_amount: int


@dataclass(frozen=True)
class YieldParams:
    program_id: Key
    owner: Key
    yield_program: Key
    amount: int


@dataclass(frozen=True)
class TransferCollateralParams:
    program_id: Key
    # Allowlisted program requesting the move, e.g. the position manager.
    caller_program: Key
    from_owner: Key
    to_owner: Key
    mint: Key
    amount: int


@dataclass(frozen=True)
class YieldProgramGovernanceParams:
    program_id: Key
    governance: Key
    yield_program: Key


@dataclass(frozen=True)
class RiskLevelParams:
    program_id: Key
    governance: Key
    risk_level: int


@dataclass(frozen=True)
class PositionManagerParams:
    position_manager_program_id: Key
    vault_program_id: Key
    owner: Key
    amount: int


def build_initialize_vault(params: InitializeVaultParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    owner = parse_pubkey(params.owner, field="owner")
    mint = parse_pubkey(params.mint, field="mint")
    vault = derive_vault_address(owner, program_id).address
    vault_ata = derive_associated_token_address(vault, mint)
    accounts = [
        _writable(owner, signer=True),
        _writable(vault),
        _writable(vault_ata),
        _readonly(mint),
        _readonly(SYSTEM_PROGRAM_ID),
        _readonly(TOKEN_PROGRAM_ID),
        _readonly(ASSOCIATED_TOKEN_PROGRAM_ID),
        _readonly(RENT_SYSVAR_ID),
    ]
    return Instruction(program_id, discriminator("initialize_vault"), accounts)


def build_deposit(params: DepositParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    owner = parse_pubkey(params.owner, field="owner")
    mint = parse_pubkey(params.mint, field="mint")
    vault = derive_vault_address(owner, program_id).address
    accounts = [
        _writable(owner, signer=True),
        _readonly(owner),
        _writable(vault),
        _writable(derive_associated_token_address(owner, mint)),
        _writable(derive_associated_token_address(vault, mint)),
        _readonly(TOKEN_PROGRAM_ID),
    ]
    data = discriminator("deposit") + encode_u64(params.amount)
    return Instruction(program_id, data, accounts)


def build_withdraw(params: WithdrawParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    owner = parse_pubkey(params.owner, field="owner")
    mint = parse_pubkey(params.mint, field="mint")
    vault = derive_vault_address(owner, program_id).address
    # Token accounts flip relative to deposit: vault is the source.
    accounts = [
        _writable(owner, signer=True),
        _readonly(owner),
        _writable(vault),
        _writable(derive_associated_token_address(vault, mint)),
        _writable(derive_associated_token_address(owner, mint)),
        _readonly(TOKEN_PROGRAM_ID),
    ]
    data = discriminator("withdraw") + encode_u64(params.amount)
    return Instruction(program_id, data, accounts)


def build_withdraw_multisig(params: WithdrawMultisigParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    owner = parse_pubkey(params.owner, field="owner")
    authority = parse_pubkey(params.authority, field="authority")
    accounts = [_writable(authority, signer=True), _readonly(owner)]
    seen = {authority}
    # Remaining approvers ride along as read-only signers.
    for raw in params.other_signers:
        signer = parse_pubkey(raw, field="signer")
        if signer in seen:
            continue
        seen.add(signer)
        accounts.append(_readonly(signer, signer=True))
    data = discriminator("withdraw") + encode_u64(params.amount)
    return Instruction(program_id, data, accounts)


def build_schedule_timelock(params: ScheduleTimelockParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    owner = parse_pubkey(params.owner, field="owner")
    accounts = [_writable(owner, signer=True), _readonly(owner)]
    data = (
        discriminator("schedule_timelock")
        + encode_u64(params.amount)
        + encode_i64(params.duration_seconds, name="duration_seconds")
    )
    return Instruction(program_id, data, accounts)


def _owner_vault_accounts(program_id: Pubkey, owner: Pubkey) -> list[AccountMeta]:
    vault = derive_vault_address(owner, program_id).address
    return [_writable(owner, signer=True), _writable(vault)]


def build_request_withdraw(params: RequestWithdrawParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    owner = parse_pubkey(params.owner, field="owner")
    data = discriminator("request_withdraw") + encode_u64(params.amount)
    return Instruction(program_id, data, _owner_vault_accounts(program_id, owner))


def build_set_withdraw_min_delay(params: MinDelayParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    owner = parse_pubkey(params.owner, field="owner")
    data = discriminator("set_withdraw_min_delay") + encode_i64(params.seconds, name="seconds")
    return Instruction(program_id, data, _owner_vault_accounts(program_id, owner))


def build_set_withdraw_rate_limit(params: RateLimitParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    owner = parse_pubkey(params.owner, field="owner")
    data = (
        discriminator("set_withdraw_rate_limit")
        + encode_u32(params.window_seconds, name="window_seconds")
        + encode_u64(params.max_amount, name="max_amount")
    )
    return Instruction(program_id, data, _owner_vault_accounts(program_id, owner))


def build_add_withdraw_whitelist(params: WhitelistParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    owner = parse_pubkey(params.owner, field="owner")
    address = parse_pubkey(params.address, field="address")
    data = discriminator("add_withdraw_whitelist") + bytes(address)
    return Instruction(program_id, data, _owner_vault_accounts(program_id, owner))


def build_remove_withdraw_whitelist(params: WhitelistParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    owner = parse_pubkey(params.owner, field="owner")
    address = parse_pubkey(params.address, field="address")
    data = discriminator("remove_withdraw_whitelist") + bytes(address)
    return Instruction(program_id, data, _owner_vault_accounts(program_id, owner))


def build_emergency_withdraw(params: EmergencyWithdrawParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    authority = parse_pubkey(params.authority, field="authority")
    owner = parse_pubkey(params.owner, field="owner")
    mint = parse_pubkey(params.mint, field="mint")
    vault = derive_vault_address(owner, program_id).address
    vault_authority = derive_vault_authority_address(program_id).address
    accounts = [
        _writable(authority, signer=True),
        _readonly(owner),
        _writable(vault),
        _readonly(vault_authority),
        _writable(derive_associated_token_address(vault, mint)),
        _writable(derive_associated_token_address(owner, mint)),
        _readonly(TOKEN_PROGRAM_ID),
    ]
    data = discriminator("emergency_withdraw") + encode_u64(params.amount)
    return Instruction(program_id, data, accounts)


def _build_yield(method: str, params: YieldParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    owner = parse_pubkey(params.owner, field="owner")
    yield_program = parse_pubkey(params.yield_program, field="yield_program")
    vault = derive_vault_address(owner, program_id).address
    vault_authority = derive_vault_authority_address(program_id).address
    accounts = [
        _writable(owner, signer=True),
        _readonly(owner),
        _writable(vault),
        _readonly(vault_authority),
        _readonly(yield_program),
    ]
    data = discriminator(method) + encode_u64(params.amount)
    return Instruction(program_id, data, accounts)


def build_yield_deposit(params: YieldParams) -> Instruction:
    return _build_yield("yield_deposit", params)


def build_yield_withdraw(params: YieldParams) -> Instruction:
    return _build_yield("yield_withdraw", params)


def build_compound_yield(params: YieldParams) -> Instruction:
    return _build_yield("compound_yield", params)


def build_transfer_collateral(params: TransferCollateralParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    caller_program = parse_pubkey(params.caller_program, field="caller_program")
    mint = parse_pubkey(params.mint, field="mint")
    from_vault = derive_vault_address(params.from_owner, program_id).address
    to_vault = derive_vault_address(params.to_owner, program_id).address
    vault_authority = derive_vault_authority_address(program_id).address
    # The program inspects the instructions sysvar to confirm the caller program.
    accounts = [
        _readonly(caller_program),
        _readonly(vault_authority),
        _readonly(INSTRUCTIONS_SYSVAR_ID),
        _writable(from_vault),
        _writable(to_vault),
        _writable(derive_associated_token_address(from_vault, mint)),
        _writable(derive_associated_token_address(to_vault, mint)),
        _readonly(TOKEN_PROGRAM_ID),
    ]
    data = discriminator("transfer_collateral") + encode_u64(params.amount)
    return Instruction(program_id, data, accounts)


def _build_governance_yield_program(method: str, params: YieldProgramGovernanceParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    governance = parse_pubkey(params.governance, field="governance")
    yield_program = parse_pubkey(params.yield_program, field="yield_program")
    vault_authority = derive_vault_authority_address(program_id).address
    accounts = [_writable(governance, signer=True), _writable(vault_authority)]
    return Instruction(program_id, discriminator(method) + bytes(yield_program), accounts)


def build_add_yield_program(params: YieldProgramGovernanceParams) -> Instruction:
    return _build_governance_yield_program("add_yield_program", params)


def build_remove_yield_program(params: YieldProgramGovernanceParams) -> Instruction:
    return _build_governance_yield_program("remove_yield_program", params)


def build_set_risk_level(params: RiskLevelParams) -> Instruction:
    program_id = parse_pubkey(params.program_id, field="program_id")
    governance = parse_pubkey(params.governance, field="governance")
    vault_authority = derive_vault_authority_address(program_id).address
    accounts = [_writable(governance, signer=True), _writable(vault_authority)]
    data = discriminator("set_risk_level") + encode_u8(params.risk_level, name="risk_level")
    return Instruction(program_id, data, accounts)


def _build_position_manager(opcode: int, params: PositionManagerParams) -> Instruction:
    pm_program = parse_pubkey(params.position_manager_program_id, field="position_manager_program_id")
    vault_program = parse_pubkey(params.vault_program_id, field="vault_program_id")
    owner = parse_pubkey(params.owner, field="owner")
    accounts = [_writable(owner, signer=True), _readonly(vault_program)]
    return Instruction(pm_program, bytes([opcode]) + encode_u64(params.amount), accounts)


def build_pm_lock(params: PositionManagerParams) -> Instruction:
    return _build_position_manager(PM_LOCK_OPCODE, params)


def build_pm_unlock(params: PositionManagerParams) -> Instruction:
    return _build_position_manager(PM_UNLOCK_OPCODE, params)


def compute_budget_instructions(units: int, micro_lamports: int) -> list[Instruction]:
    return [set_compute_unit_limit(int(units)), set_compute_unit_price(int(micro_lamports))]


@dataclass(frozen=True)
class OperationSpec:
    params_type: type
    builder: Callable[[Any], Instruction]


# Lookup table behind the build-instruction request surface.
OPERATIONS: dict[str, OperationSpec] = {
    "initialize_vault": OperationSpec(InitializeVaultParams, build_initialize_vault),
    "deposit": OperationSpec(DepositParams, build_deposit),
    "withdraw": OperationSpec(WithdrawParams, build_withdraw),
    "withdraw_multisig": OperationSpec(WithdrawMultisigParams, build_withdraw_multisig),
    "schedule_timelock": OperationSpec(ScheduleTimelockParams, build_schedule_timelock),
    "request_withdraw": OperationSpec(RequestWithdrawParams, build_request_withdraw),
    "emergency_withdraw": OperationSpec(EmergencyWithdrawParams, build_emergency_withdraw),
    "add_withdraw_whitelist": OperationSpec(WhitelistParams, build_add_withdraw_whitelist),
    "remove_withdraw_whitelist": OperationSpec(WhitelistParams, build_remove_withdraw_whitelist),
    "set_withdraw_min_delay": OperationSpec(MinDelayParams, build_set_withdraw_min_delay),
    "set_withdraw_rate_limit": OperationSpec(RateLimitParams, build_set_withdraw_rate_limit),
    "yield_deposit": OperationSpec(YieldParams, build_yield_deposit),
    "yield_withdraw": OperationSpec(YieldParams, build_yield_withdraw),
    "compound_yield": OperationSpec(YieldParams, build_compound_yield),
    "transfer_collateral": OperationSpec(TransferCollateralParams, build_transfer_collateral),
    "add_yield_program": OperationSpec(YieldProgramGovernanceParams, build_add_yield_program),
    "remove_yield_program": OperationSpec(YieldProgramGovernanceParams, build_remove_yield_program),
    "set_risk_level": OperationSpec(RiskLevelParams, build_set_risk_level),
}


def build_operation(operation: str, fields: dict[str, Any]) -> Instruction:
    op_def = OPERATIONS.get(operation)
    if op_def is None:
        raise ValidationError(f"unsupported operation: {operation}")
    try:
        params = op_def.params_type(**fields)
    except TypeError as exc:
        raise ValidationError(f"invalid parameters for {operation}: {exc}") from exc
    return op_def.builder(params)


def instruction_to_dict(instruction: Instruction) -> dict[str, Any]:
    return {
        "program_id": str(instruction.program_id),
        "accounts": [
            {
                "pubkey": str(meta.pubkey),
                "is_signer": meta.is_signer,
                "is_writable": meta.is_writable,
            }
            for meta in instruction.accounts
        ],
        "data": base64.b64encode(bytes(instruction.data)).decode("ascii"),
    }
