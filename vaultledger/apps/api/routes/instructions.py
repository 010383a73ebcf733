from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from pydantic import BaseModel

from vaultledger.apps.api.deps import get_vault_service
from vaultledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultledger.apps.api.response import SuccessEnvelope, success_response
from vaultledger.program.instructions import OPERATIONS
from vaultledger.services.vaults import VaultService

router = APIRouter(prefix="/instructions", tags=["instructions"], responses=DEFAULT_ERROR_RESPONSES)


class AccountMetaResponse(BaseModel):
    pubkey: str
    is_signer: bool
    is_writable: bool


class InstructionResponse(BaseModel):
    operation: str
    program_id: str
    accounts: list[AccountMetaResponse]
    # Base64 payload: discriminator followed by the encoded arguments.
    data: str


@router.get("")
async def list_operations(request: Request) -> dict:
    return success_response(request=request, data={"operations": sorted(OPERATIONS)})


@router.post("/{operation}", response_model=SuccessEnvelope[InstructionResponse])
async def build_instruction(
    operation: str,
    request: Request,
    fields: dict[str, Any] = Body(...),
    service: VaultService = Depends(get_vault_service),
) -> dict:
    payload = await service.build_instruction(operation, fields)
    return success_response(request=request, data=InstructionResponse(**payload))
