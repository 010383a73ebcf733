from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from vaultledger.apps.api.deps import get_nonce_service, get_timelock_service, get_vault_service
from vaultledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultledger.apps.api.response import success_response
from vaultledger.services.nonces import NonceService
from vaultledger.services.timelocks import TimelockService
from vaultledger.services.vaults import VaultService

router = APIRouter(prefix="/vaults", tags=["vaults"], responses=DEFAULT_ERROR_RESPONSES)


class SettlementAccountRequest(BaseModel):
    settlement_account: str


class AmountRequest(BaseModel):
    amount: int = Field(gt=0)


class WithdrawRequest(BaseModel):
    amount: int = Field(gt=0)
    # Single-use token from POST /v1/nonces; consumed before anything is signed.
    nonce: str


class EmergencyWithdrawRequest(WithdrawRequest):
    authority: str | None = None


class TimelockRequest(BaseModel):
    amount: int = Field(gt=0)
    duration_seconds: int = Field(gt=0)


@router.get("/{owner}")
async def get_vault(owner: str, request: Request, service: VaultService = Depends(get_vault_service)) -> dict:
    vault = await service.get_vault(owner)
    return success_response(request=request, data=asdict(vault))


@router.put("/{owner}/settlement-account")
async def link_settlement_account(
    owner: str,
    payload: SettlementAccountRequest,
    request: Request,
    service: VaultService = Depends(get_vault_service),
) -> dict:
    vault = await service.link_settlement_account(owner, payload.settlement_account)
    return success_response(request=request, data=asdict(vault))


@router.get("/{owner}/balance")
async def live_balance(owner: str, request: Request, service: VaultService = Depends(get_vault_service)) -> dict:
    balance = await service.query_live_balance(owner)
    available = await service.available_balance(owner)
    return success_response(
        request=request,
        data={"owner": owner, "balance": balance, "available_balance": available},
    )


@router.get("/{owner}/transactions")
async def list_transactions(
    owner: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: VaultService = Depends(get_vault_service),
) -> dict:
    items = await service.list_transactions(owner, limit=limit, offset=offset)
    return success_response(request=request, data={"items": items})


@router.post("/{owner}/withdraw", status_code=202)
async def withdraw(
    owner: str,
    payload: WithdrawRequest,
    request: Request,
    service: VaultService = Depends(get_vault_service),
    nonces: NonceService = Depends(get_nonce_service),
) -> dict:
    await nonces.consume(owner, payload.nonce)
    signature = await service.submit_withdraw(owner, payload.amount)
    return success_response(request=request, data={"signature": signature, "status": "pending"})


@router.post("/{owner}/emergency-withdraw", status_code=202)
async def emergency_withdraw(
    owner: str,
    payload: EmergencyWithdrawRequest,
    request: Request,
    service: VaultService = Depends(get_vault_service),
    nonces: NonceService = Depends(get_nonce_service),
) -> dict:
    await nonces.consume(owner, payload.nonce)
    signature = await service.submit_emergency_withdraw(owner, payload.amount, authority=payload.authority)
    return success_response(request=request, data={"signature": signature, "status": "pending"})


@router.post("/{owner}/lock", status_code=202)
async def lock_collateral(
    owner: str,
    payload: AmountRequest,
    request: Request,
    service: VaultService = Depends(get_vault_service),
) -> dict:
    signature = await service.lock(owner, payload.amount)
    return success_response(request=request, data={"signature": signature, "status": "pending"})


@router.post("/{owner}/unlock", status_code=202)
async def unlock_collateral(
    owner: str,
    payload: AmountRequest,
    request: Request,
    service: VaultService = Depends(get_vault_service),
) -> dict:
    signature = await service.unlock(owner, payload.amount)
    return success_response(request=request, data={"signature": signature, "status": "pending"})


@router.post("/{owner}/deactivate")
async def deactivate_vault(owner: str, request: Request, service: VaultService = Depends(get_vault_service)) -> dict:
    await service.deactivate(owner)
    return success_response(request=request, data={"owner": owner, "status": "inactive"})


@router.get("/{owner}/timelocks")
async def list_timelocks(
    owner: str,
    request: Request,
    service: TimelockService = Depends(get_timelock_service),
) -> dict:
    return success_response(request=request, data={"items": await service.list_for_owner(owner)})


@router.post("/{owner}/timelocks", status_code=201)
async def schedule_timelock(
    owner: str,
    payload: TimelockRequest,
    request: Request,
    service: TimelockService = Depends(get_timelock_service),
) -> dict:
    timelock = await service.schedule(owner, payload.amount, payload.duration_seconds)
    return success_response(request=request, data=timelock)
