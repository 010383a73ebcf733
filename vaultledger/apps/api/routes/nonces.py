from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from vaultledger.apps.api.deps import get_nonce_service
from vaultledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultledger.apps.api.response import success_response
from vaultledger.services.nonces import NonceService

router = APIRouter(prefix="/nonces", tags=["nonces"], responses=DEFAULT_ERROR_RESPONSES)


class NonceIssueRequest(BaseModel):
    owner: str


class NonceConsumeRequest(BaseModel):
    owner: str
    nonce: str


@router.post("", status_code=201)
async def issue_nonce(
    payload: NonceIssueRequest,
    request: Request,
    service: NonceService = Depends(get_nonce_service),
) -> dict:
    nonce = await service.issue(payload.owner)
    return success_response(request=request, data={"owner": payload.owner, "nonce": nonce})


@router.post("/consume")
async def consume_nonce(
    payload: NonceConsumeRequest,
    request: Request,
    service: NonceService = Depends(get_nonce_service),
) -> dict:
    await service.consume(payload.owner, payload.nonce)
    return success_response(request=request, data={"consumed": True})
