from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from vaultledger.apps.api.deps import get_multisig
from vaultledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultledger.apps.api.response import success_response
from vaultledger.services.multisig import MultisigCoordinator

router = APIRouter(prefix="/multisig", tags=["multisig"], responses=DEFAULT_ERROR_RESPONSES)


class ProposalCreateRequest(BaseModel):
    owner: str
    amount: int = Field(gt=0)
    # Omit both to use the configuration stored on the vault account.
    threshold: int | None = None
    signers: list[str] | None = None

    model_config = {"extra": "forbid"}


class ApprovalRequest(BaseModel):
    signer: str
    # Base58 signature over "multisig-approve:<proposal_id>".
    signature: str

    model_config = {"extra": "forbid"}


@router.post("/proposals", status_code=201)
async def create_proposal(
    payload: ProposalCreateRequest,
    request: Request,
    coordinator: MultisigCoordinator = Depends(get_multisig),
) -> dict:
    view = await coordinator.create_proposal(
        owner=payload.owner,
        amount=payload.amount,
        threshold=payload.threshold,
        signers=payload.signers,
    )
    return success_response(request=request, data=asdict(view))


@router.get("/proposals/{proposal_id}")
async def get_proposal(
    proposal_id: str,
    request: Request,
    coordinator: MultisigCoordinator = Depends(get_multisig),
) -> dict:
    view = await coordinator.get_proposal(proposal_id)
    return success_response(request=request, data=asdict(view))


@router.post("/proposals/{proposal_id}/approvals")
async def approve_proposal(
    proposal_id: str,
    payload: ApprovalRequest,
    request: Request,
    coordinator: MultisigCoordinator = Depends(get_multisig),
) -> dict:
    result = await coordinator.approve(proposal_id, signer=payload.signer, signature=payload.signature)
    return success_response(request=request, data=result.to_dict())


@router.get("/proposals/{proposal_id}/status")
async def proposal_status(
    proposal_id: str,
    request: Request,
    coordinator: MultisigCoordinator = Depends(get_multisig),
) -> dict:
    status = await coordinator.get_status(proposal_id)
    return success_response(request=request, data=asdict(status))


@router.get("/proposals/{proposal_id}/transaction")
async def proposal_transaction(
    proposal_id: str,
    request: Request,
    coordinator: MultisigCoordinator = Depends(get_multisig),
) -> dict:
    partial = await coordinator.build_approved_transaction(proposal_id)
    return success_response(request=request, data=asdict(partial))
