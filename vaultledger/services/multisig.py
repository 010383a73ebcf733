from __future__ import annotations

import base64
import logging
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import uuid4

from solders.pubkey import Pubkey
from solders.signature import Signature
from sqlalchemy.exc import SQLAlchemyError

from vaultledger.core.errors import (
    AuthorizationError,
    NotFoundError,
    PersistenceError,
    ProposalStateError,
    ValidationError,
)
from vaultledger.domain.models import WithdrawalProposal
from vaultledger.persistence.repos import proposals as proposals_repo
from vaultledger.program.addresses import parse_pubkey
from vaultledger.program.instructions import WithdrawMultisigParams, build_withdraw_multisig, encode_u64
from vaultledger.program.layout import fetch_vault_multisig_config
from vaultledger.services.context import EngineContext
from vaultledger.services.submitter import TransactionSubmitter


logger = logging.getLogger(__name__)


def approval_message(proposal_id: str) -> bytes:
    # Signers sign this exact byte string to bind their approval to one proposal.
    return f"multisig-approve:{proposal_id}".encode("utf-8")


def verify_approval_signature(*, signer: str, signature: str, proposal_id: str) -> bool:
    try:
        pubkey = Pubkey.from_string(signer)
        sig = Signature.from_string(signature)
    except ValueError:
        return False
    return sig.verify(pubkey, approval_message(proposal_id))


@dataclass(frozen=True)
class ProposalView:
    id: str
    owner: str
    amount: int
    threshold: int
    signers: list[str]
    status: str

    @classmethod
    def from_row(cls, row: WithdrawalProposal) -> "ProposalView":
        return cls(
            id=row.id,
            owner=row.owner,
            amount=int(row.amount),
            threshold=int(row.threshold),
            signers=list(row.signers),
            status=row.status,
        )


@dataclass(frozen=True)
class ProposalStatus:
    id: str
    status: str
    approvals: int
    threshold: int


@dataclass(frozen=True)
class PartialWithdrawal:
    # Base64 legacy transaction, fee payer signature already attached.
    transaction: str
    initiating_authority: str
    required_cosigners: list[str]


@dataclass(frozen=True)
class ApprovalResult:
    proposal_id: str
    ready: bool
    approvals: int
    threshold: int
    duplicate: bool = False
    partial_transaction: str | None = None
    initiating_authority: str | None = None
    required_cosigners: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _validate_signer_set(threshold: Any, signers: Any) -> tuple[int, list[str]]:
    if isinstance(threshold, bool) or not isinstance(threshold, int):
        raise ValidationError("threshold must be an integer")
    if not isinstance(signers, (list, tuple)) or not signers:
        raise ValidationError("signers must be a non-empty list")
    normalized = [str(parse_pubkey(signer, field="signer")) for signer in signers]
    if len(set(normalized)) != len(normalized):
        raise ValidationError("signers must be unique")
    if threshold < 1:
        raise ValidationError("threshold must be at least 1")
    if threshold > len(normalized):
        raise ValidationError(
            f"threshold {threshold} exceeds signer count {len(normalized)}"
        )
    return threshold, normalized


class MultisigCoordinator:
    def __init__(self, ctx: EngineContext, submitter: TransactionSubmitter) -> None:
        self._ctx = ctx
        self._submitter = submitter

    async def create_proposal(
        self,
        *,
        owner: str,
        amount: int,
        threshold: int | None = None,
        signers: list[str] | None = None,
    ) -> ProposalView:
        owner_key = str(parse_pubkey(owner, field="owner"))
        encode_u64(amount)
        if amount <= 0:
            raise ValidationError("amount must be positive")
        if (threshold is None) != (signers is None):
            raise ValidationError("threshold and signers must be supplied together")
        if signers is None:
            # Fall back to the authoritative configuration stored on the vault account.
            onchain_threshold, onchain_signers = await fetch_vault_multisig_config(
                self._ctx.chain, owner_key, self._ctx.settings.program_id
            )
            if onchain_threshold == 0 or not onchain_signers:
                raise ValidationError(f"vault {owner_key} has no multisig configuration")
            threshold, signers = _validate_signer_set(onchain_threshold, onchain_signers)
        else:
            threshold, signers = _validate_signer_set(threshold, signers)

        proposal_id = uuid4().hex
        async with self._ctx.sessions() as session:
            try:
                row = await proposals_repo.create_proposal(
                    session,
                    proposal_id=proposal_id,
                    owner=owner_key,
                    amount=amount,
                    threshold=threshold,
                    signers=signers,
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceError("failed to persist proposal") from exc
            view = ProposalView.from_row(row)

        logger.info(
            "proposal_created proposal_id=%s owner=%s threshold=%s signers=%s",
            view.id,
            view.owner,
            view.threshold,
            len(view.signers),
        )
        self._ctx.notifier.publish(
            "proposal_created",
            {
                "proposal_id": view.id,
                "owner": view.owner,
                "amount": view.amount,
                "threshold": view.threshold,
                "signers": view.signers,
            },
        )
        return view

    async def approve(self, proposal_id: str, *, signer: str, signature: str) -> ApprovalResult:
        signer = str(parse_pubkey(signer, field="signer"))
        async with self._ctx.sessions() as session:
            proposal = await proposals_repo.get_proposal(session, proposal_id)
            if proposal is None:
                raise NotFoundError(f"proposal {proposal_id} not found")
            if proposal.status != "pending":
                raise ProposalStateError(f"proposal {proposal_id} is {proposal.status}")
            if signer not in proposal.signers:
                raise AuthorizationError(f"signer {signer} is not allowed for proposal {proposal_id}")
            if self._ctx.settings.multisig_signature_required and not verify_approval_signature(
                signer=signer, signature=signature, proposal_id=proposal_id
            ):
                raise AuthorizationError("approval signature verification failed")

            # The approval must be durable before the count is evaluated.
            try:
                inserted = await proposals_repo.insert_approval(
                    session, proposal_id=proposal_id, signer=signer, signature=signature
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceError("failed to persist approval") from exc

            approvals = await proposals_repo.count_approvals(session, proposal_id)
            threshold = int(proposal.threshold)
            crossed = False
            approvers: list[str] = []
            if approvals >= threshold:
                crossed = await proposals_repo.mark_approved(session, proposal_id)
                await session.commit()
                approvers = [row.signer for row in await proposals_repo.list_approvals(session, proposal_id)]
            owner = proposal.owner
            amount = int(proposal.amount)

        duplicate = not inserted
        logger.info(
            "approval_recorded proposal_id=%s signer=%s approvals=%s threshold=%s duplicate=%s",
            proposal_id,
            signer,
            approvals,
            threshold,
            duplicate,
        )
        self._ctx.notifier.publish(
            "approval_recorded",
            {
                "proposal_id": proposal_id,
                "signer": signer,
                "approvals": approvals,
                "threshold": threshold,
                "duplicate": duplicate,
            },
        )

        if approvals < threshold:
            return ApprovalResult(
                proposal_id=proposal_id,
                ready=False,
                approvals=approvals,
                threshold=threshold,
                duplicate=duplicate,
            )
        if not crossed:
            # A concurrent approver won the transition and owns the artifact build.
            return ApprovalResult(
                proposal_id=proposal_id,
                ready=True,
                approvals=approvals,
                threshold=threshold,
                duplicate=duplicate,
            )

        partial = await self._build_partial(owner=owner, amount=amount, approvers=approvers)
        logger.info(
            "proposal_approved proposal_id=%s authority=%s cosigners=%s",
            proposal_id,
            partial.initiating_authority,
            len(partial.required_cosigners),
        )
        return ApprovalResult(
            proposal_id=proposal_id,
            ready=True,
            approvals=approvals,
            threshold=threshold,
            duplicate=duplicate,
            partial_transaction=partial.transaction,
            initiating_authority=partial.initiating_authority,
            required_cosigners=partial.required_cosigners,
        )

    async def _build_partial(self, *, owner: str, amount: int, approvers: list[str]) -> PartialWithdrawal:
        # Most recent approver initiates; everyone else co-signs out-of-band.
        authority = approvers[-1]
        cosigners = [signer for signer in approvers if signer != authority]
        instruction = build_withdraw_multisig(
            WithdrawMultisigParams(
                program_id=self._ctx.settings.program_id,
                owner=owner,
                authority=authority,
                amount=amount,
                other_signers=list(cosigners),
            )
        )
        raw = await self._submitter.build_partial_transaction(
            [instruction], compute_unit_limit=self._ctx.settings.multisig_compute_unit_limit
        )
        return PartialWithdrawal(
            transaction=base64.b64encode(raw).decode("ascii"),
            initiating_authority=authority,
            required_cosigners=cosigners,
        )

    async def build_approved_transaction(self, proposal_id: str) -> PartialWithdrawal:
        async with self._ctx.sessions() as session:
            proposal = await proposals_repo.get_proposal(session, proposal_id)
            if proposal is None:
                raise NotFoundError(f"proposal {proposal_id} not found")
            if proposal.status != "approved":
                raise ProposalStateError(f"proposal {proposal_id} is {proposal.status}")
            approvers = [row.signer for row in await proposals_repo.list_approvals(session, proposal_id)]
            owner = proposal.owner
            amount = int(proposal.amount)
        return await self._build_partial(owner=owner, amount=amount, approvers=approvers)

    async def get_status(self, proposal_id: str) -> ProposalStatus:
        async with self._ctx.sessions() as session:
            proposal = await proposals_repo.get_proposal(session, proposal_id)
            if proposal is None:
                raise NotFoundError(f"proposal {proposal_id} not found")
            approvals = await proposals_repo.count_approvals(session, proposal_id)
            return ProposalStatus(
                id=proposal.id,
                status=proposal.status,
                approvals=approvals,
                threshold=int(proposal.threshold),
            )

    async def get_proposal(self, proposal_id: str) -> ProposalView:
        async with self._ctx.sessions() as session:
            proposal = await proposals_repo.get_proposal(session, proposal_id)
            if proposal is None:
                raise NotFoundError(f"proposal {proposal_id} not found")
            return ProposalView.from_row(proposal)
