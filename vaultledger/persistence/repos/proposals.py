from __future__ import annotations

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vaultledger.domain.models import Approval, WithdrawalProposal
from vaultledger.persistence.guards import dialect_insert


async def create_proposal(
    session: AsyncSession,
    *,
    proposal_id: str,
    owner: str,
    amount: int,
    threshold: int,
    signers: list[str],
) -> WithdrawalProposal:
    row = WithdrawalProposal(
        id=proposal_id,
        owner=owner,
        amount=amount,
        threshold=threshold,
        signers=list(signers),
        status="pending",
    )
    session.add(row)
    await session.flush()
    return row


async def get_proposal(session: AsyncSession, proposal_id: str) -> WithdrawalProposal | None:
    result = await session.execute(
        select(WithdrawalProposal)
        .where(WithdrawalProposal.id == proposal_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def insert_approval(
    session: AsyncSession, *, proposal_id: str, signer: str, signature: str
) -> bool:
    # The (proposal_id, signer) constraint absorbs concurrent duplicate approvals.
    stmt = dialect_insert(session, Approval).values(
        proposal_id=proposal_id,
        signer=signer,
        signature=signature,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[Approval.proposal_id, Approval.signer])
    result = await session.execute(stmt)
    return result.rowcount == 1


async def count_approvals(session: AsyncSession, proposal_id: str) -> int:
    result = await session.execute(
        select(func.count(func.distinct(Approval.signer))).where(Approval.proposal_id == proposal_id)
    )
    return int(result.scalar_one())


async def list_approvals(session: AsyncSession, proposal_id: str) -> list[Approval]:
    # Insertion order; the last entry is the most recent approver.
    result = await session.execute(
        select(Approval).where(Approval.proposal_id == proposal_id).order_by(Approval.id.asc())
    )
    return list(result.scalars().all())


async def mark_approved(session: AsyncSession, proposal_id: str) -> bool:
    # Compare-and-set so exactly one concurrent approver observes the crossing edge.
    result = await session.execute(
        update(WithdrawalProposal)
        .where(WithdrawalProposal.id == proposal_id, WithdrawalProposal.status == "pending")
        .values(status="approved", updated_at=func.now())
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1
