from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from vaultledger.domain.models import AuthorizedProgram
from vaultledger.persistence.guards import dialect_insert


async def add_authorized_program(session: AsyncSession, program_id: str) -> bool:
    stmt = dialect_insert(session, AuthorizedProgram).values(program_id=program_id)
    stmt = stmt.on_conflict_do_nothing(index_elements=[AuthorizedProgram.program_id])
    result = await session.execute(stmt)
    return result.rowcount == 1


async def remove_authorized_program(session: AsyncSession, program_id: str) -> bool:
    result = await session.execute(
        delete(AuthorizedProgram).where(AuthorizedProgram.program_id == program_id)
    )
    return result.rowcount == 1


async def is_authorized_program(session: AsyncSession, program_id: str) -> bool:
    result = await session.execute(
        select(AuthorizedProgram.program_id).where(AuthorizedProgram.program_id == program_id)
    )
    return result.scalar_one_or_none() is not None


async def list_authorized_programs(session: AsyncSession) -> list[str]:
    result = await session.execute(
        select(AuthorizedProgram.program_id).order_by(AuthorizedProgram.program_id.asc())
    )
    return list(result.scalars().all())
