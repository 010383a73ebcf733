from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from vaultledger.domain.models import ProtocolApy


async def insert_protocol_apy(
    session: AsyncSession, *, protocol: str, apy: float, details: dict[str, Any] | None = None
) -> ProtocolApy:
    row = ProtocolApy(protocol=protocol, apy=float(apy), details_json=details)
    session.add(row)
    await session.flush()
    return row


async def latest_apys(session: AsyncSession) -> dict[str, float]:
    # Latest sample per protocol by insertion id.
    latest_ids = (
        select(func.max(ProtocolApy.id).label("id")).group_by(ProtocolApy.protocol).subquery()
    )
    result = await session.execute(
        select(ProtocolApy).join(latest_ids, ProtocolApy.id == latest_ids.c.id)
    )
    return {row.protocol: row.apy for row in result.scalars().all()}
