from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from solders.keypair import Keypair

from vaultledger.core.errors import ValidationError
from vaultledger.domain.models import Timelock
from vaultledger.persistence.repos import timelocks as timelocks_repo
from vaultledger.program.addresses import parse_pubkey
from vaultledger.program.instructions import ScheduleTimelockParams, build_schedule_timelock, encode_i64
from vaultledger.services.context import EngineContext
from vaultledger.services.loops import run_periodic
from vaultledger.services.submitter import TransactionSubmitter


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def timelock_payload(row: Timelock) -> dict:
    return {
        "id": row.id,
        "owner": row.owner,
        "amount": int(row.amount),
        "unlock_at": _as_utc(row.unlock_at).isoformat(),
        "status": row.status,
        "signature": row.signature,
    }


@dataclass
class TimelockSweep:
    due_soon: list[int] = field(default_factory=list)
    available: list[int] = field(default_factory=list)


class TimelockService:
    def __init__(
        self,
        ctx: EngineContext,
        submitter: TransactionSubmitter,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ctx = ctx
        self._submitter = submitter
        self._clock = clock

    async def schedule(
        self,
        owner: str,
        amount: int,
        duration_seconds: int,
        *,
        extra_signers: Sequence[Keypair] = (),
    ) -> dict:
        owner_key = str(parse_pubkey(owner, field="owner"))
        encode_i64(duration_seconds, name="duration_seconds")
        if duration_seconds <= 0:
            raise ValidationError("duration_seconds must be positive")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer")
        instruction = build_schedule_timelock(
            ScheduleTimelockParams(
                program_id=self._ctx.settings.program_id,
                owner=owner_key,
                amount=amount,
                duration_seconds=duration_seconds,
            )
        )
        signature = await self._submitter.submit([instruction], extra_signers=extra_signers)
        unlock_at = self._clock() + timedelta(seconds=duration_seconds)
        async with self._ctx.sessions() as session:
            row = await timelocks_repo.create_timelock(
                session, owner=owner_key, amount=amount, unlock_at=unlock_at, signature=signature
            )
            await session.commit()
            payload = timelock_payload(row)
        logger.info(
            "timelock_scheduled owner=%s amount=%s unlock_at=%s signature=%s",
            owner_key,
            amount,
            payload["unlock_at"],
            signature,
        )
        return payload

    async def list_for_owner(self, owner: str) -> list[dict]:
        async with self._ctx.sessions() as session:
            return [timelock_payload(row) for row in await timelocks_repo.list_for_owner(session, owner)]

    async def sweep(self) -> TimelockSweep:
        result = TimelockSweep()
        now = self._clock()
        horizon = now + timedelta(seconds=self._ctx.settings.timelock_due_soon_s)
        async with self._ctx.sessions() as session:
            for row in await timelocks_repo.list_due_soon(session, now=now, horizon=horizon):
                if not await timelocks_repo.mark_due_soon_notified(session, row.id):
                    continue
                await session.commit()
                result.due_soon.append(row.id)
                self._ctx.notifier.publish("timelock_due_soon", timelock_payload(row))

            for row in await timelocks_repo.list_due(session, now=now):
                if not await timelocks_repo.mark_available(session, row.id):
                    continue
                await session.commit()
                result.available.append(row.id)
                payload = timelock_payload(row)
                payload["status"] = "available"
                self._ctx.notifier.publish("timelock_available", payload)

        if result.due_soon or result.available:
            logger.info(
                "timelock_sweep_done due_soon=%s available=%s",
                len(result.due_soon),
                len(result.available),
            )
        return result

    async def run(self, shutdown: asyncio.Event) -> None:
        await run_periodic(
            "timelocks",
            self.sweep,
            interval_s=self._ctx.settings.timelock_sweep_interval_s,
            shutdown=shutdown,
        )
