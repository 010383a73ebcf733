from __future__ import annotations

import logging
import secrets

from vaultledger.core.errors import ConflictError, NotFoundError, ValidationError
from vaultledger.persistence.repos import nonces as nonces_repo
from vaultledger.program.addresses import parse_pubkey
from vaultledger.services.context import EngineContext


logger = logging.getLogger(__name__)

NONCE_BYTES = 16


class NonceService:
    """Single-use anti-replay tokens bound to an owner."""

    def __init__(self, ctx: EngineContext) -> None:
        self._ctx = ctx

    async def issue(self, owner: str) -> str:
        owner_key = str(parse_pubkey(owner, field="owner"))
        async with self._ctx.sessions() as session:
            # A collision on a 128-bit token is not expected; retry once rather than loop.
            for _ in range(2):
                nonce = secrets.token_hex(NONCE_BYTES)
                if await nonces_repo.insert_nonce(session, nonce=nonce, owner=owner_key):
                    await session.commit()
                    logger.info("nonce_issued owner=%s", owner_key)
                    return nonce
        raise ConflictError("could not allocate a unique nonce")

    async def consume(self, owner: str, nonce: str) -> None:
        if not nonce:
            raise ValidationError("nonce is required")
        owner_key = str(parse_pubkey(owner, field="owner"))
        async with self._ctx.sessions() as session:
            consumed = await nonces_repo.consume_nonce(session, nonce=nonce, owner=owner_key)
            if consumed:
                await session.commit()
                logger.info("nonce_consumed owner=%s", owner_key)
                return
            row = await nonces_repo.get_nonce(session, nonce)
        if row is None or row.owner != owner_key:
            raise NotFoundError("nonce not found")
        raise ConflictError("nonce already used")
