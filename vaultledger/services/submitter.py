from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.transaction import Transaction

from vaultledger.core.errors import SigningError
from vaultledger.program.instructions import compute_budget_instructions
from vaultledger.providers.chain.keys import load_fee_payer
from vaultledger.services.context import EngineContext
from vaultledger.services.resilience import retry_async, submit_retry_policy
from vaultledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _required_signers(message: Message, keypairs: Sequence[Keypair]) -> list[Keypair]:
    # solders panics instead of raising on a missing or unexpected signer, so match keys up front.
    required = list(message.account_keys[: message.header.num_required_signatures])
    by_key = {keypair.pubkey(): keypair for keypair in keypairs}
    missing = [str(key) for key in required if key not in by_key]
    if missing:
        raise SigningError(f"missing signatures for required signers: {', '.join(missing)}")
    return [by_key[key] for key in required]


class TransactionSubmitter:
    def __init__(
        self,
        ctx: EngineContext,
        *,
        fee_payer: Keypair | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._ctx = ctx
        self._fee_payer = fee_payer
        self._sleep = sleep

    @property
    def fee_payer(self) -> Keypair:
        # Load lazily so read-only deployments never need the custodial key.
        if self._fee_payer is None:
            self._fee_payer = load_fee_payer(self._ctx.settings)
        return self._fee_payer

    def _with_budget(self, instructions: Sequence[Instruction], compute_unit_limit: int | None) -> list[Instruction]:
        settings = self._ctx.settings
        units = compute_unit_limit if compute_unit_limit is not None else settings.compute_unit_limit
        budget = compute_budget_instructions(units, settings.compute_unit_price_micro_lamports)
        return budget + list(instructions)

    def sign(
        self,
        instructions: Sequence[Instruction],
        blockhash: Hash,
        *,
        extra_signers: Sequence[Keypair] = (),
        compute_unit_limit: int | None = None,
    ) -> bytes:
        payer = self.fee_payer
        message = Message.new_with_blockhash(
            self._with_budget(instructions, compute_unit_limit), payer.pubkey(), blockhash
        )
        signers = _required_signers(message, [payer, *extra_signers])
        try:
            tx = Transaction(signers, message, blockhash)
        except Exception as exc:  # noqa: BLE001 - solders signer errors share no common base
            raise SigningError(f"failed to sign transaction: {exc}") from exc
        return bytes(tx)

    async def submit(
        self,
        instructions: Sequence[Instruction],
        *,
        extra_signers: Sequence[Keypair] = (),
        compute_unit_limit: int | None = None,
    ) -> str:
        chain = self._ctx.chain
        blockhash = await chain.get_latest_blockhash()
        raw = self.sign(
            instructions,
            blockhash,
            extra_signers=extra_signers,
            compute_unit_limit=compute_unit_limit,
        )

        async def _send() -> str:
            # Every attempt resends the same signed bytes.
            return await chain.send_transaction(raw)

        signature = await retry_async(
            _send,
            policy=submit_retry_policy(self._ctx.settings),
            sleep=self._sleep,
            counter="submit_retries_total",
        )
        increment_counter("transactions_submitted_total")
        logger.info("transaction_submitted signature=%s instructions=%s", signature, len(instructions))
        return signature

    async def build_partial_transaction(
        self,
        instructions: Sequence[Instruction],
        *,
        compute_unit_limit: int | None = None,
    ) -> bytes:
        # Fee payer signs now; remaining signer slots stay empty for out-of-band co-signing.
        blockhash = await self._ctx.chain.get_latest_blockhash()
        payer = self.fee_payer
        message = Message(self._with_budget(instructions, compute_unit_limit), payer.pubkey())
        tx = Transaction.new_unsigned(message)
        try:
            tx.partial_sign([payer], blockhash)
        except Exception as exc:  # noqa: BLE001 - solders signer errors share no common base
            raise SigningError(f"failed to partially sign transaction: {exc}") from exc
        return bytes(tx)
