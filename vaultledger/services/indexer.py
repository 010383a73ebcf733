from __future__ import annotations

import asyncio
import contextlib
import logging
import struct
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from vaultledger.persistence.repos import transactions as transactions_repo
from vaultledger.persistence.repos import vaults as vaults_repo
from vaultledger.program.instructions import AMOUNT_METHODS, discriminator
from vaultledger.providers.chain.base import LogEvent
from vaultledger.services.context import EngineContext
from vaultledger.services.loops import sleep_or_shutdown
from vaultledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_AMOUNT_DISCRIMINATORS = frozenset(discriminator(name) for name in AMOUNT_METHODS)

# Checked in order: the longer keyword must win over the keyword it contains.
_KIND_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("emergency", "emergency_withdraw"),
    ("deposit", "deposit"),
    ("withdraw", "withdraw"),
    ("unlock", "unlock"),
    ("lock", "lock"),
)
# Yield movements mention deposit/withdraw but do not settle against the vault balance.
_IGNORED_MARKERS = ("yield", "compound")


def classify_log_kind(logs: list[str]) -> str | None:
    """Best-effort keyword classification of a program log batch.

    Kept as a standalone function so a strict instruction decoder can replace
    it without touching persistence.
    """
    text = "\n".join(logs).lower()
    if any(marker in text for marker in _IGNORED_MARKERS):
        return None
    for keyword, kind in _KIND_KEYWORDS:
        if keyword in text:
            return kind
    return None


def decode_amount(data: bytes) -> int | None:
    # Discriminator-prefixed payloads carry the amount right after the 8-byte prefix.
    if len(data) >= 16 and bytes(data[:8]) in _AMOUNT_DISCRIMINATORS:
        return struct.unpack_from("<Q", data, 8)[0]
    # Legacy single-byte opcode layout.
    if len(data) >= 9:
        return struct.unpack_from("<Q", data, 1)[0]
    return None


@dataclass(frozen=True)
class IndexedEvent:
    signature: str
    owner: str
    kind: str
    amount: int | None
    balance: int
    previous_balance: int


def _deltas(kind: str, amount: int | None) -> tuple[int, int]:
    value = amount or 0
    if kind == "deposit":
        return value, 0
    if kind in ("withdraw", "emergency_withdraw"):
        return 0, value
    return 0, 0


class EventIndexer:
    def __init__(
        self,
        ctx: EngineContext,
        *,
        classifier: Callable[[list[str]], str | None] = classify_log_kind,
    ) -> None:
        self._ctx = ctx
        self._classify = classifier

    async def run(self, shutdown: asyncio.Event) -> None:
        program_id = self._ctx.settings.program_id
        if not program_id:
            logger.warning("indexer_disabled reason=program_id_not_configured")
            return
        delay = self._ctx.settings.indexer_reconnect_delay_s
        # Reconnect forever: the subscription is the indexer's only liveness mechanism.
        while not shutdown.is_set():
            consume = asyncio.create_task(self._consume(program_id))
            stopper = asyncio.create_task(shutdown.wait())
            done, _ = await asyncio.wait({consume, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if stopper in done:
                consume.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await consume
                break
            stopper.cancel()
            exc = consume.exception()
            if exc is not None:
                logger.warning("indexer_stream_failed program_id=%s", program_id, exc_info=exc)
            else:
                logger.warning("indexer_stream_ended program_id=%s", program_id)
            increment_counter("indexer_reconnects_total")
            if await sleep_or_shutdown(shutdown, delay):
                break
        logger.info("indexer_stopped")

    async def _consume(self, program_id: str) -> None:
        logger.info("indexer_subscribing program_id=%s", program_id)
        async for event in self._ctx.chain.subscribe_logs(program_id):
            try:
                await self.handle_log(event)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - one bad item must not end the subscription.
                increment_counter("indexer_item_failures_total")
                logger.exception("indexer_item_failed signature=%s", event.signature)

    async def handle_log(self, event: LogEvent) -> IndexedEvent | None:
        if event.err is not None:
            increment_counter("indexer_skipped_total.failed_tx")
            return None
        kind = self._classify(event.logs)
        if kind is None:
            increment_counter("indexer_skipped_total.unclassified")
            return None

        tx = await self._ctx.chain.get_transaction(event.signature)
        if tx is None or not tx.succeeded:
            increment_counter("indexer_skipped_total.unavailable_tx")
            logger.info("indexer_tx_unavailable signature=%s", event.signature)
            return None
        program_id = self._ctx.settings.program_id
        instruction = next((ix for ix in tx.instructions if ix.program_id == program_id), None)
        if instruction is None or not instruction.accounts:
            increment_counter("indexer_skipped_total.no_program_ix")
            logger.info("indexer_no_program_instruction signature=%s", event.signature)
            return None
        owner = instruction.accounts[0]
        amount = decode_amount(instruction.data)
        deposit_delta, withdraw_delta = _deltas(kind, amount)

        async with self._ctx.sessions() as session:
            vault = await vaults_repo.get_vault(session, owner)
            previous_balance = int(vault.total_balance) if vault is not None else 0
            settlement_account = vault.settlement_account if vault is not None else None
            try:
                inserted = await transactions_repo.insert_transaction(
                    session,
                    signature=event.signature,
                    owner=owner,
                    amount=amount,
                    kind=kind,
                    status="confirmed",
                )
                if not inserted:
                    # A row we submitted as pending is confirmed by observation; anything else is a replay.
                    if not await transactions_repo.mark_confirmed(session, event.signature):
                        await session.rollback()
                        increment_counter("indexer_duplicates_total")
                        logger.info("indexer_duplicate signature=%s", event.signature)
                        return None
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise

        balance = await self._live_balance(
            settlement_account,
            fallback=previous_balance + deposit_delta - withdraw_delta,
        )
        async with self._ctx.sessions() as session:
            await vaults_repo.update_snapshot(
                session,
                owner,
                new_total_balance=balance,
                deposit_delta=deposit_delta,
                withdraw_delta=withdraw_delta,
            )
            await session.commit()

        increment_counter(f"indexer_events_total.{kind}")
        logger.info(
            "indexer_event_recorded signature=%s owner=%s kind=%s amount=%s balance=%s",
            event.signature,
            owner,
            kind,
            amount,
            balance,
        )
        self._ctx.notifier.publish(
            "balance_update",
            {
                "owner": owner,
                "balance": balance,
                "signature": event.signature,
                "kind": kind,
                "amount": amount,
            },
        )
        return IndexedEvent(
            signature=event.signature,
            owner=owner,
            kind=kind,
            amount=amount,
            balance=balance,
            previous_balance=previous_balance,
        )

    async def _live_balance(self, settlement_account: str | None, *, fallback: int) -> int:
        if not settlement_account:
            return max(0, fallback)
        try:
            return await self._ctx.chain.get_token_account_balance(settlement_account)
        except Exception as exc:  # noqa: BLE001 - fall back to the locally computed balance
            increment_counter("indexer_balance_fallbacks_total")
            logger.warning(
                "indexer_balance_fallback account=%s fallback=%s", settlement_account, fallback, exc_info=exc
            )
            return max(0, fallback)
