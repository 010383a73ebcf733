from __future__ import annotations

import asyncio
import hashlib
from typing import AsyncIterator

from solders.hash import Hash
from solders.transaction import Transaction

from vaultledger.core.errors import ChainPermanentError, ChainTransientError
from vaultledger.providers.chain.base import ChainTransaction, LogEvent


class FakeChainClient:
    def __init__(self) -> None:
        # Deterministic in-memory chain keeps tests and local runs offline.
        self.blockhash = Hash(hashlib.sha256(b"vaultledger-fake-blockhash").digest())
        self.balances: dict[str, int] = {}
        self.accounts: dict[str, bytes] = {}
        self.transactions: dict[str, ChainTransaction] = {}
        self.sent: list[bytes] = []
        self.send_attempts = 0
        # Errors raised by upcoming send attempts, consumed in order.
        self.send_failures: list[Exception] = []
        self.balance_failures: dict[str, Exception] = {}
        self.blockhash_failure: Exception | None = None
        self._log_queue: asyncio.Queue[LogEvent | None] = asyncio.Queue()
        self.subscriptions = 0

    async def get_latest_blockhash(self) -> Hash:
        if self.blockhash_failure is not None:
            raise self.blockhash_failure
        return self.blockhash

    async def send_transaction(self, raw: bytes) -> str:
        self.send_attempts += 1
        if self.send_failures:
            raise self.send_failures.pop(0)
        try:
            tx = Transaction.from_bytes(raw)
        except ValueError as exc:
            raise ChainPermanentError("sendTransaction: malformed transaction") from exc
        self.sent.append(raw)
        return str(tx.signatures[0])

    async def get_transaction(self, signature: str) -> ChainTransaction | None:
        return self.transactions.get(signature)

    async def get_token_account_balance(self, account: str) -> int:
        failure = self.balance_failures.get(account)
        if failure is not None:
            raise failure
        if account not in self.balances:
            raise ChainTransientError(f"getTokenAccountBalance: unknown account {account}")
        return self.balances[account]

    async def get_account_data(self, address: str) -> bytes | None:
        return self.accounts.get(address)

    def push_log(self, event: LogEvent, transaction: ChainTransaction | None = None) -> None:
        if transaction is not None:
            self.transactions[transaction.signature] = transaction
        self._log_queue.put_nowait(event)

    def end_stream(self) -> None:
        # Terminates the current subscription as a dropped websocket would.
        self._log_queue.put_nowait(None)

    async def subscribe_logs(self, program_id: str) -> AsyncIterator[LogEvent]:
        _ = program_id
        self.subscriptions += 1
        while True:
            event = await self._log_queue.get()
            if event is None:
                return
            yield event

    async def aclose(self) -> None:
        return None
