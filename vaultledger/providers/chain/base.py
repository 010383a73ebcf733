from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from solders.hash import Hash


@dataclass(frozen=True)
class ObservedInstruction:
    # Account indices already resolved against static and loaded keys.
    program_id: str
    accounts: list[str]
    data: bytes


@dataclass(frozen=True)
class ChainTransaction:
    signature: str
    instructions: list[ObservedInstruction]
    err: Any | None = None
    logs: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.err is None


@dataclass(frozen=True)
class LogEvent:
    signature: str
    logs: list[str]
    err: Any | None = None


class ChainClient(Protocol):
    async def get_latest_blockhash(self) -> Hash:
        ...

    async def send_transaction(self, raw: bytes) -> str:
        ...

    async def get_transaction(self, signature: str) -> ChainTransaction | None:
        ...

    async def get_token_account_balance(self, account: str) -> int:
        ...

    async def get_account_data(self, address: str) -> bytes | None:
        ...

    def subscribe_logs(self, program_id: str) -> AsyncIterator[LogEvent]:
        ...

    async def aclose(self) -> None:
        ...
