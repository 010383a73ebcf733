from __future__ import annotations

import base64
import json

import httpx
import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from vaultledger.core.errors import ChainPermanentError, ChainTransientError
from vaultledger.providers.chain.solana_rpc import SolanaRpcClient
from vaultledger.tests.utils.factories import PROGRAM_ID, make_settings


def _rpc_client(handler) -> SolanaRpcClient:
    settings = make_settings(chain_provider="solana", solana_rpc_url="https://rpc.test")
    return SolanaRpcClient(settings, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def _result(result) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})


def _error(code: int, message: str) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}})


@pytest.mark.asyncio
async def test_token_balance_is_parsed_from_raw_amount() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return _result({"value": {"amount": "1500000", "decimals": 6, "uiAmount": 1.5}})

    client = _rpc_client(handler)
    try:
        assert await client.get_token_account_balance("acct") == 1_500_000
    finally:
        await client.aclose()
    assert seen[0]["method"] == "getTokenAccountBalance"
    assert seen[0]["params"][0] == "acct"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (httpx.Response(503), ChainTransientError),
        (httpx.Response(429), ChainTransientError),
        (httpx.Response(400), ChainPermanentError),
        (_error(-32002, "Transaction simulation failed: custom program error: 0x1"), ChainPermanentError),
        (_error(-32002, "Transaction simulation failed: Blockhash not found"), ChainTransientError),
        (_error(-32005, "Node is behind by 42 slots"), ChainTransientError),
    ],
)
async def test_send_errors_are_classified(response, expected) -> None:
    client = _rpc_client(lambda request: response)
    try:
        with pytest.raises(expected):
            await client.send_transaction(b"\x00" * 10)
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_network_failure_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _rpc_client(handler)
    try:
        with pytest.raises(ChainTransientError):
            await client.get_latest_blockhash()
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_get_transaction_resolves_account_indices() -> None:
    payer = Keypair()
    owner = Pubkey(bytes([3]) * 32)
    blockhash = Hash(bytes([1]) * 32)
    instruction = Instruction(
        Pubkey.from_string(PROGRAM_ID),
        b"\x05\x06",
        [AccountMeta(payer.pubkey(), True, True), AccountMeta(owner, False, False)],
    )
    tx = Transaction([payer], Message.new_with_blockhash([instruction], payer.pubkey(), blockhash), blockhash)
    encoded = base64.b64encode(bytes(tx)).decode("ascii")

    def handler(request: httpx.Request) -> httpx.Response:
        return _result({"transaction": [encoded, "base64"], "meta": {"err": None, "logMessages": ["Program log: hi"]}})

    client = _rpc_client(handler)
    try:
        observed = await client.get_transaction(str(tx.signatures[0]))
    finally:
        await client.aclose()

    assert observed.succeeded
    assert observed.logs == ["Program log: hi"]
    (program_ix,) = observed.instructions
    assert program_ix.program_id == PROGRAM_ID
    assert program_ix.accounts == [str(payer.pubkey()), str(owner)]
    assert program_ix.data == b"\x05\x06"


@pytest.mark.asyncio
async def test_missing_transaction_returns_none() -> None:
    client = _rpc_client(lambda request: _result(None))
    try:
        assert await client.get_transaction("sig") is None
    finally:
        await client.aclose()
