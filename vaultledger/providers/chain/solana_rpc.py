from __future__ import annotations

import base64
import itertools
import json
import logging
import time
from typing import Any, AsyncIterator

import httpx
import websockets
from websockets.exceptions import WebSocketException
from solders.hash import Hash
from solders.transaction import VersionedTransaction

from vaultledger.core.config import Settings
from vaultledger.core.errors import ChainPermanentError, ChainTransientError
from vaultledger.providers.chain.base import ChainTransaction, LogEvent, ObservedInstruction
from vaultledger.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

# Preflight failure, signature verification failure, invalid params.
_PERMANENT_RPC_CODES = {-32002, -32003, -32602}


def _classify_rpc_error(method: str, error: dict[str, Any]) -> Exception:
    code = error.get("code")
    message = str(error.get("message") or "rpc error")
    # A stale blockhash surfaces as a preflight failure but succeeds on resubmission.
    if "Blockhash not found" in message:
        return ChainTransientError(f"{method}: {message}")
    if code in _PERMANENT_RPC_CODES:
        return ChainPermanentError(f"{method}: {message}")
    return ChainTransientError(f"{method}: {message}")


class SolanaRpcClient:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client
        self._ids = itertools.count(1)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client for connection pooling across all components.
        self._client = httpx.AsyncClient(timeout=self._settings.rpc_timeout_ms / 1000.0)
        return self._client

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        start = time.monotonic()
        success = False
        try:
            try:
                response = await self._get_client().post(self._settings.solana_rpc_url, json=payload)
            except httpx.HTTPError as exc:
                raise ChainTransientError(f"{method}: {exc.__class__.__name__}") from exc
            if response.status_code == 429 or response.status_code >= 500:
                raise ChainTransientError(f"{method}: http {response.status_code}")
            if response.status_code >= 400:
                raise ChainPermanentError(f"{method}: http {response.status_code}")
            body = response.json()
            if body.get("error"):
                raise _classify_rpc_error(method, body["error"])
            success = True
            return body.get("result")
        finally:
            record_external_call(
                integration=f"solana.{method}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    async def get_latest_blockhash(self) -> Hash:
        result = await self._rpc(
            "getLatestBlockhash", [{"commitment": self._settings.indexer_commitment}]
        )
        return Hash.from_string(result["value"]["blockhash"])

    async def send_transaction(self, raw: bytes) -> str:
        encoded = base64.b64encode(raw).decode("ascii")
        return await self._rpc(
            "sendTransaction",
            [
                encoded,
                {"encoding": "base64", "preflightCommitment": self._settings.indexer_commitment},
            ],
        )

    async def get_transaction(self, signature: str) -> ChainTransaction | None:
        result = await self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "base64",
                    "commitment": self._settings.indexer_commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            return None
        raw_b64 = result["transaction"][0]
        tx = VersionedTransaction.from_bytes(base64.b64decode(raw_b64))
        meta = result.get("meta") or {}
        message = tx.message
        # Lookup-table accounts follow the static keys: writable first, then readonly.
        loaded = meta.get("loadedAddresses") or {}
        keys = [str(key) for key in message.account_keys]
        keys.extend(loaded.get("writable") or [])
        keys.extend(loaded.get("readonly") or [])
        instructions = []
        for ix in message.instructions:
            instructions.append(
                ObservedInstruction(
                    program_id=keys[ix.program_id_index],
                    accounts=[keys[idx] for idx in bytes(ix.accounts)],
                    data=bytes(ix.data),
                )
            )
        return ChainTransaction(
            signature=signature,
            instructions=instructions,
            err=meta.get("err"),
            logs=list(meta.get("logMessages") or []),
        )

    async def get_token_account_balance(self, account: str) -> int:
        result = await self._rpc(
            "getTokenAccountBalance", [account, {"commitment": self._settings.indexer_commitment}]
        )
        return int(result["value"]["amount"])

    async def get_account_data(self, address: str) -> bytes | None:
        result = await self._rpc(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self._settings.indexer_commitment}],
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        return base64.b64decode(value["data"][0])

    async def subscribe_logs(self, program_id: str) -> AsyncIterator[LogEvent]:
        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [{"mentions": [program_id]}, {"commitment": self._settings.indexer_commitment}],
        }
        url = self._settings.resolved_ws_url()
        try:
            async with websockets.connect(url) as ws:
                await ws.send(json.dumps(request))
                logger.info("logs_subscribed program_id=%s url=%s", program_id, url)
                async for message in ws:
                    payload = json.loads(message)
                    if payload.get("error"):
                        raise ChainTransientError(f"logsSubscribe: {payload['error']}")
                    if payload.get("method") != "logsNotification":
                        continue
                    value = payload["params"]["result"]["value"]
                    increment_counter("indexer_log_notifications_total")
                    yield LogEvent(
                        signature=value["signature"],
                        logs=list(value.get("logs") or []),
                        err=value.get("err"),
                    )
        except (OSError, WebSocketException) as exc:
            raise ChainTransientError(f"logsSubscribe: {exc.__class__.__name__}") from exc

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
