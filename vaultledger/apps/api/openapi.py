from __future__ import annotations

from typing import Any

from vaultledger.apps.api.response import ErrorEnvelope


def _error_example(*, kind: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": kind.upper(), "kind": kind, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _response(description: str, *, kind: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(kind=kind, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Validation failed", kind="validation", message="threshold 3 exceeds signer count 2"),
    403: _response("Not authorized", kind="authorization", message="signer is not allowed for proposal"),
    404: _response("Not found", kind="not_found", message="proposal not found"),
    409: _response("Conflict", kind="conflict", message="proposal is approved"),
    422: _response("Rejected by the chain", kind="chain_permanent", message="program rejected the instruction"),
    500: _response("Internal error", kind="internal", message="Internal server error"),
    502: _response("Chain unavailable", kind="chain_transient", message="RPC request timed out"),
    503: _response("Dependency unavailable", kind="unavailable", message="yield venue request failed"),
}
