from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from vaultledger.apps.api.response import error_response
from vaultledger.core.errors import VaultLedgerError


logger = logging.getLogger(__name__)

# Engine error kind -> HTTP status.
KIND_STATUS: dict[str, int] = {
    "validation": 400,
    "authorization": 403,
    "not_found": 404,
    "conflict": 409,
    "chain_permanent": 422,
    "chain_transient": 502,
    "persistence": 500,
    "internal": 500,
    "unavailable": 503,
}

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "CHAIN_UNAVAILABLE",
    503: "SERVICE_UNAVAILABLE",
}

_STATUS_KINDS: dict[int, str] = {
    400: "validation",
    403: "authorization",
    404: "not_found",
    409: "conflict",
}


def status_for_kind(kind: str) -> int:
    return KIND_STATUS.get(kind, 500)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


async def vaultledger_exception_handler(request: Request, exc: VaultLedgerError) -> JSONResponse:
    status_code = status_for_kind(exc.kind)
    if status_code >= 500:
        logger.warning("request_failed path=%s kind=%s message=%s", request.url.path, exc.kind, exc.message)
    payload = error_response(
        request=request,
        code=exc.kind.upper(),
        kind=exc.kind,
        message=exc.message,
    )
    return JSONResponse(content=payload, status_code=status_code)


def _split_detail(detail: Any, status_code: int) -> tuple[str, str]:
    if isinstance(detail, dict):
        return str(detail.get("code") or _default_code(status_code)), str(detail.get("message") or "Request failed")
    if isinstance(detail, str):
        return _default_code(status_code), detail
    return _default_code(status_code), "Request failed"


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message = _split_detail(exc.detail, exc.status_code)
    payload = error_response(
        request=request,
        code=code,
        kind=_STATUS_KINDS.get(exc.status_code, "internal"),
        message=message,
    )
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed bodies are validation failures like any other; keep 400 consistent with engine errors.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        kind="validation",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_request_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        kind="internal",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
