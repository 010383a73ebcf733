from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from vaultledger.apps.api.errors import (
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    vaultledger_exception_handler,
)
from vaultledger.apps.api.response import API_VERSION
from vaultledger.apps.api.routes.health import router as health_router
from vaultledger.apps.api.routes.instructions import router as instructions_router
from vaultledger.apps.api.routes.multisig import router as multisig_router
from vaultledger.apps.api.routes.nonces import router as nonces_router
from vaultledger.apps.api.routes.ops import router as ops_router
from vaultledger.apps.api.routes.vaults import router as vaults_router
from vaultledger.core.errors import VaultLedgerError
from vaultledger.core.logging import configure_logging
from vaultledger.services.context import EngineContext, build_context
from vaultledger.services.submitter import TransactionSubmitter
from vaultledger.services.telemetry import record_request


logger = logging.getLogger(__name__)


def create_app(ctx: EngineContext | None = None, *, submitter: TransactionSubmitter | None = None) -> FastAPI:
    """Build the HTTP surface over the settlement engine.

    With ``ctx`` supplied (tests, embedding) the caller owns its lifecycle;
    otherwise the lifespan builds one from settings and closes it on exit.
    """
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "ctx", None) is None
        if owned:
            app.state.ctx = build_context()
            app.state.submitter = TransactionSubmitter(app.state.ctx)
        logger.info("api_started chain_provider=%s", app.state.ctx.settings.chain_provider)
        try:
            yield
        finally:
            if owned:
                await app.state.ctx.aclose()
            logger.info("api_stopped")

    app = FastAPI(title="vaultledger API", version=API_VERSION, lifespan=lifespan)
    if ctx is not None:
        app.state.ctx = ctx
        app.state.submitter = submitter or TransactionSubmitter(ctx)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(status_code=response.status_code, latency_ms=(time.monotonic() - start) * 1000.0)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(VaultLedgerError, vaultledger_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (
        health_router,
        instructions_router,
        multisig_router,
        vaults_router,
        nonces_router,
        ops_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
