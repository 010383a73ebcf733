from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from vaultledger.apps.api.deps import get_context
from vaultledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultledger.apps.api.response import SuccessEnvelope, success_response
from vaultledger.persistence.db import pool_stats
from vaultledger.services import telemetry
from vaultledger.services.context import EngineContext

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    chain_provider: str
    subscribers: int


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, ctx: EngineContext = Depends(get_context)) -> dict:
    payload = HealthResponse(
        status="ok",
        chain_provider=ctx.settings.chain_provider,
        subscribers=ctx.notifier.subscriber_count,
    )
    return success_response(request=request, data=payload)


@router.get("/ops/metrics")
async def metrics(request: Request, window_s: int = 300, ctx: EngineContext = Depends(get_context)) -> dict:
    data = telemetry.snapshot(window_s)
    if ctx.engine is not None:
        data["db_pool"] = pool_stats(ctx.engine)
    return success_response(request=request, data=data)
