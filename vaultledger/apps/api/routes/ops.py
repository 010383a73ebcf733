from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect

from vaultledger.apps.api.deps import get_context
from vaultledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultledger.apps.api.response import success_response
from vaultledger.persistence.repos import reconciliation as reconciliation_repo
from vaultledger.persistence.repos import yields as yields_repo
from vaultledger.services.context import EngineContext


logger = logging.getLogger(__name__)

router = APIRouter(tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/reconciliation/logs")
async def reconciliation_logs(
    request: Request,
    owner: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    ctx: EngineContext = Depends(get_context),
) -> dict:
    async with ctx.sessions() as session:
        rows = await reconciliation_repo.list_logs(session, vault_owner=owner, limit=limit)
    items = [
        {
            "vault_owner": row.vault_owner,
            "settlement_account": row.settlement_account,
            "db_balance": row.db_balance,
            "chain_balance": row.chain_balance,
            "discrepancy": row.discrepancy,
            "threshold": row.threshold,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]
    return success_response(request=request, data={"items": items})


@router.get("/yields/latest")
async def latest_yields(request: Request, ctx: EngineContext = Depends(get_context)) -> dict:
    async with ctx.sessions() as session:
        rates = await yields_repo.latest_apys(session)
    return success_response(request=request, data={"rates": rates})


@router.websocket("/events")
async def event_stream(websocket: WebSocket) -> None:
    # Best-effort live feed; a slow client loses events rather than slowing the engine.
    ctx: EngineContext = websocket.app.state.ctx
    wanted = set(filter(None, (websocket.query_params.get("types") or "").split(",")))
    await websocket.accept()
    subscription = ctx.notifier.subscribe()
    try:
        while True:
            envelope = await subscription.get()
            if wanted and envelope["type"] not in wanted:
                continue
            await websocket.send_json(envelope)
    except WebSocketDisconnect:
        logger.info("event_stream_closed dropped=%s", subscription.dropped)
    finally:
        subscription.close()
