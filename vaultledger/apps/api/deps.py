from __future__ import annotations

from fastapi import Depends, Request

from vaultledger.services.context import EngineContext
from vaultledger.services.multisig import MultisigCoordinator
from vaultledger.services.nonces import NonceService
from vaultledger.services.submitter import TransactionSubmitter
from vaultledger.services.timelocks import TimelockService
from vaultledger.services.vaults import VaultService


def get_context(request: Request) -> EngineContext:
    # Installed by the app lifespan; one context per process.
    return request.app.state.ctx


def get_submitter(request: Request) -> TransactionSubmitter:
    return request.app.state.submitter


def get_vault_service(
    ctx: EngineContext = Depends(get_context),
    submitter: TransactionSubmitter = Depends(get_submitter),
) -> VaultService:
    return VaultService(ctx, submitter)


def get_multisig(
    ctx: EngineContext = Depends(get_context),
    submitter: TransactionSubmitter = Depends(get_submitter),
) -> MultisigCoordinator:
    return MultisigCoordinator(ctx, submitter)


def get_nonce_service(ctx: EngineContext = Depends(get_context)) -> NonceService:
    return NonceService(ctx)


def get_timelock_service(
    ctx: EngineContext = Depends(get_context),
    submitter: TransactionSubmitter = Depends(get_submitter),
) -> TimelockService:
    return TimelockService(ctx, submitter)
