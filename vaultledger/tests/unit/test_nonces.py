from __future__ import annotations

import pytest

from vaultledger.core.errors import ConflictError, NotFoundError, ValidationError
from vaultledger.services.nonces import NonceService
from vaultledger.tests.utils.factories import new_address


@pytest.mark.asyncio
async def test_issued_nonce_is_single_use(ctx) -> None:
    service = NonceService(ctx)
    owner = new_address()
    nonce = await service.issue(owner)

    await service.consume(owner, nonce)
    with pytest.raises(ConflictError):
        await service.consume(owner, nonce)


@pytest.mark.asyncio
async def test_nonce_is_bound_to_its_owner(ctx) -> None:
    service = NonceService(ctx)
    nonce = await service.issue(new_address())

    with pytest.raises(NotFoundError):
        await service.consume(new_address(), nonce)
    with pytest.raises(NotFoundError):
        await service.consume(new_address(), "never-issued")


@pytest.mark.asyncio
async def test_nonces_are_unique_per_issue(ctx) -> None:
    service = NonceService(ctx)
    owner = new_address()
    assert await service.issue(owner) != await service.issue(owner)


@pytest.mark.asyncio
async def test_invalid_requests(ctx) -> None:
    service = NonceService(ctx)
    with pytest.raises(ValidationError):
        await service.consume(new_address(), "")
    with pytest.raises(ValidationError):
        await service.issue("definitely not base58 !!")
