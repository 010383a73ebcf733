from __future__ import annotations

import pytest
from solders.keypair import Keypair
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from vaultledger.core.config import Settings
from vaultledger.domain.models import Base
from vaultledger.providers.chain.fake import FakeChainClient
from vaultledger.services import telemetry
from vaultledger.services.context import EngineContext
from vaultledger.services.notifier import Notifier
from vaultledger.services.submitter import TransactionSubmitter
from vaultledger.tests.utils.factories import RecordingSleep, make_settings


@pytest.fixture(autouse=True)
def reset_telemetry() -> None:
    telemetry.reset()
    yield
    telemetry.reset()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
async def ledger_engine():
    # One shared in-memory connection so every session sees the same tables.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
async def ctx(settings, ledger_engine, chain) -> EngineContext:
    context = EngineContext(
        settings=settings,
        sessions=async_sessionmaker(ledger_engine, expire_on_commit=False),
        chain=chain,
        notifier=Notifier(queue_size=64),
        engine=None,
    )
    yield context
    await context.notifier.drain()


@pytest.fixture
def fee_payer() -> Keypair:
    return Keypair()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def submitter(ctx, fee_payer, recording_sleep) -> TransactionSubmitter:
    return TransactionSubmitter(ctx, fee_payer=fee_payer, sleep=recording_sleep)
