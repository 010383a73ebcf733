from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from vaultledger.core.config import Settings, get_settings
from vaultledger.persistence.db import build_engine, build_sessionmaker
from vaultledger.providers.chain.base import ChainClient
from vaultledger.providers.chain.factory import get_chain_client
from vaultledger.services.notifier import Notifier
from vaultledger.services.resilience import LazyRedis


@dataclass
class EngineContext:
    # Explicit handle passed to every component instead of module-level clients.
    settings: Settings
    sessions: async_sessionmaker[AsyncSession]
    chain: ChainClient
    notifier: Notifier
    engine: AsyncEngine | None = None
    redis: LazyRedis | None = None

    async def aclose(self) -> None:
        await self.notifier.drain()
        await self.chain.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_context(settings: Settings | None = None) -> EngineContext:
    settings = settings or get_settings()
    engine = build_engine(settings)
    redis = LazyRedis(settings.redis_url) if settings.notify_redis_enabled else None
    notifier = Notifier(
        queue_size=settings.notify_queue_size,
        redis_getter=redis,
        channel_prefix=settings.notify_redis_channel_prefix,
    )
    return EngineContext(
        settings=settings,
        sessions=build_sessionmaker(engine),
        chain=get_chain_client(settings),
        notifier=notifier,
        engine=engine,
        redis=redis,
    )
