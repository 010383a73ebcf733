from __future__ import annotations

import asyncio

from vaultledger.core.config import get_settings
from vaultledger.core.logging import configure_logging
from vaultledger.domain.models import Base
from vaultledger.persistence.db import build_engine


async def _main() -> None:
    # Local bootstrap only; deployed databases are migrated with alembic.
    configure_logging()
    engine = build_engine(get_settings())
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(_main())
