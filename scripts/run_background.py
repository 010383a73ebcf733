from __future__ import annotations

import asyncio
import logging
import signal

from vaultledger.core.logging import configure_logging
from vaultledger.services.context import build_context
from vaultledger.services.runtime import start_background_loops, stop_background_loops
from vaultledger.services.submitter import TransactionSubmitter

logger = logging.getLogger(__name__)


async def _main() -> None:
    # Run indexer, reconciliation and the monitors in one process until SIGINT/SIGTERM.
    configure_logging()
    ctx = build_context()
    submitter = TransactionSubmitter(ctx)
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)
    tasks = start_background_loops(ctx, submitter, shutdown)
    try:
        await shutdown.wait()
        logger.info("shutdown_requested")
    finally:
        await stop_background_loops(tasks, shutdown)
        await ctx.aclose()


if __name__ == "__main__":
    asyncio.run(_main())
