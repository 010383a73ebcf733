from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from vaultledger.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


async def sleep_or_shutdown(shutdown: asyncio.Event, seconds: float) -> bool:
    # Returns True when shutdown was signalled during the wait.
    if shutdown.is_set():
        return True
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=max(0.0, seconds))
        return True
    except asyncio.TimeoutError:
        return False


async def run_periodic(
    name: str,
    tick: Callable[[], Awaitable[object]],
    *,
    interval_s: float,
    shutdown: asyncio.Event,
) -> None:
    # Run tick on a fixed cadence until shutdown; a failing tick never kills the loop.
    logger.info("loop_started name=%s interval_s=%s", name, interval_s)
    while not shutdown.is_set():
        try:
            await tick()
            set_gauge(f"loop_last_success.{name}", asyncio.get_running_loop().time())
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - keep the loop alive while surfacing failures in logs.
            increment_counter(f"loop_failures_total.{name}")
            logger.exception("loop_tick_failed name=%s", name)
        if await sleep_or_shutdown(shutdown, interval_s):
            break
    logger.info("loop_stopped name=%s", name)
