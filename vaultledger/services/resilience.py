from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from vaultledger.core.config import Settings, get_settings
from vaultledger.core.errors import ChainTransientError
from vaultledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class LazyRedis:
    """One Redis client per event loop, created on first use.

    Owned by the engine context; ``aclose`` releases the connection pool.
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Redis | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    async def __call__(self) -> Redis | None:
        loop = asyncio.get_running_loop()
        if self._client is not None and self._loop is loop:
            return self._client
        # A client bound to another loop cannot be awaited from this one.
        self._client = None
        try:
            self._client = Redis.from_url(self._url, encoding="utf-8", decode_responses=True)
        except Exception as exc:  # noqa: BLE001 - the mirror is optional
            increment_counter("redis_unavailable_total")
            logger.warning("redis_client_unavailable", exc_info=exc)
            return None
        self._loop = loop
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def is_transient_chain_error(exc: Exception) -> bool:
    # Program rejections, signing failures and bad input fail the same way on every attempt.
    return isinstance(exc, ChainTransientError)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_ms: int
    # "linear" sleeps backoff * attempt; "exponential" doubles with jitter.
    backoff: str = "linear"
    timeout_ms: int | None = None

    def delay_s(self, attempt: int) -> float:
        base_s = self.backoff_ms / 1000.0
        if self.backoff == "exponential":
            return base_s * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
        return base_s * attempt


def submit_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=max(1, settings.submit_max_attempts),
        backoff_ms=settings.submit_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient_chain_error,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    counter: str = "chain_retries_total",
) -> Any:
    """Call ``func`` until it succeeds, raises a non-retryable error, or attempts run out.

    The last error propagates unchanged. Callers wanting a wall-clock deadline
    set ``timeout_ms`` or wrap this call.
    """
    policy = policy or submit_retry_policy()
    for attempt in range(1, max(policy.max_attempts, 1) + 1):
        try:
            if policy.timeout_ms:
                return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
            return await func()
        except Exception as exc:  # noqa: BLE001 - the predicate decides, everything else re-raises
            if attempt >= policy.max_attempts or not retryable(exc):
                raise
            delay = policy.delay_s(attempt)
            increment_counter(counter)
            logger.warning("retry_scheduled attempt=%s delay_s=%s error=%s", attempt, delay, exc)
            await sleep(delay)
    raise RuntimeError("retry loop exited without a result")
