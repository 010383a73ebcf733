from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from vaultledger.domain.events import EventEnvelope, EventType
from vaultledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, notifier: "Notifier", queue: asyncio.Queue[EventEnvelope]) -> None:
        self._notifier = notifier
        self.queue = queue
        self.dropped = 0

    async def get(self) -> EventEnvelope:
        return await self.queue.get()

    def close(self) -> None:
        self._notifier.unsubscribe(self)


class Notifier:
    """At-most-once, best-effort event fan-out.

    ``publish`` never awaits a subscriber: a full subscriber queue drops the
    event for that subscriber only. No ledger invariant depends on delivery.
    """

    def __init__(
        self,
        *,
        queue_size: int = 1024,
        redis_getter: Callable[[], Awaitable[Any]] | None = None,
        channel_prefix: str = "vaultledger:events",
    ) -> None:
        self._queue_size = max(1, int(queue_size))
        self._subscribers: list[Subscription] = []
        self._redis_getter = redis_getter
        self._channel_prefix = channel_prefix
        self._pending: set[asyncio.Task] = set()

    def subscribe(self) -> Subscription:
        sub = Subscription(self, asyncio.Queue(maxsize=self._queue_size))
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_type: EventType, data: dict[str, Any]) -> EventEnvelope:
        envelope: EventEnvelope = {
            "type": event_type,
            "data": dict(data),
            "ts": datetime.now(timezone.utc).isoformat(),
        }
        increment_counter(f"events_published_total.{event_type}")
        for sub in list(self._subscribers):
            try:
                sub.queue.put_nowait(envelope)
            except asyncio.QueueFull:
                sub.dropped += 1
                increment_counter("events_dropped_total")
        if self._redis_getter is not None:
            self._schedule_mirror(envelope)
        return envelope

    def _schedule_mirror(self, envelope: EventEnvelope) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._mirror(envelope))
        # Hold a reference until completion so the task is not garbage collected mid-flight.
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _mirror(self, envelope: EventEnvelope) -> None:
        try:
            redis = await self._redis_getter()
            if redis is None:
                return
            channel = f"{self._channel_prefix}:{envelope['type']}"
            await redis.publish(channel, json.dumps(envelope, default=str))
        except Exception as exc:  # noqa: BLE001 - pub/sub mirror is best-effort
            increment_counter("events_mirror_failures_total")
            logger.warning("event_mirror_failed type=%s", envelope["type"], exc_info=exc)

    async def drain(self) -> None:
        # Wait for in-flight mirror publishes; used on shutdown and in tests.
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
