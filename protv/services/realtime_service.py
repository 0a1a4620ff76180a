"""
ProTV — Realtime change notifier.

Row-level change events (``INSERT`` / ``UPDATE`` / ``DELETE``) are published
per table and delivered to every subscription whose predicate accepts the
row.  Rows are plain JSON-compatible dicts so that they can cross process
boundaries.

Two delivery modes:

1. **In-process** (no ``REDIS_URL``): ``publish`` fans out directly to the
   local subscribers.
2. **Redis pub/sub**: ``publish`` writes to ``protv:realtime:<table>``; a
   listener task in every worker reads the pattern subscription and fans out
   locally, so a match created by one worker reaches websockets held by
   another.

Consumers must tolerate duplicates and must not rely on ordering relative to
their own writes.
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger("protv.realtime")

CHANNEL_PREFIX = "protv:realtime:"

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

RowPredicate = Callable[[dict], bool]


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event: str
    row: dict


class Subscription:
    """A live feed of change events for one table.

    Iterate with ``async for``; call ``close()`` (or use ``async with``) when
    the consumer goes away so the notifier stops buffering for it.
    """

    def __init__(
        self,
        notifier: "RealtimeNotifier",
        table: str,
        predicate: Optional[RowPredicate],
        events: Optional[frozenset[str]],
        maxsize: int,
    ) -> None:
        self._notifier = notifier
        self.table = table
        self._predicate = predicate
        self._events = events
        self._queue: asyncio.Queue[Optional[ChangeEvent]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def wants(self, change: ChangeEvent) -> bool:
        if self._events is not None and change.event not in self._events:
            return False
        if self._predicate is None:
            return True
        try:
            return bool(self._predicate(change.row))
        except (KeyError, TypeError, ValueError):
            return False

    def push(self, change: ChangeEvent) -> None:
        if self.closed:
            return
        if self._queue.full():
            # Best-effort delivery: a slow consumer loses its oldest event.
            dropped = self._queue.get_nowait()
            logger.warning(
                "realtime_event_dropped",
                table=self.table,
                dropped_event=dropped.event if dropped else None,
            )
        self._queue.put_nowait(change)

    async def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or ``None`` once closed (or on timeout)."""
        if self.closed and self._queue.empty():
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._notifier._unregister(self)
        # Wake any pending consumer.
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        change = await self.get()
        if change is None:
            raise StopAsyncIteration
        return change

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class RealtimeNotifier:
    """Observer registry keyed by (table, predicate)."""

    def __init__(self, redis_url: str = "", *, queue_size: int = 256) -> None:
        self._redis_url = redis_url
        self._queue_size = queue_size
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)
        self._redis = None
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    # ── Lifecycle ───────────────────────────────────────────────────

    @property
    def uses_redis(self) -> bool:
        return self._redis is not None

    async def start(self) -> None:
        """Connect the redis bridge when configured; no-op otherwise."""
        if not self._redis_url or self._redis is not None:
            return
        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
        )
        await self._redis.ping()
        self._pubsub = self._redis.pubsub()
        await self._pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
        self._listener = asyncio.create_task(self._listen(), name="realtime-listener")
        logger.info("realtime_redis_bridge_started", url=self._redis_url)

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("realtime_redis_bridge_stopped")
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                sub.close()

    async def ping(self) -> None:
        if self._redis is None:
            raise RuntimeError("Redis bridge not configured")
        await self._redis.ping()

    # ── Subscribe / publish ─────────────────────────────────────────

    def subscribe(
        self,
        table: str,
        predicate: Optional[RowPredicate] = None,
        *,
        events: Optional[set[str]] = None,
    ) -> Subscription:
        sub = Subscription(
            self,
            table,
            predicate,
            frozenset(events) if events else None,
            self._queue_size,
        )
        self._subscriptions[table].add(sub)
        return sub

    def _unregister(self, sub: Subscription) -> None:
        self._subscriptions[sub.table].discard(sub)

    def subscriber_count(self, table: str) -> int:
        return len(self._subscriptions[table])

    async def publish(self, table: str, event: str, row: dict) -> None:
        change = ChangeEvent(table=table, event=event, row=row)
        if self._redis is None:
            self.dispatch(change)
            return
        await self._redis.publish(f"{CHANNEL_PREFIX}{table}", json.dumps(asdict(change)))

    def dispatch(self, change: ChangeEvent) -> int:
        """Deliver *change* to local subscribers; returns how many got it."""
        delivered = 0
        for sub in list(self._subscriptions[change.table]):
            if sub.wants(change):
                sub.push(change)
                delivered += 1
        logger.debug(
            "realtime_dispatch",
            table=change.table,
            change_event=change.event,
            delivered=delivered,
        )
        return delivered

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "pmessage":
                continue
            try:
                payload = json.loads(message["data"])
                self.dispatch(ChangeEvent(**payload))
            except (TypeError, ValueError) as exc:
                logger.warning("realtime_bad_message", error=str(exc))


def watch(
    subscription: Subscription,
    callback: Callable[[ChangeEvent], Awaitable[None]],
    *,
    key: Optional[Callable[[ChangeEvent], Any]] = None,
) -> asyncio.Task:
    """Run *callback* for every event on *subscription*.

    When *key* is given, events whose key was already seen are skipped, so
    at-least-once delivery turns into exactly-once callbacks per key.
    Cancel the returned task (or close the subscription) to stop.
    """

    async def _pump() -> None:
        seen: set[Any] = set()
        async for change in subscription:
            if key is not None:
                k = key(change)
                if k in seen:
                    continue
                seen.add(k)
            await callback(change)

    return asyncio.create_task(_pump())


# ── Process-wide singleton ─────────────────────────────────────────

_notifier: RealtimeNotifier | None = None


def get_notifier() -> RealtimeNotifier:
    global _notifier
    if _notifier is None:
        from protv.config import get_settings

        _notifier = RealtimeNotifier(get_settings().REDIS_URL)
    return _notifier
