import asyncio
import contextlib
from typing import Awaitable, Callable, Dict, List, Optional, Set

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from chat_relay.config import Settings
from chat_relay.errors import SubscriptionClosedError


logger = structlog.get_logger()


class BusSubscription:
    """
    Per-subscriber mailbox for one channel.

    Delivery into the mailbox never blocks the publisher: a subscriber that
    falls more than ``maxsize`` events behind is failed instead, and is
    expected to resume from its last cursor.
    """

    def __init__(self, channel: str, maxsize: int, on_cancel: Callable[["BusSubscription"], Awaitable[None]]) -> None:
        self.channel = channel
        self._maxsize = maxsize
        self._on_cancel = on_cancel
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._pending = 0
        self._closed = False
        self._error: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._closed or self._error is not None

    def push(self, payload: str) -> None:
        if self.closed:
            return
        if self._pending >= self._maxsize:
            self.fail("subscriber_lagging")
            return
        self._pending += 1
        self._queue.put_nowait(payload)

    def fail(self, reason: str) -> None:
        if self.closed:
            return
        self._error = reason
        self._queue.put_nowait(None)

    async def get(self) -> str:
        payload = await self._queue.get()
        if payload is None or self.closed:
            raise SubscriptionClosedError(self._error or "cancelled")
        self._pending -= 1
        return payload

    async def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
        await self._on_cancel(self)


class LocalBus:
    """In-process fan-out; enough for a single worker."""

    name = "local"

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: Dict[str, Set[BusSubscription]] = {}

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def publish(self, channel: str, message: str) -> None:
        for sub in list(self._subscribers.get(channel, ())):
            sub.push(message)

    async def subscribe(self, channel: str) -> BusSubscription:
        sub = BusSubscription(channel, self._queue_size, self._unsubscribe)
        self._subscribers.setdefault(channel, set()).add(sub)
        return sub

    async def _unsubscribe(self, sub: BusSubscription) -> None:
        subs = self._subscribers.get(sub.channel)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.channel]

    async def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.fail("bus_closed")
        self._subscribers.clear()


class RedisBus:
    """Cross-process fan-out over Redis pub/sub."""

    name = "redis"

    def __init__(self, client, queue_size: int = 256) -> None:
        self._redis = client
        self._queue_size = queue_size
        self._pumps: Dict[BusSubscription, "asyncio.Task[None]"] = {}

    @classmethod
    def from_url(cls, url: str, queue_size: int = 256) -> "RedisBus":
        return cls(redis.from_url(url), queue_size=queue_size)

    def subscriber_count(self, channel: str) -> int:
        return sum(1 for sub in self._pumps if sub.channel == channel)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str) -> BusSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        # wait for the server to confirm so nothing published afterwards is missed
        while True:
            msg = await pubsub.get_message(ignore_subscribe_messages=False, timeout=1.0)
            if msg is None or msg.get("type") == "subscribe":
                break

        async def _cancel(sub: BusSubscription) -> None:
            task = self._pumps.pop(sub, None)
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            try:
                await pubsub.unsubscribe(channel)
            except (RedisError, OSError) as exc:
                logger.debug("Unsubscribe on closed connection", channel=channel, error=str(exc))
            finally:
                await pubsub.aclose()

        sub = BusSubscription(channel, self._queue_size, _cancel)
        self._pumps[sub] = asyncio.create_task(self._pump(pubsub, sub))
        return sub

    async def _pump(self, pubsub, sub: BusSubscription) -> None:
        while not sub.closed:
            try:
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except (RedisError, OSError) as exc:
                logger.warning("Realtime bus disconnected", channel=sub.channel, error=str(exc))
                sub.fail("bus_disconnected")
                return
            if msg and msg.get("type") == "message":
                data = msg.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                sub.push(data)

    async def close(self) -> None:
        subs: List[BusSubscription] = list(self._pumps)
        for sub in subs:
            sub.fail("bus_closed")
            await sub.cancel()
        await self._redis.aclose()


def create_bus(settings: Settings):
    if not settings.redis_url:
        return LocalBus(queue_size=settings.subscriber_queue_size)
    return RedisBus.from_url(settings.redis_url, queue_size=settings.subscriber_queue_size)
