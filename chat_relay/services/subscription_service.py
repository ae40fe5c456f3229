import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

import structlog
from pydantic import ValidationError as PydanticValidationError

from chat_relay.errors import StorageError, SubscriptionClosedError
from chat_relay.models.conversation import LogKey, recents_channel
from chat_relay.repositories.message_repository import MessageRepository, message_cursor
from chat_relay.repositories.recent_repository import RecentRepository
from chat_relay.schemas.message import ErrorEvent, Message, MessageEvent, RecentEntry, RecentEntryEvent, StreamEvent
from chat_relay.utils.cursor import Position, decode_cursor, encode_cursor, is_after, to_millis
from chat_relay.utils.realtime_bus import BusSubscription


logger = structlog.get_logger()


class _Stream(ABC):
    """
    Async iterator over one subscription.

    ``cancel()`` unregisters the bus listener before it returns; after that
    the iterator only raises StopAsyncIteration. Failures end the stream
    with a single terminal ErrorEvent. Abandoning a pending ``__anext__``
    (e.g. a timeout) leaves the stream usable.
    """

    def __init__(self, sub: BusSubscription) -> None:
        self._sub = sub
        self._cancelled = False
        self._finished = False
        self._closed_reason = "closed"

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __aiter__(self) -> "_Stream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._cancelled or self._finished:
            raise StopAsyncIteration
        event = await self._next_event()
        if self._cancelled:
            raise StopAsyncIteration
        if isinstance(event, ErrorEvent):
            self._finished = True
            await self._sub.cancel()
        return event

    async def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        await self._sub.cancel()

    async def _next_live_payload(self) -> Optional[str]:
        """Next bus payload, or None once the bus side has closed."""
        try:
            return await self._sub.get()
        except SubscriptionClosedError as exc:
            self._closed_reason = exc.detail
            return None

    @abstractmethod
    async def _next_event(self) -> StreamEvent:
        ...


class MessageStream(_Stream):

    def __init__(self, sub: BusSubscription, message_repo: MessageRepository, log_key: LogKey, cursor: Optional[str], batch_size: int = 100) -> None:
        super().__init__(sub)
        self._message_repo = message_repo
        self.log_key = log_key
        self._position: Optional[Position] = decode_cursor(cursor)
        self._batch_size = batch_size
        self._backlog: Optional[AsyncIterator[Message]] = None
        self._caught_up = False

    @property
    def cursor(self) -> Optional[str]:
        if self._position is None:
            return None
        return encode_cursor(*self._position)

    async def _next_event(self) -> StreamEvent:
        # backlog first: the live listener is already registered, so nothing
        # appended meanwhile can fall between the two
        if not self._caught_up:
            try:
                message = await self._next_backlog_message()
            except StorageError as exc:
                logger.warning("Subscription backfill failed", owner_id=self.log_key.owner_id, peer_id=self.log_key.peer_id, error=exc.detail)
                return ErrorEvent(code=exc.code, detail=exc.detail, cursor=self.cursor)
            if message is not None:
                self._position = (message.sent_at, message.id)
                return MessageEvent(cursor=message_cursor(message), message=message)
            self._caught_up = True

        while True:
            payload = await self._next_live_payload()
            if payload is None:
                return ErrorEvent(code=SubscriptionClosedError.code, detail=self._closed_reason, cursor=self.cursor)
            try:
                event = MessageEvent.model_validate_json(payload)
            except PydanticValidationError as exc:
                logger.error("Dropping malformed bus payload", channel=self._sub.channel, error=str(exc))
                continue
            position = (event.message.sent_at, event.message.id)
            if is_after(position, self._position):
                self._position = position
                return event

    async def _next_backlog_message(self) -> Optional[Message]:
        if self._backlog is None:
            self._backlog = self._message_repo.stream_since(self.log_key, self.cursor, batch_size=self._batch_size)
        try:
            return await self._backlog.__anext__()
        except StopAsyncIteration:
            self._backlog = None
            return None
        except (asyncio.CancelledError, StorageError):
            # the generator is dead now; the next call restarts from _position
            self._backlog = None
            raise


class RecentsStream(_Stream):

    def __init__(self, sub: BusSubscription, recent_repo: RecentRepository, owner_id: str, include_snapshot: bool = True) -> None:
        super().__init__(sub)
        self._recent_repo = recent_repo
        self.owner_id = owner_id
        self._snapshot: Optional[Deque[RecentEntry]] = None if include_snapshot else deque()
        self._latest: Dict[str, Tuple[int, str]] = {}

    def _is_newer(self, entry: RecentEntry) -> bool:
        key = (to_millis(entry.last_message_at), entry.last_message_id)
        seen = self._latest.get(entry.peer_id)
        if seen is not None and key <= seen:
            return False
        self._latest[entry.peer_id] = key
        return True

    async def _next_event(self) -> StreamEvent:
        if self._snapshot is None:
            try:
                self._snapshot = deque(await self._recent_repo.list(self.owner_id))
            except StorageError as exc:
                return ErrorEvent(code=exc.code, detail=exc.detail)
        while self._snapshot:
            entry = self._snapshot.popleft()
            if self._is_newer(entry):
                return RecentEntryEvent(entry=entry)

        while True:
            payload = await self._next_live_payload()
            if payload is None:
                return ErrorEvent(code=SubscriptionClosedError.code, detail=self._closed_reason)
            try:
                event = RecentEntryEvent.model_validate_json(payload)
            except PydanticValidationError as exc:
                logger.error("Dropping malformed bus payload", channel=self._sub.channel, error=str(exc))
                continue
            if self._is_newer(event.entry):
                return event


class SubscriptionService:

    def __init__(self, message_repo: MessageRepository, recent_repo: RecentRepository, bus, batch_size: int = 100) -> None:
        self._message_repo = message_repo
        self._recent_repo = recent_repo
        self._bus = bus
        self._batch_size = batch_size

    async def subscribe(self, owner_id: str, peer_id: str, from_cursor: Optional[str] = None) -> MessageStream:
        log_key = LogKey(owner_id, peer_id)
        decode_cursor(from_cursor)  # reject bad cursors before registering anything
        sub = await self._bus.subscribe(log_key.channel)
        logger.debug("Conversation subscription opened", owner_id=owner_id, peer_id=peer_id, cursor=from_cursor)
        return MessageStream(sub, self._message_repo, log_key, from_cursor, batch_size=self._batch_size)

    async def subscribe_recents(self, owner_id: str, include_snapshot: bool = True) -> RecentsStream:
        sub = await self._bus.subscribe(recents_channel(owner_id))
        logger.debug("Inbox subscription opened", owner_id=owner_id)
        return RecentsStream(sub, self._recent_repo, owner_id, include_snapshot=include_snapshot)
