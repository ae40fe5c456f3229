import asyncio
import random
from typing import Awaitable, Callable, List, Optional, TypeVar

import structlog

from chat_relay.config import Settings
from chat_relay.errors import DeliveryFailure, PartialDeliveryError, StorageError, ValidationError, WriteError
from chat_relay.models.conversation import ConversationKey, LogKey, recents_channel
from chat_relay.repositories.message_repository import MessageRepository, message_cursor
from chat_relay.repositories.recent_repository import RecentRepository
from chat_relay.repositories.user_repository import UserRepository
from chat_relay.schemas.message import (
    Message,
    MessageEvent,
    PeerDisplayMeta,
    RecentEntry,
    RecentEntryEvent,
    RecentSummary,
    SendReceipt,
)
from chat_relay.utils.ids import MessageClock
from chat_relay.utils.log_locks import LogLockRegistry


logger = structlog.get_logger()

T = TypeVar("T")


class DeliveryCoordinator:
    """
    The only write path for messages.

    A send writes the sender's log, the recipient's log and both inbox
    entries. Each step is retried on its own with the pre-allocated message
    id as idempotency key; nothing is rolled back.
    """

    def __init__(
        self,
        message_repo: MessageRepository,
        recent_repo: RecentRepository,
        user_repo: UserRepository,
        bus,
        settings: Settings,
        clock: Optional[MessageClock] = None,
        locks: Optional[LogLockRegistry] = None,
    ) -> None:
        self._message_repo = message_repo
        self._recent_repo = recent_repo
        self._user_repo = user_repo
        self._bus = bus
        self._settings = settings
        self._clock = clock or MessageClock()
        self._locks = locks or LogLockRegistry()

    async def send(self, from_id: str, to_id: str, text: str) -> SendReceipt:
        content = self._validate_text(text)
        missing = await self._user_repo.missing([from_id, to_id])
        if missing:
            raise ValidationError(f"Unknown user(s): {', '.join(sorted(missing))}")

        key = ConversationKey.of(from_id, to_id)
        sender_log = LogKey(from_id, to_id)
        recipient_log = sender_log.mirrored()
        # each side's inbox entry shows the other party
        sender_peer_meta = await self._user_repo.display_meta(to_id)
        recipient_peer_meta = sender_peer_meta if key.is_self_chat else await self._user_repo.display_meta(from_id)

        async with self._locks.hold([sender_log, recipient_log]):
            message_id, sent_at = self._clock.allocate()
            message = Message(
                id=message_id,
                conversation_key=key.value,
                sender_id=from_id,
                recipient_id=to_id,
                text=content,
                sent_at=sent_at,
            )
            receipt = SendReceipt(message_id=message_id, sent_at=sent_at, conversation_key=key.value)
            log = logger.bind(message_id=message_id, sender_id=from_id, recipient_id=to_id)

            # a sender-side failure leaves nothing persisted: plain WriteError
            await self._retry(lambda: self._message_repo.append(sender_log, message), step="sender_append")
            await self._publish_message(sender_log, message)

            failures: List[DeliveryFailure] = []
            if not key.is_self_chat:
                try:
                    await self._retry(lambda: self._message_repo.append(recipient_log, message), step="recipient_append")
                    await self._publish_message(recipient_log, message)
                except WriteError as exc:
                    failures.append(DeliveryFailure("recipient", "append", exc.detail))

            await self._update_recent(sender_log, message, sender_peer_meta, "sender", failures)
            if not key.is_self_chat and not any(f.side == "recipient" for f in failures):
                await self._update_recent(recipient_log, message, recipient_peer_meta, "recipient", failures)

        if failures:
            log.error("Partial delivery", failures=[f.to_dict() for f in failures])
            raise PartialDeliveryError(receipt, failures)
        log.info("Message delivered", conversation_key=key.value)
        return receipt

    def _validate_text(self, text: Optional[str]) -> str:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message content cannot be empty")
        content = text.strip()
        if len(content) > self._settings.max_message_length:
            raise ValidationError(f"Message content exceeds {self._settings.max_message_length} characters")
        return content

    async def _update_recent(
        self,
        log_key: LogKey,
        message: Message,
        peer_meta: PeerDisplayMeta,
        side: str,
        failures: List[DeliveryFailure],
    ) -> None:
        summary = RecentSummary(
            last_message_id=message.id,
            last_message_text=message.text,
            last_message_at=message.sent_at,
            last_sender_id=message.sender_id,
            peer_display_meta=peer_meta,
        )
        try:
            applied = await self._retry(
                lambda: self._recent_repo.upsert(log_key.owner_id, log_key.peer_id, summary),
                step=f"{side}_recents",
            )
        except WriteError as exc:
            failures.append(DeliveryFailure(side, "recents", exc.detail))
            return
        if not applied:
            # an attempt that failed after writing leaves this message stored
            applied = await self._stored_as_latest(log_key, message.id)
        if applied:
            entry = RecentEntry(owner_id=log_key.owner_id, peer_id=log_key.peer_id, **summary.model_dump())
            await self._publish(recents_channel(log_key.owner_id), RecentEntryEvent(entry=entry).model_dump_json())

    async def _stored_as_latest(self, log_key: LogKey, message_id: str) -> bool:
        try:
            stored = await self._recent_repo.get(log_key.owner_id, log_key.peer_id)
        except StorageError as exc:
            logger.warning("Recent entry re-read failed", owner_id=log_key.owner_id, peer_id=log_key.peer_id, error=exc.detail)
            return False
        return stored is not None and stored.last_message_id == message_id

    async def _publish_message(self, log_key: LogKey, message: Message) -> None:
        event = MessageEvent(cursor=message_cursor(message), message=message)
        await self._publish(log_key.channel, event.model_dump_json())

    async def _publish(self, channel: str, payload: str) -> None:
        # the write is durable already; listeners catch up from their cursor
        try:
            await self._bus.publish(channel, payload)
        except Exception as exc:
            logger.warning("Realtime publish failed", channel=channel, error=str(exc))

    async def _retry(self, op: Callable[[], Awaitable[T]], step: str) -> T:
        attempts = self._settings.send_max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                return await op()
            except WriteError as exc:
                if attempt >= attempts:
                    logger.error("Write retries exhausted", step=step, attempts=attempt, error=exc.detail)
                    raise
                delay = min(self._settings.send_retry_max_backoff, self._settings.send_retry_backoff * (2 ** (attempt - 1)))
                delay = delay + random.uniform(0, delay / 2)
                logger.warning("Retrying write", step=step, attempt=attempt, delay=delay, error=exc.detail)
                await asyncio.sleep(delay)
