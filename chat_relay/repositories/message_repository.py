from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import structlog
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from chat_relay.errors import ReadError, ValidationError, WriteError
from chat_relay.models.conversation import LogKey
from chat_relay.models.message import MessageDocument
from chat_relay.schemas.message import Message
from chat_relay.utils.cursor import Position, as_utc, decode_cursor, encode_cursor, to_storage


logger = structlog.get_logger()


def message_cursor(message: Message) -> str:
    return encode_cursor(message.sent_at, message.id)


class MessageRepository:
    """Directional, append-only conversation logs."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("owner_id", ASCENDING), ("peer_id", ASCENDING), ("message_id", ASCENDING)],
            unique=True,
        )
        await self.collection.create_index(
            [("owner_id", ASCENDING), ("peer_id", ASCENDING), ("sent_at", ASCENDING), ("message_id", ASCENDING)]
        )

    async def append(self, log_key: LogKey, message: Message) -> str:
        if message.conversation_key != log_key.conversation_key.value:
            raise ValidationError(f"Message {message.id} does not belong to conversation {log_key.conversation_key.value}")
        doc: MessageDocument = {
            "owner_id": log_key.owner_id,
            "peer_id": log_key.peer_id,
            "conversation_key": message.conversation_key,
            "message_id": message.id,
            "sender_id": message.sender_id,
            "recipient_id": message.recipient_id,
            "text": message.text,
            "sent_at": to_storage(message.sent_at),
        }
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            # retried append with the same idempotency key
            logger.debug("Append already applied", message_id=message.id, owner_id=log_key.owner_id)
        except PyMongoError as exc:
            raise WriteError(f"Failed to append message {message.id}: {exc}") from exc
        return message.id

    async def stream_since(
        self,
        log_key: LogKey,
        cursor: Optional[str] = None,
        batch_size: int = 100,
    ) -> AsyncIterator[Message]:
        position = decode_cursor(cursor)
        while True:
            batch = await self._fetch_after(log_key, position, batch_size)
            for message in batch:
                yield message
            if len(batch) < batch_size:
                return
            last = batch[-1]
            position = (last.sent_at, last.id)

    async def history(
        self,
        log_key: LogKey,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> Tuple[List[Message], Optional[str]]:
        items = await self._fetch_after(log_key, decode_cursor(cursor), limit)
        next_cursor = message_cursor(items[-1]) if items else cursor
        return items, next_cursor

    async def count(self, log_key: LogKey) -> int:
        try:
            return await self.collection.count_documents(_log_query(log_key))
        except PyMongoError as exc:
            raise ReadError(f"Failed to count messages: {exc}") from exc

    async def _fetch_after(self, log_key: LogKey, position: Optional[Position], limit: int) -> List[Message]:
        query = _log_query(log_key)
        if position is not None:
            ts, message_id = position
            ts = to_storage(ts)
            query["$or"] = [
                {"sent_at": {"$gt": ts}},
                {"sent_at": ts, "message_id": {"$gt": message_id}},
            ]
        sort = [("sent_at", ASCENDING), ("message_id", ASCENDING)]
        try:
            cur = self.collection.find(query).sort(sort).limit(limit)
            docs = await cur.to_list(length=limit)
        except PyMongoError as exc:
            raise ReadError(f"Failed to read conversation log: {exc}") from exc
        return [_to_message(doc) for doc in docs]


def _log_query(log_key: LogKey) -> Dict[str, Any]:
    return {"owner_id": log_key.owner_id, "peer_id": log_key.peer_id}


def _to_message(doc: Dict[str, Any]) -> Message:
    try:
        return Message(
            id=doc["message_id"],
            conversation_key=doc["conversation_key"],
            sender_id=doc["sender_id"],
            recipient_id=doc["recipient_id"],
            text=doc["text"],
            sent_at=as_utc(doc["sent_at"]),
        )
    except (KeyError, PydanticValidationError) as exc:
        raise ReadError(f"Corrupt message document {doc.get('_id')}: {exc}") from exc
