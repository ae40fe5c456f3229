from typing import Any, Dict, List, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from chat_relay.errors import ReadError, WriteError
from chat_relay.models.recent import RecentDocument
from chat_relay.schemas.message import RecentEntry, RecentSummary
from chat_relay.utils.cursor import as_utc, to_storage


logger = structlog.get_logger()


class RecentRepository:
    """Inbox index: one overwritten summary per (owner, peer)."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["recents"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("owner_id", ASCENDING), ("peer_id", ASCENDING)], unique=True)
        await self.collection.create_index([("owner_id", ASCENDING), ("last_message_at", DESCENDING)])

    async def upsert(self, owner_id: str, peer_id: str, summary: RecentSummary) -> bool:
        """Apply ``summary`` unless the stored entry is at least as new. Returns whether it was applied."""
        at = to_storage(summary.last_message_at)
        doc: RecentDocument = {
            "owner_id": owner_id,
            "peer_id": peer_id,
            "last_message_id": summary.last_message_id,
            "last_message_text": summary.last_message_text,
            "last_message_at": at,
            "last_sender_id": summary.last_sender_id,
            "peer_display_meta": summary.peer_display_meta.model_dump(),
        }
        older = {
            "owner_id": owner_id,
            "peer_id": peer_id,
            "$or": [
                {"last_message_at": {"$lt": at}},
                {"last_message_at": at, "last_message_id": {"$lt": summary.last_message_id}},
            ],
        }
        try:
            if await self._replace_if_older(older, doc):
                return True
            try:
                await self.collection.insert_one(dict(doc))
                return True
            except DuplicateKeyError:
                # a concurrent writer created the entry between our two calls
                applied = await self._replace_if_older(older, doc)
        except PyMongoError as exc:
            raise WriteError(f"Failed to update recent entry {owner_id}/{peer_id}: {exc}") from exc
        if not applied:
            logger.debug(
                "Stale recent entry ignored",
                owner_id=owner_id,
                peer_id=peer_id,
                message_id=summary.last_message_id,
            )
        return applied

    async def get(self, owner_id: str, peer_id: str) -> Optional[RecentEntry]:
        try:
            doc = await self.collection.find_one({"owner_id": owner_id, "peer_id": peer_id})
        except PyMongoError as exc:
            raise ReadError(f"Failed to read recent entry: {exc}") from exc
        return _to_entry(doc) if doc else None

    async def list(self, owner_id: str, limit: int = 100) -> List[RecentEntry]:
        sort = [("last_message_at", DESCENDING), ("last_message_id", DESCENDING)]
        try:
            cur = self.collection.find({"owner_id": owner_id}).sort(sort).limit(limit)
            docs = await cur.to_list(length=limit)
        except PyMongoError as exc:
            raise ReadError(f"Failed to list recent entries: {exc}") from exc
        return [_to_entry(doc) for doc in docs]

    async def _replace_if_older(self, query: Dict[str, Any], doc: RecentDocument) -> bool:
        result = await self.collection.update_one(query, {"$set": dict(doc)})
        return result.matched_count > 0


def _to_entry(doc: Dict[str, Any]) -> RecentEntry:
    try:
        return RecentEntry(
            owner_id=doc["owner_id"],
            peer_id=doc["peer_id"],
            last_message_id=doc["last_message_id"],
            last_message_text=doc["last_message_text"],
            last_message_at=as_utc(doc["last_message_at"]),
            last_sender_id=doc["last_sender_id"],
            peer_display_meta=doc.get("peer_display_meta") or {},
        )
    except (KeyError, PydanticValidationError) as exc:
        raise ReadError(f"Corrupt recent entry {doc.get('_id')}: {exc}") from exc
