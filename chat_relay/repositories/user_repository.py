from typing import Iterable, Optional, Set

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from chat_relay.errors import ReadError, WriteError
from chat_relay.models.user import UserDocument
from chat_relay.schemas.message import PeerDisplayMeta
from chat_relay.schemas.user import UserProfile, UserProfileUpdate


_PROFILE_FIELDS = ("email", "display_name", "profile_image_url")


class UserRepository:
    """User directory; profiles are keyed by the auth provider's user id."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def upsert_profile(self, user_id: str, profile: UserProfileUpdate) -> UserProfile:
        fields = profile.model_dump(exclude_unset=True)
        update = {"$setOnInsert": {k: None for k in _PROFILE_FIELDS if k not in fields}}
        if fields:
            update["$set"] = fields
        if not update["$setOnInsert"]:
            del update["$setOnInsert"]
        try:
            await self._collection.update_one({"_id": user_id}, update, upsert=True)
        except PyMongoError as exc:
            raise WriteError(f"Failed to save profile for {user_id}: {exc}") from exc
        stored = await self.get_profile(user_id)
        return stored if stored else UserProfile(id=user_id, **fields)

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        try:
            user: Optional[UserDocument] = await self._collection.find_one({"_id": user_id})
        except PyMongoError as exc:
            raise ReadError(f"Failed to read profile for {user_id}: {exc}") from exc
        if not user:
            return None
        return UserProfile(
            id=str(user["_id"]),
            email=user.get("email"),
            display_name=user.get("display_name"),
            profile_image_url=user.get("profile_image_url"),
        )

    async def display_meta(self, user_id: str) -> PeerDisplayMeta:
        profile = await self.get_profile(user_id)
        if not profile:
            return PeerDisplayMeta()
        return PeerDisplayMeta(
            display_name=profile.display_name,
            email=profile.email,
            profile_image_url=profile.profile_image_url,
        )

    async def missing(self, user_ids: Iterable[str]) -> Set[str]:
        wanted = set(user_ids)
        try:
            cur = self._collection.find({"_id": {"$in": list(wanted)}}, {"_id": 1})
            docs = await cur.to_list(length=None)
        except PyMongoError as exc:
            raise ReadError(f"Failed to look up users: {exc}") from exc
        return wanted - {str(doc["_id"]) for doc in docs}
