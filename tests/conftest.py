"""
Shared fixtures.

MongoDB is replaced by mongomock-motor and Redis by fakeredis, so the suite
runs without external services.
"""

import uuid
from typing import Dict, List, Optional, Set

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import AutoReconnect
from redis.exceptions import ConnectionError as RedisConnectionError

from chat_relay.config import Settings
from chat_relay.errors import WriteError
from chat_relay.models.conversation import LogKey
from chat_relay.repositories.message_repository import MessageRepository
from chat_relay.repositories.recent_repository import RecentRepository
from chat_relay.repositories.user_repository import UserRepository
from chat_relay.schemas.message import Message, RecentSummary
from chat_relay.schemas.user import UserProfileUpdate
from chat_relay.services.chat_service import ChatService
from chat_relay.services.delivery_service import DeliveryCoordinator
from chat_relay.services.subscription_service import SubscriptionService
from chat_relay.utils.realtime_bus import LocalBus


USERS = {
    "alice": UserProfileUpdate(email="alice@example.com", display_name="Alice", profile_image_url="https://img.example.com/alice.png"),
    "bob": UserProfileUpdate(email="bob@example.com", display_name="Bob", profile_image_url="https://img.example.com/bob.png"),
    "carol": UserProfileUpdate(email="carol@example.com", display_name="Carol"),
}


class FlakyMessageRepository(MessageRepository):
    """Fails appends to chosen owners' logs a number of times, then behaves."""

    def __init__(self, db, failures: Optional[Dict[str, int]] = None) -> None:
        super().__init__(db)
        self.failures = dict(failures or {})
        self.calls: Dict[str, int] = {}

    async def append(self, log_key: LogKey, message: Message) -> str:
        self.calls[log_key.owner_id] = self.calls.get(log_key.owner_id, 0) + 1
        remaining = self.failures.get(log_key.owner_id, 0)
        if remaining:
            self.failures[log_key.owner_id] = remaining - 1
            raise WriteError(f"storage unavailable for {log_key.owner_id}")
        return await super().append(log_key, message)


class FlakyRecentRepository(RecentRepository):
    """Fails upserts for chosen owners; ``lost_acks`` owners get one write that lands but reports failure."""

    def __init__(self, db, failing_owners: Optional[Set[str]] = None, lost_acks: Optional[Set[str]] = None) -> None:
        super().__init__(db)
        self.failing_owners = set(failing_owners or ())
        self.lost_acks = set(lost_acks or ())

    async def upsert(self, owner_id: str, peer_id: str, summary: RecentSummary) -> bool:
        if owner_id in self.failing_owners:
            raise WriteError(f"recents unavailable for {owner_id}")
        applied = await super().upsert(owner_id, peer_id, summary)
        if owner_id in self.lost_acks:
            self.lost_acks.discard(owner_id)
            raise WriteError(f"acknowledgement lost for {owner_id}")
        return applied


class DroppingPubSub:
    """Confirms the subscription, then behaves like a reset connection."""

    def __init__(self) -> None:
        self.channel = None
        self.closed = False
        self._confirmed = False

    async def subscribe(self, channel: str) -> None:
        self.channel = channel

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        if not self._confirmed:
            self._confirmed = True
            return {"type": "subscribe", "channel": self.channel, "data": 1}
        raise RedisConnectionError("Connection reset by peer")

    async def unsubscribe(self, channel: str) -> None:
        raise RedisConnectionError("Connection closed")

    async def aclose(self) -> None:
        self.closed = True


class DroppingRedis:

    def __init__(self) -> None:
        self.pubsubs: List[DroppingPubSub] = []

    def pubsub(self) -> DroppingPubSub:
        pubsub = DroppingPubSub()
        self.pubsubs.append(pubsub)
        return pubsub

    async def publish(self, channel: str, message: str) -> int:
        return 0

    async def aclose(self) -> None:
        pass


class BrokenCursor:

    def sort(self, *args, **kwargs):
        return self

    def limit(self, *args, **kwargs):
        return self

    async def to_list(self, length=None):
        raise AutoReconnect("connection reset")


class BrokenCollection:
    """Stands in for a collection whose server went away."""

    async def insert_one(self, *args, **kwargs):
        raise AutoReconnect("primary stepped down")

    async def update_one(self, *args, **kwargs):
        raise AutoReconnect("primary stepped down")

    async def find_one(self, *args, **kwargs):
        raise AutoReconnect("primary stepped down")

    def find(self, *args, **kwargs):
        return BrokenCursor()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        log_level="WARNING",
        log_format="console",
        send_max_attempts=3,
        send_retry_backoff=0,
        send_retry_max_backoff=0,
        subscriber_queue_size=16,
        history_page_limit=50,
    )


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client[f"chat_relay_{uuid.uuid4().hex}"]


@pytest_asyncio.fixture
async def message_repo(db) -> FlakyMessageRepository:
    repo = FlakyMessageRepository(db)
    await repo.ensure_indexes()
    return repo


@pytest_asyncio.fixture
async def recent_repo(db) -> FlakyRecentRepository:
    repo = FlakyRecentRepository(db)
    await repo.ensure_indexes()
    return repo


@pytest_asyncio.fixture
async def user_repo(db) -> UserRepository:
    repo = UserRepository(db)
    for user_id, profile in USERS.items():
        await repo.upsert_profile(user_id, profile)
    return repo


@pytest.fixture
def bus() -> LocalBus:
    return LocalBus(queue_size=16)


@pytest.fixture
def coordinator(message_repo, recent_repo, user_repo, bus, settings) -> DeliveryCoordinator:
    return DeliveryCoordinator(message_repo, recent_repo, user_repo, bus, settings)


@pytest.fixture
def chat_service(message_repo, recent_repo) -> ChatService:
    return ChatService(message_repo, recent_repo, page_limit=50)


@pytest.fixture
def subscriptions(message_repo, recent_repo, bus) -> SubscriptionService:
    return SubscriptionService(message_repo, recent_repo, bus, batch_size=2)
