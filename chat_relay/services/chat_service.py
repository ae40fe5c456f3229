from typing import List, Optional

from chat_relay.errors import ValidationError
from chat_relay.models.conversation import LogKey
from chat_relay.repositories.message_repository import MessageRepository
from chat_relay.repositories.recent_repository import RecentRepository
from chat_relay.schemas.message import HistoryPage, RecentEntry


class ChatService:

    def __init__(self, message_repo: MessageRepository, recent_repo: RecentRepository, page_limit: int = 50) -> None:
        self._message_repo = message_repo
        self._recent_repo = recent_repo
        self._page_limit = page_limit

    async def get_history(self, owner_id: str, peer_id: str, cursor: Optional[str] = None, limit: Optional[int] = None) -> HistoryPage:
        if limit is None:
            limit = self._page_limit
        elif not 1 <= limit <= self._page_limit:
            raise ValidationError(f"limit must be between 1 and {self._page_limit}")
        items, next_cursor = await self._message_repo.history(LogKey(owner_id, peer_id), cursor=cursor, limit=limit)
        return HistoryPage(items=items, next_cursor=next_cursor)

    async def list_conversations(self, owner_id: str, limit: int = 100) -> List[RecentEntry]:
        return await self._recent_repo.list(owner_id, limit=limit)
