from typing import Optional

from fastapi import APIRouter, Depends, Query

from chat_relay.services.chat_service import ChatService
from chat_relay.utils.dependencies import get_chat_service, get_current_user_id


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(limit: int = Query(100, ge=1, le=500), current_user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    items = await service.list_conversations(current_user_id, limit=limit)
    return {"items": [item.model_dump(mode="json") for item in items]}


@router.get("/{peer_id}/messages")
async def list_messages(peer_id: str, limit: Optional[int] = Query(None, ge=1), cursor: Optional[str] = None, current_user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    page = await service.get_history(current_user_id, peer_id, cursor=cursor, limit=limit)
    return page.model_dump(mode="json")
