from datetime import datetime
from typing import TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    # directional log this copy belongs to
    owner_id: str
    peer_id: str
    conversation_key: str
    message_id: str
    sender_id: str
    recipient_id: str
    text: str
    sent_at: datetime
