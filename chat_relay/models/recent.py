from datetime import datetime
from typing import Optional, TypedDict


class PeerMetaDocument(TypedDict, total=False):
    display_name: Optional[str]
    email: Optional[str]
    profile_image_url: Optional[str]


class RecentDocument(TypedDict, total=False):
    _id: str
    owner_id: str
    peer_id: str
    last_message_id: str
    last_message_text: str
    last_message_at: datetime
    last_sender_id: str
    peer_display_meta: PeerMetaDocument
