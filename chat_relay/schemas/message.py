from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """A persisted message; both directional copies share every field."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    conversation_key: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)
    recipient_id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    sent_at: datetime


class SendMessageRequest(BaseModel):

    model_config = ConfigDict(extra="forbid")

    to_id: str = Field(min_length=1)
    text: str


class SendReceipt(BaseModel):

    message_id: str
    sent_at: datetime
    conversation_key: str


class HistoryPage(BaseModel):

    items: List[Message]
    next_cursor: Optional[str] = None


class PeerDisplayMeta(BaseModel):
    """Denormalised from the user directory; opaque to the delivery core."""

    display_name: Optional[str] = None
    email: Optional[str] = None
    profile_image_url: Optional[str] = None


class RecentSummary(BaseModel):

    model_config = ConfigDict(extra="forbid", frozen=True)

    last_message_id: str
    last_message_text: str
    last_message_at: datetime
    last_sender_id: str
    peer_display_meta: PeerDisplayMeta = Field(default_factory=PeerDisplayMeta)


class RecentEntry(RecentSummary):

    owner_id: str
    peer_id: str


class MessageEvent(BaseModel):

    type: Literal["message"] = "message"
    cursor: str
    message: Message


class RecentEntryEvent(BaseModel):

    type: Literal["recent"] = "recent"
    entry: RecentEntry


class ErrorEvent(BaseModel):
    """Terminal frame; resume by subscribing again from ``cursor``."""

    type: Literal["error"] = "error"
    code: str
    detail: str
    cursor: Optional[str] = None


StreamEvent = Union[MessageEvent, RecentEntryEvent, ErrorEvent]


class SendFrame(BaseModel):
    """Inbound websocket frame."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["send"]
    text: str
    client_message_id: Optional[str] = None


class AckFrame(BaseModel):

    type: Literal["ack"] = "ack"
    client_message_id: Optional[str] = None
    status: Literal["delivered", "partial"] = "delivered"
    receipt: SendReceipt
    failures: List[dict] = Field(default_factory=list)


class NackFrame(BaseModel):

    type: Literal["nack"] = "nack"
    client_message_id: Optional[str] = None
    error: str
    detail: str
