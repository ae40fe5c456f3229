from datetime import datetime, timezone
from typing import Optional, Tuple

from chat_relay.errors import ValidationError


# Cursor format: sent_at_ms:message_id
Position = Tuple[datetime, str]


def encode_cursor(sent_at: datetime, message_id: str) -> str:
    return f"{to_millis(sent_at)}:{message_id}"


def decode_cursor(cursor: Optional[str]) -> Optional[Position]:
    if not cursor:
        return None
    ts_str, sep, message_id = cursor.partition(":")
    if not sep or not message_id:
        raise ValidationError(f"Malformed cursor: {cursor!r}")
    try:
        ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise ValidationError(f"Malformed cursor: {cursor!r}") from exc
    return ts, message_id


def to_millis(value: datetime) -> int:
    return int(as_utc(value).timestamp() * 1000)


def as_utc(value: datetime) -> datetime:
    # BSON datetimes come back naive unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_after(position: Position, cursor: Optional[Position]) -> bool:
    if cursor is None:
        return True
    return (to_millis(position[0]), position[1]) > (to_millis(cursor[0]), cursor[1])


def to_storage(value: datetime) -> datetime:
    # stored naive; BSON datetimes are UTC by definition
    return as_utc(value).replace(tzinfo=None)
