from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from bson import ObjectId


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageClock:
    """
    Allocates (message_id, sent_at) pairs.

    sent_at is truncated to milliseconds (BSON datetime precision) and never
    goes backwards, even if the wall clock does. ObjectIds generated by one
    process increase monotonically, so equal timestamps still order
    deterministically by id.
    """

    def __init__(self, now: Optional[Callable[[], datetime]] = None) -> None:
        self._now = now or _utcnow
        self._last: Optional[datetime] = None

    def allocate(self) -> Tuple[str, datetime]:
        current = self._now().astimezone(timezone.utc)
        current = current.replace(microsecond=(current.microsecond // 1000) * 1000)
        if self._last is not None and current < self._last:
            current = self._last
        self._last = current
        return str(ObjectId()), current
