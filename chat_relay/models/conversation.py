from typing import NamedTuple


class ConversationKey(NamedTuple):
    """Unordered pair of participants, normalised so (a, b) == (b, a)."""

    low: str
    high: str

    @classmethod
    def of(cls, user_a: str, user_b: str) -> "ConversationKey":
        low, high = sorted([user_a, user_b])
        return cls(low, high)

    @property
    def value(self) -> str:
        return f"{self.low}:{self.high}"

    @property
    def is_self_chat(self) -> bool:
        return self.low == self.high


class LogKey(NamedTuple):
    """One side's view of a conversation: owner's log keyed by peer."""

    owner_id: str
    peer_id: str

    @property
    def conversation_key(self) -> ConversationKey:
        return ConversationKey.of(self.owner_id, self.peer_id)

    @property
    def channel(self) -> str:
        return f"log:{self.owner_id}:{self.peer_id}"

    def mirrored(self) -> "LogKey":
        return LogKey(self.peer_id, self.owner_id)


def recents_channel(owner_id: str) -> str:
    return f"recents:{owner_id}"
