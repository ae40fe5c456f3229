import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List

from chat_relay.models.conversation import LogKey


class _Entry:

    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.holders = 0


class LogLockRegistry:
    """
    One lock per directional conversation log.

    Appends to the same log are serialised; different logs never contend.
    Entries are dropped once nobody holds or waits on them.
    """

    def __init__(self) -> None:
        self._entries: Dict[LogKey, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, keys: Iterable[LogKey]) -> AsyncIterator[None]:
        # sorted acquisition: A->B and B->A sends lock in the same order
        ordered: List[LogKey] = sorted(set(keys))
        entries = [self._retain(key) for key in ordered]
        acquired: List[_Entry] = []
        try:
            for entry in entries:
                await entry.lock.acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry.lock.release()
            for key in ordered:
                self._release(key)

    def _retain(self, key: LogKey) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.holders += 1
        return entry

    def _release(self, key: LogKey) -> None:
        entry = self._entries[key]
        entry.holders -= 1
        if entry.holders == 0:
            del self._entries[key]
