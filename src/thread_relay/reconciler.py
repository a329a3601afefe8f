"""Detect messages that are new since the last one a client knows about."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Sequence, TypeVar

M = TypeVar("M")


def find_new_messages(batch: Sequence[M], last_known_message_id: Optional[str]) -> list[M]:
    """Return the part of a chronological batch after the last known message.

    When the last known id is missing, or it is not in the batch (it fell out
    of the fetch window), nothing is reported as new. Old history is never
    re-announced, at the cost of not detecting a gap.
    """

    if not last_known_message_id:
        return []

    for index, message in enumerate(batch):
        if message.message_id == last_known_message_id:
            return list(batch[index + 1:])

    return []


class ThreadLocks:
    """One asyncio lock per thread id.

    Held around fetch and store so two requests for the same thread cannot
    interleave their writes. An entry lives only while some task holds or
    waits for it, so the table stays as small as the set of busy threads.
    """

    def __init__(self):
        # thread id -> [lock, tasks holding or waiting]
        self._locks: Dict[str, list] = {}

    @asynccontextmanager
    async def for_thread(self, thread_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(thread_id)
        if entry is None:
            entry = [asyncio.Lock(), 0]
            self._locks[thread_id] = entry
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0 and self._locks.get(thread_id) is entry:
                del self._locks[thread_id]

    def __len__(self) -> int:
        return len(self._locks)
