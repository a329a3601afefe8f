"""In-memory storage for threads and their messages.

Nothing here survives a restart. Records are created once and never
mutated; deduplication of upstream messages is left to the caller.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Thread:
    """A thread seen at least once through a successful fetch."""

    id: int
    thread_id: str
    title: str
    created_at: datetime = field(default_factory=_utc_now)


@dataclass(frozen=True)
class MessageDraft:
    """A normalized upstream message that has not been stored yet."""

    message_id: str
    role: MessageRole
    content: str
    timestamp: datetime


@dataclass(frozen=True)
class Message:
    id: int
    thread_id: str
    message_id: str
    role: MessageRole
    content: str
    timestamp: datetime
    created_at: datetime = field(default_factory=_utc_now)


class ThreadStore:
    """Keyed storage mapping external thread ids to ordered message lists."""

    def __init__(self):
        self._threads: Dict[str, Thread] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._thread_ids = itertools.count(1)
        self._message_ids = itertools.count(1)

    def get_thread(self, thread_id: str) -> Optional[Thread]:
        return self._threads.get(thread_id)

    def create_thread(self, thread_id: str, title: str) -> Thread:
        """Create the thread record, or return the existing one for this id."""

        existing = self._threads.get(thread_id)
        if existing is not None:
            return existing

        thread = Thread(id=next(self._thread_ids), thread_id=thread_id, title=title)
        self._threads[thread_id] = thread
        return thread

    def get_messages(self, thread_id: str) -> List[Message]:
        """Return a thread's messages ordered by origin timestamp (oldest first).

        The sort is stable, so messages sharing a timestamp keep insertion order.
        """

        return sorted(self._messages.get(thread_id, []), key=lambda message: message.timestamp)

    def create_messages(self, thread_id: str, drafts: Iterable[MessageDraft]) -> List[Message]:
        """Append drafts in input order and return the created records."""

        stored = self._messages.setdefault(thread_id, [])
        created: List[Message] = []
        for draft in drafts:
            message = Message(
                id=next(self._message_ids),
                thread_id=thread_id,
                message_id=draft.message_id,
                role=draft.role,
                content=draft.content,
                timestamp=draft.timestamp,
            )
            stored.append(message)
            created.append(message)
        return created

    def known_message_ids(self, thread_id: str) -> Set[str]:
        return {message.message_id for message in self._messages.get(thread_id, [])}

    def get_stats(self) -> dict:
        """Get storage statistics."""
        return {
            "threads": len(self._threads),
            "messages": sum(len(messages) for messages in self._messages.values()),
        }
