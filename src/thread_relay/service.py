"""Thread loading and update checks: fetch, reconcile, store, broadcast."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from thread_relay.broadcaster import SubscriptionBroadcaster
from thread_relay.config import RelayConfig
from thread_relay.errors import MissingInput, StorageFailure
from thread_relay.protocol import ServerFrameType, serialize_messages, server_frame
from thread_relay.reconciler import ThreadLocks, find_new_messages
from thread_relay.storage import MessageDraft, ThreadStore
from thread_relay.upstream import UpstreamFetcher

logger = logging.getLogger(__name__)

WireMessage = Dict[str, Any]


def _require(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise MissingInput(f"{label} is required")
    return value.strip()


class ThreadService:
    """Coordinates the store, the upstream fetcher and the broadcaster.

    All collaborators are injected; the app factory owns their lifetime.
    """

    def __init__(
        self,
        store: ThreadStore,
        fetcher: UpstreamFetcher,
        broadcaster: SubscriptionBroadcaster,
        config: Optional[RelayConfig] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.broadcaster = broadcaster
        self.config = config or RelayConfig()
        self._locks = ThreadLocks()

    def _store_unseen(self, thread_id: str, drafts: List[MessageDraft]) -> int:
        """Create the thread if needed and store drafts not already known."""

        if self.store.get_thread(thread_id) is None:
            self.store.create_thread(
                thread_id, self.config.title_template.format(thread_id=thread_id)
            )
            logger.info(f"Created thread record for {thread_id}")

        known = self.store.known_message_ids(thread_id)
        unseen = [draft for draft in drafts if draft.message_id not in known]
        if unseen:
            self.store.create_messages(thread_id, unseen)
        return len(unseen)

    async def load_thread(self, thread_id: Any, api_key: Any) -> List[WireMessage]:
        """Fetch a thread from upstream, cache it and notify subscribers.

        Returns:
            The fetched messages in wire shape, oldest first.
        """
        api_key = _require(api_key, "API key")
        thread_id = _require(thread_id, "Thread ID")

        async with self._locks.for_thread(thread_id):
            drafts = await self.fetcher.list_messages(
                thread_id, api_key, limit=self.config.load_limit, order="desc"
            )
            stored = self._store_unseen(thread_id, drafts)

        logger.info(f"Loaded {len(drafts)} message(s) for {thread_id} ({stored} new)")

        messages = serialize_messages(drafts)
        await self.broadcaster.broadcast(
            thread_id, server_frame(ServerFrameType.MESSAGES_UPDATED, thread_id, messages)
        )
        return messages

    async def check_updates(
        self, thread_id: Any, api_key: Any, last_message_id: Any = None
    ) -> List[WireMessage]:
        """Return messages newer than last_message_id and announce them.

        Only the most recent window of messages is fetched; see
        find_new_messages for the policy when the last id is outside it.
        """
        api_key = _require(api_key, "API key")
        thread_id = _require(thread_id, "Thread ID")
        if not isinstance(last_message_id, str):
            last_message_id = None

        async with self._locks.for_thread(thread_id):
            batch = await self.fetcher.list_messages(
                thread_id, api_key, limit=self.config.update_window, order="desc"
            )
            new_drafts = find_new_messages(batch, last_message_id)
            if new_drafts:
                self._store_unseen(thread_id, new_drafts)

        if not new_drafts:
            return []

        logger.info(f"Found {len(new_drafts)} new message(s) for {thread_id}")

        messages = serialize_messages(new_drafts)
        await self.broadcaster.broadcast(
            thread_id, server_frame(ServerFrameType.NEW_MESSAGES, thread_id, messages)
        )
        return messages

    def stored_messages(self, thread_id: str) -> List[WireMessage]:
        """Serve a thread's cached messages without contacting upstream."""

        try:
            return serialize_messages(self.store.get_messages(thread_id))
        except Exception as exc:
            logger.error(f"Error reading stored messages for {thread_id}: {exc}")
            raise StorageFailure() from exc
