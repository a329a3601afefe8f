"""Subscription bookkeeping and fan-out for live WebSocket connections.

Tracks which connections care about which thread and pushes frames to
every open subscriber of a thread.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Set

from fastapi.websockets import WebSocket, WebSocketState

logger = logging.getLogger(__name__)


def is_open(connection: WebSocket) -> bool:
    return (
        connection.client_state == WebSocketState.CONNECTED
        and connection.application_state == WebSocketState.CONNECTED
    )


class SubscriptionBroadcaster:
    """Maps thread ids to the connections subscribed to them.

    Holds references only; connection lifecycle belongs to the WebSocket
    endpoint, which calls disconnect() when a connection closes.
    """

    def __init__(self):
        self._subscribers: Dict[str, Set[WebSocket]] = {}
        self._last_broadcast: Optional[datetime] = None
        self._broadcast_count = 0

    def subscribe(self, connection: WebSocket, thread_id: str) -> None:
        self._subscribers.setdefault(thread_id, set()).add(connection)
        logger.info(f"Client subscribed to thread: {thread_id}")

    def unsubscribe(self, connection: WebSocket, thread_id: str) -> None:
        connections = self._subscribers.get(thread_id)
        if connections is not None:
            connections.discard(connection)
            if not connections:
                del self._subscribers[thread_id]
        logger.info(f"Client unsubscribed from thread: {thread_id}")

    def disconnect(self, connection: WebSocket) -> None:
        """Remove a closed connection from every thread it subscribed to."""

        for thread_id in list(self._subscribers):
            connections = self._subscribers[thread_id]
            connections.discard(connection)
            if not connections:
                del self._subscribers[thread_id]

    def subscribers(self, thread_id: str) -> Set[WebSocket]:
        return set(self._subscribers.get(thread_id, ()))

    async def broadcast(self, thread_id: str, payload: Dict[str, Any]) -> int:
        """Send a payload to every open subscriber of a thread.

        Closed connections are skipped, not pruned.

        Returns:
            Number of connections the payload was delivered to.
        """
        connections = self.subscribers(thread_id)
        if not connections:
            return 0

        self._last_broadcast = datetime.now()
        self._broadcast_count += 1

        text = json.dumps(payload)
        delivered = 0
        for connection in connections:
            if not is_open(connection):
                continue
            try:
                await connection.send_text(text)
                delivered += 1
            except Exception as e:
                logger.error(f"Error sending to subscriber of {thread_id}: {e}")

        logger.info(
            f"Broadcast {payload.get('type')} for {thread_id} to {delivered} client(s) "
            f"(#{self._broadcast_count})"
        )
        return delivered

    def get_stats(self) -> dict:
        """Get broadcaster statistics."""
        return {
            "threads": len(self._subscribers),
            "connections": len({conn for conns in self._subscribers.values() for conn in conns}),
            "last_broadcast": self._last_broadcast.isoformat() if self._last_broadcast else None,
            "broadcast_count": self._broadcast_count,
        }
