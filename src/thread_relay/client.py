"""Client for the relay: keeps one thread's messages in sync.

Messages arrive from two sources, WebSocket pushes and a periodic
check-updates poll. Both are folded into a single ordered list keyed by
message id, so a message announced by both never shows up twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import urlparse, urlunparse

import aiohttp
import click

from thread_relay.protocol import ClientFrameType, ServerFrameType

logger = logging.getLogger(__name__)

POLL_INTERVAL = 10.0
RECONNECT_DELAY = 3.0

WireMessage = Dict[str, Any]
FrameHandler = Callable[[Dict[str, Any]], None]
UpdateHandler = Callable[[str, List[WireMessage]], None]


class RelayRequestError(Exception):
    """The relay answered an HTTP request with an error status."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"{status}: {message}")


def _valid_messages(messages: Any) -> bool:
    return isinstance(messages, list) and all(
        isinstance(message, dict) and "id" in message for message in messages
    )


class ThreadViewState:
    """Ordered, duplicate-free message list for the thread being viewed."""

    def __init__(self):
        self.thread_id: Optional[str] = None
        self.messages: List[WireMessage] = []
        self._ids: Set[str] = set()

    @property
    def last_message_id(self) -> Optional[str]:
        return self.messages[-1]["id"] if self.messages else None

    def replace(self, thread_id: str, messages: List[WireMessage]) -> None:
        """Full refresh: the thread's list becomes exactly these messages."""

        self.thread_id = thread_id
        self.messages = []
        self._ids = set()
        self.append(messages)

    def append(self, messages: List[WireMessage]) -> List[WireMessage]:
        """Add messages not yet present, keeping arrival order.

        Returns:
            The messages that were actually added.
        """
        added = []
        for message in messages:
            message_id = message.get("id")
            if message_id in self._ids:
                continue
            self._ids.add(message_id)
            self.messages.append(message)
            added.append(message)
        return added

    def apply_frame(self, frame: Dict[str, Any]) -> Optional[List[WireMessage]]:
        """Fold a pushed frame into the state.

        Returns:
            The messages the frame contributed, or None when the frame was
            ignored (another thread, an unknown kind, or malformed messages).
        """
        if self.thread_id is None or frame.get("threadId") != self.thread_id:
            return None

        messages = frame.get("messages") or []
        if not _valid_messages(messages):
            logger.warning(f"Dropping frame with malformed messages for {self.thread_id}")
            return None
        try:
            frame_type = ServerFrameType(frame.get("type"))
        except ValueError:
            return None

        if frame_type is ServerFrameType.MESSAGES_UPDATED:
            self.replace(self.thread_id, messages)
            return list(self.messages)
        return self.append(messages)


class RelayHttpClient:
    """Calls the relay's HTTP endpoints."""

    def __init__(self, base_url: str, session: aiohttp.ClientSession):
        self.base_url = base_url.rstrip("/")
        self._session = session

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        async with self._session.request(method, f"{self.base_url}{path}", json=payload) as response:
            try:
                body = await response.json(content_type=None)
            except (aiohttp.ContentTypeError, json.JSONDecodeError):
                body = {}
            if response.status >= 400:
                message = body.get("message") if isinstance(body, dict) else None
                raise RelayRequestError(response.status, message or response.reason or "Request failed")
            return body

    async def load_messages(self, thread_id: str, api_key: str) -> List[WireMessage]:
        body = await self._request("POST", f"/api/threads/{thread_id}/messages", {"apiKey": api_key})
        return body.get("messages", [])

    async def check_updates(
        self, thread_id: str, api_key: str, last_message_id: Optional[str]
    ) -> List[WireMessage]:
        body = await self._request(
            "POST",
            f"/api/threads/{thread_id}/check-updates",
            {"apiKey": api_key, "lastMessageId": last_message_id},
        )
        if not body.get("hasNewMessages"):
            return []
        return body.get("newMessages", [])

    async def stored_messages(self, thread_id: str) -> List[WireMessage]:
        body = await self._request("GET", f"/api/threads/{thread_id}/messages")
        return body.get("messages", [])


class RelayConnection:
    """Persistent WebSocket to the relay that reconnects on its own.

    After an unexpected close it waits a fixed delay and reconnects, with no
    limit on attempts. Subscriptions are re-sent on every reconnect.
    """

    def __init__(
        self,
        ws_url: str,
        session: aiohttp.ClientSession,
        on_frame: FrameHandler,
        reconnect_delay: float = RECONNECT_DELAY,
    ):
        self.ws_url = ws_url
        self.reconnect_delay = reconnect_delay
        self._session = session
        self._on_frame = on_frame
        self._subscriptions: Set[str] = set()
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def start(self) -> None:
        if self._task is not None:
            return
        self._closing = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def subscribe(self, thread_id: str) -> None:
        self._subscriptions.add(thread_id)
        await self._send(ClientFrameType.SUBSCRIBE, thread_id)

    async def unsubscribe(self, thread_id: str) -> None:
        self._subscriptions.discard(thread_id)
        await self._send(ClientFrameType.UNSUBSCRIBE, thread_id)

    async def _send(self, frame_type: ClientFrameType, thread_id: str) -> None:
        if not self.is_connected:
            return
        await self._ws.send_json({"type": frame_type.value, "threadId": thread_id})

    def dispatch(self, data: str) -> None:
        """Parse one incoming frame and hand it to the frame handler."""

        try:
            frame = json.loads(data)
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing WebSocket message: {e}")
            return
        if not isinstance(frame, dict):
            return
        try:
            self._on_frame(frame)
        except Exception as e:
            logger.error(f"Error handling WebSocket message: {e}", exc_info=True)

    async def _run(self) -> None:
        while not self._closing:
            try:
                async with self._session.ws_connect(self.ws_url, heartbeat=20) as ws:
                    self._ws = ws
                    logger.info("WebSocket connected")
                    for thread_id in sorted(self._subscriptions):
                        await self._send(ClientFrameType.SUBSCRIBE, thread_id)

                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            self.dispatch(msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.error(f"WebSocket error: {ws.exception()}")
                            break
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                logger.error(f"WebSocket connection failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected WebSocket failure: {e}", exc_info=True)
            finally:
                self._ws = None

            if self._closing:
                break
            logger.info(f"WebSocket disconnected, reconnecting in {self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)


class ThreadViewer:
    """Keeps a ThreadViewState current through pushes and polling.

    A poll is skipped while the initial load or the previous poll is still
    in flight. Each poll loop is bound to the thread that was current when
    it started and is replaced whenever the viewed thread changes.
    """

    def __init__(
        self,
        api: RelayHttpClient,
        connection: Optional[RelayConnection],
        api_key: str,
        poll_interval: float = POLL_INTERVAL,
        on_update: Optional[UpdateHandler] = None,
    ):
        self.api = api
        self.connection = connection
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.state = ThreadViewState()
        self.auto_refresh = False
        self._on_update = on_update
        self._load_pending = False
        self._poll_pending = False
        self._poll_task: Optional[asyncio.Task] = None

    def _notify(self, kind: str, messages: List[WireMessage]) -> None:
        if self._on_update and messages:
            self._on_update(kind, messages)

    def handle_frame(self, frame: Dict[str, Any]) -> None:
        """Frame handler for RelayConnection."""

        applied = self.state.apply_frame(frame)
        if applied is None:
            return
        kind = ServerFrameType(frame["type"]).value
        self._notify(kind, applied)

    async def load(self, thread_id: str) -> List[WireMessage]:
        """Load a thread and switch the subscription to it.

        Raises:
            RelayRequestError: The relay rejected the load.
        """
        thread_id = thread_id.strip()
        previous = self.state.thread_id

        self._load_pending = True
        try:
            messages = await self.api.load_messages(thread_id, self.api_key)
        finally:
            self._load_pending = False

        self.state.replace(thread_id, messages)

        if self.connection is not None:
            if previous and previous != thread_id:
                await self.connection.unsubscribe(previous)
            await self.connection.subscribe(thread_id)

        if previous != thread_id:
            self._restart_polling()
        self._notify(ServerFrameType.MESSAGES_UPDATED.value, list(self.state.messages))
        return list(self.state.messages)

    def set_auto_refresh(self, enabled: bool) -> None:
        self.auto_refresh = enabled
        self._restart_polling()
        logger.info(f"Auto-refresh {'enabled' if enabled else 'disabled'}")

    def _restart_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        if self.auto_refresh and self.state.thread_id:
            self._poll_task = asyncio.create_task(self._poll_loop(self.state.thread_id))

    async def _poll_loop(self, thread_id: str) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.poll_once(thread_id)

    async def poll_once(self, thread_id: Optional[str] = None) -> bool:
        """Check the relay for new messages once.

        Errors are logged, never raised, so a transient upstream failure
        does not interrupt the session.

        Returns:
            False if the poll was skipped, True if it ran.
        """
        thread_id = thread_id or self.state.thread_id
        if not thread_id or self._load_pending or self._poll_pending:
            return False

        self._poll_pending = True
        try:
            new_messages = await self.api.check_updates(
                thread_id, self.api_key, self.state.last_message_id
            )
            if thread_id == self.state.thread_id:
                self._notify(ServerFrameType.NEW_MESSAGES.value, self.state.append(new_messages))
        except Exception as e:
            logger.error(f"Error checking for updates: {e}")
        finally:
            self._poll_pending = False
        return True

    async def close(self) -> None:
        self.auto_refresh = False
        self._restart_polling()
        if self.connection is not None:
            if self.state.thread_id:
                await self.connection.unsubscribe(self.state.thread_id)
            await self.connection.stop()


def websocket_url(base_url: str, ws_path: str = "/ws") -> str:
    """Derive the relay WebSocket URL from its HTTP base URL."""

    parsed = urlparse(base_url)
    scheme = "wss" if parsed.scheme == "https" else "ws"
    return urlunparse((scheme, parsed.netloc, ws_path, "", "", ""))


def _print_update(kind: str, messages: List[WireMessage]) -> None:
    if kind == ServerFrameType.NEW_MESSAGES.value:
        click.echo(f"-- {len(messages)} new message(s)")
    for message in messages:
        click.echo(f"[{message.get('timestamp')}] {message.get('role')}: {message.get('content')}")


async def _watch(thread_id: str, api_key: str, url: str, ws_path: str, poll: bool) -> None:
    async with aiohttp.ClientSession() as session:
        api = RelayHttpClient(url, session)
        viewer = ThreadViewer(api, None, api_key, on_update=_print_update)
        connection = RelayConnection(websocket_url(url, ws_path), session, viewer.handle_frame)
        viewer.connection = connection

        await connection.start()
        try:
            await viewer.load(thread_id)
            viewer.set_auto_refresh(poll)
            await asyncio.Event().wait()
        finally:
            await viewer.close()


@click.command()
@click.argument("thread_id")
@click.option("--api-key", envvar="OPENAI_API_KEY", required=True, help="OpenAI API key (defaults to $OPENAI_API_KEY).")
@click.option("--url", default="http://127.0.0.1:8080", show_default=True, help="Relay base URL.")
@click.option("--ws-path", default="/ws", show_default=True, help="Relay WebSocket path.")
@click.option("--poll/--no-poll", default=True, show_default=True, help="Check for updates every 10 seconds.")
def watch(thread_id: str, api_key: str, url: str, ws_path: str, poll: bool) -> None:
    """Follow a thread through the relay and print its messages."""
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    try:
        asyncio.run(_watch(thread_id, api_key, url, ws_path, poll))
    except RelayRequestError as e:
        raise click.ClickException(e.message) from e
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    watch()
