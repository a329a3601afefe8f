"""Relay server: HTTP endpoints for thread loading and a WebSocket for push updates."""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse

from thread_relay.broadcaster import SubscriptionBroadcaster
from thread_relay.config import RelayConfig, load_config
from thread_relay.errors import MissingInput, RelayError, UpstreamUnavailable
from thread_relay.protocol import ClientFrameType, FrameError, parse_client_frame
from thread_relay.service import ThreadService
from thread_relay.storage import ThreadStore
from thread_relay.upstream import UpstreamFetcher

logger = logging.getLogger(__name__)


async def _read_payload(request: Request) -> Dict[str, Any]:
    """Return the JSON object body of a request."""

    try:
        payload = await request.json()
    except ValueError as exc:
        raise MissingInput("Request body must be a JSON object") from exc
    if not isinstance(payload, dict):
        raise MissingInput("Request body must be a JSON object")
    return payload


async def _handle_frame(
    websocket: WebSocket, raw: str, broadcaster: SubscriptionBroadcaster
) -> None:
    try:
        frame = parse_client_frame(raw)
    except FrameError as exc:
        logger.error(f"Error parsing WebSocket message: {exc}")
        return

    if frame is None:
        return

    if frame.type is ClientFrameType.SUBSCRIBE:
        broadcaster.subscribe(websocket, frame.thread_id)
    elif frame.type is ClientFrameType.UNSUBSCRIBE:
        broadcaster.unsubscribe(websocket, frame.thread_id)


def create_app(
    config: Optional[RelayConfig] = None,
    store: Optional[ThreadStore] = None,
    fetcher: Optional[UpstreamFetcher] = None,
    broadcaster: Optional[SubscriptionBroadcaster] = None,
) -> FastAPI:
    """Create the relay application with its state wired in.

    Args:
        config: Relay settings. Loaded from the environment if omitted.
        store: Message store. A fresh in-memory store if omitted.
        fetcher: Upstream fetcher. Talks to OpenAI if omitted.
        broadcaster: Subscription registry. A fresh one if omitted.

    Returns:
        Configured FastAPI application.
    """
    config = config or load_config()
    store = store or ThreadStore()
    fetcher = fetcher or UpstreamFetcher(base_url=config.upstream_base_url)
    broadcaster = broadcaster or SubscriptionBroadcaster()
    service = ThreadService(store, fetcher, broadcaster, config=config)

    app = FastAPI(title="Thread Relay")
    app.state.config = config
    app.state.store = store
    app.state.broadcaster = broadcaster
    app.state.service = service

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        return JSONResponse({"message": exc.message}, status_code=exc.status_code)

    @app.post("/api/threads/{thread_id}/messages")
    async def load_thread_messages(thread_id: str, request: Request) -> JSONResponse:
        """Fetch a thread from upstream, cache it and push it to subscribers."""

        payload = await _read_payload(request)
        try:
            messages = await service.load_thread(thread_id, payload.get("apiKey"))
        except RelayError:
            raise
        except Exception as exc:
            logger.error(f"Error fetching thread messages: {exc}", exc_info=True)
            raise UpstreamUnavailable(str(exc) or None) from exc
        return JSONResponse({"messages": messages})

    @app.get("/api/threads/{thread_id}/messages")
    async def get_stored_messages(thread_id: str) -> JSONResponse:
        """Return cached messages for a thread without contacting upstream."""

        return JSONResponse({"messages": service.stored_messages(thread_id)})

    @app.post("/api/threads/{thread_id}/check-updates")
    async def check_thread_updates(thread_id: str, request: Request) -> JSONResponse:
        """Report and broadcast messages newer than the client's last known one."""

        payload = await _read_payload(request)
        try:
            new_messages = await service.check_updates(
                thread_id, payload.get("apiKey"), payload.get("lastMessageId")
            )
        except RelayError:
            raise
        except Exception as exc:
            logger.error(f"Error checking for updates: {exc}", exc_info=True)
            raise UpstreamUnavailable(str(exc) or "Failed to check for updates") from exc
        return JSONResponse({"hasNewMessages": bool(new_messages), "newMessages": new_messages})

    @app.get("/api/health")
    async def health_check() -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "broadcaster": broadcaster.get_stats(),
            "store": store.get_stats(),
        })

    async def relay_socket(websocket: WebSocket) -> None:
        """Accept subscribe/unsubscribe frames until the client goes away."""

        await websocket.accept()
        logger.info("WebSocket client connected")
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await _handle_frame(websocket, raw, broadcaster)
        finally:
            broadcaster.disconnect(websocket)
            logger.info("WebSocket client disconnected")

    app.add_api_websocket_route(config.ws_path, relay_socket)

    return app


def run() -> None:
    """Entry point for the `thread-relay` console script."""

    import uvicorn

    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logger.info(f"Starting thread relay on http://{config.host}:{config.port}")

    uvicorn.run(
        "thread_relay.server:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=config.reload,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    run()
