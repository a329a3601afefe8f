"""Wire formats: message serialization and WebSocket frames."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from thread_relay.storage import Message, MessageDraft


class ClientFrameType(str, Enum):
    SUBSCRIBE = "subscribe_thread"
    UNSUBSCRIBE = "unsubscribe_thread"


class ServerFrameType(str, Enum):
    MESSAGES_UPDATED = "messages_updated"
    NEW_MESSAGES = "new_messages"


class FrameError(ValueError):
    """Raised for frames that are not a JSON object."""


@dataclass(frozen=True)
class ClientFrame:
    type: ClientFrameType
    thread_id: str


def parse_client_frame(raw: Union[str, bytes]) -> Optional[ClientFrame]:
    """Parse a client frame.

    Returns None for frames of an unknown type or without a thread id; those
    are ignored. Raises FrameError when the payload is not a JSON object.
    """

    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise FrameError(f"Invalid JSON frame: {exc}") from exc

    if not isinstance(data, dict):
        raise FrameError("Frame must be a JSON object")

    try:
        frame_type = ClientFrameType(data.get("type"))
    except ValueError:
        return None

    thread_id = data.get("threadId")
    if not isinstance(thread_id, str) or not thread_id:
        return None

    return ClientFrame(type=frame_type, thread_id=thread_id)


def format_clock(value: datetime) -> str:
    """Format a datetime as a 12-hour local clock, e.g. '3:07 PM'."""

    local = value.astimezone()
    hour = local.hour % 12 or 12
    return f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"


def serialize_message(message: Union[Message, MessageDraft]) -> Dict[str, Any]:
    """Shape a stored or fetched message for the HTTP and WebSocket APIs."""

    return {
        "id": message.message_id,
        "role": message.role.value,
        "content": message.content,
        "timestamp": format_clock(message.timestamp),
        "created_at": int(message.timestamp.timestamp() * 1000),
    }


def serialize_messages(messages: Iterable[Union[Message, MessageDraft]]) -> List[Dict[str, Any]]:
    return [serialize_message(message) for message in messages]


def server_frame(frame_type: ServerFrameType, thread_id: str, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": frame_type.value, "threadId": thread_id, "messages": messages}
