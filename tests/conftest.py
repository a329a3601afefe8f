"""Shared fixtures: a fake OpenAI client and a relay app wired to it."""

from __future__ import annotations

import time
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import httpx
import openai
import pytest
from fastapi.testclient import TestClient

from thread_relay.config import RelayConfig
from thread_relay.server import create_app
from thread_relay.upstream import UpstreamFetcher

API_KEY = "sk-test"
BASE_TIME = 1_700_000_000


def api_status_error(cls, status: int, message: str):
    """Build an openai status error the way the SDK raises it."""

    request = httpx.Request("GET", "https://api.openai.com/v1/threads/thread/messages")
    return cls(message, response=httpx.Response(status, request=request), body=None)


def upstream_message(
    message_id: str,
    text: str = "",
    role: str = "user",
    created_at: int = BASE_TIME,
    content: Optional[List[Any]] = None,
) -> SimpleNamespace:
    if content is None:
        content = [SimpleNamespace(type="text", text=SimpleNamespace(value=text, annotations=[]))]
    return SimpleNamespace(id=message_id, role=role, created_at=created_at, content=content)


def conversation(count: int, prefix: str = "m") -> List[SimpleNamespace]:
    """Return `count` alternating user/assistant messages, oldest first."""

    return [
        upstream_message(
            f"{prefix}{index}",
            text=f"message {index}",
            role="user" if index % 2 else "assistant",
            created_at=BASE_TIME + index * 60,
        )
        for index in range(1, count + 1)
    ]


class FakeMessages:
    def __init__(self, upstream: "FakeUpstream", api_key: str):
        self._upstream = upstream
        self._api_key = api_key

    async def list(self, thread_id: str, **params: Any) -> SimpleNamespace:
        self._upstream.calls.append((thread_id, params))
        if self._upstream.error is not None:
            raise self._upstream.error
        if self._api_key not in self._upstream.valid_keys:
            raise api_status_error(openai.AuthenticationError, 401, "Incorrect API key provided")
        if thread_id not in self._upstream.threads:
            raise api_status_error(openai.NotFoundError, 404, f"No thread found with id '{thread_id}'.")

        data = list(self._upstream.threads[thread_id])
        if params.get("order", "desc") == "desc":
            data.reverse()
        data = data[: params.get("limit", 20)]
        return SimpleNamespace(data=data, has_more=False)


class FakeOpenAI:
    def __init__(self, upstream: "FakeUpstream", api_key: str):
        self.beta = SimpleNamespace(threads=SimpleNamespace(messages=FakeMessages(upstream, api_key)))

    async def __aenter__(self) -> "FakeOpenAI":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class FakeUpstream:
    """In-memory stand-in for the OpenAI threads API.

    Threads hold their messages oldest first, like the real service.
    """

    def __init__(self):
        self.threads: Dict[str, List[SimpleNamespace]] = {}
        self.calls: List[tuple] = []
        self.valid_keys = {API_KEY}
        self.error: Optional[Exception] = None

    def client(self, api_key: str) -> FakeOpenAI:
        return FakeOpenAI(self, api_key)


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def fetcher(upstream: FakeUpstream) -> UpstreamFetcher:
    return UpstreamFetcher(client_factory=upstream.client)


@pytest.fixture
def relay_app(fetcher: UpstreamFetcher):
    return create_app(config=RelayConfig(), fetcher=fetcher)


@pytest.fixture
def client(relay_app):
    with TestClient(relay_app) as test_client:
        yield test_client
