"""Tests for the relay's HTTP endpoints and WebSocket subscriptions."""

from __future__ import annotations

import openai
from fastapi.testclient import TestClient

from thread_relay.config import RelayConfig
from thread_relay.server import create_app
from thread_relay.storage import ThreadStore

from conftest import API_KEY, api_status_error, conversation, wait_for


def _subscribe(ws, relay_app, thread_id: str) -> None:
    ws.send_json({"type": "subscribe_thread", "threadId": thread_id})
    assert wait_for(lambda: relay_app.state.broadcaster.subscribers(thread_id))


def _ids(messages) -> list[str]:
    return [message["id"] for message in messages]


def test_load_returns_chronological_messages_and_pushes_to_subscribers(client, relay_app, upstream):
    upstream.threads["abc"] = conversation(3)

    with client.websocket_connect("/ws") as ws:
        _subscribe(ws, relay_app, "abc")

        response = client.post("/api/threads/abc/messages", json={"apiKey": API_KEY})
        assert response.status_code == 200
        messages = response.json()["messages"]
        assert _ids(messages) == ["m1", "m2", "m3"]

        frame = ws.receive_json()
        assert frame["type"] == "messages_updated"
        assert frame["threadId"] == "abc"
        assert frame["messages"] == messages


def test_load_message_wire_shape(client, upstream):
    upstream.threads["abc"] = conversation(1)

    message = client.post("/api/threads/abc/messages", json={"apiKey": API_KEY}).json()["messages"][0]

    assert message["id"] == "m1"
    assert message["role"] == "user"
    assert message["content"] == "message 1"
    assert message["created_at"] == upstream.threads["abc"][0].created_at * 1000
    assert message["timestamp"].endswith(("AM", "PM"))


def test_load_creates_thread_once_and_does_not_duplicate_messages(client, relay_app, upstream):
    upstream.threads["abc"] = conversation(3)

    client.post("/api/threads/abc/messages", json={"apiKey": API_KEY})
    client.post("/api/threads/abc/messages", json={"apiKey": API_KEY})

    store = relay_app.state.store
    assert store.get_stats() == {"threads": 1, "messages": 3}
    assert store.get_thread("abc").title == "Thread abc"


def test_get_stored_messages_served_from_store(client, upstream):
    upstream.threads["abc"] = conversation(2)
    loaded = client.post("/api/threads/abc/messages", json={"apiKey": API_KEY}).json()["messages"]
    calls_before = len(upstream.calls)

    response = client.get("/api/threads/abc/messages")

    assert response.status_code == 200
    assert response.json()["messages"] == loaded
    assert len(upstream.calls) == calls_before


def test_get_stored_messages_for_unknown_thread_is_empty(client):
    response = client.get("/api/threads/unknown/messages")
    assert response.status_code == 200
    assert response.json() == {"messages": []}


def test_load_requires_api_key(client, upstream):
    response = client.post("/api/threads/abc/messages", json={})
    assert response.status_code == 400
    assert response.json()["message"] == "API key is required"
    assert upstream.calls == []


def test_load_rejects_non_object_body(client):
    response = client.post("/api/threads/abc/messages", content=b"not json")
    assert response.status_code == 400


def test_load_unknown_thread_is_404(client):
    response = client.post("/api/threads/missing/messages", json={"apiKey": API_KEY})
    assert response.status_code == 404
    assert "Thread not found" in response.json()["message"]


def test_load_bad_key_is_401(client, upstream):
    upstream.threads["abc"] = conversation(1)
    response = client.post("/api/threads/abc/messages", json={"apiKey": "sk-wrong"})
    assert response.status_code == 401
    assert "Invalid API key" in response.json()["message"]


def test_load_upstream_failure_is_500_with_upstream_message(client, upstream):
    upstream.error = api_status_error(openai.InternalServerError, 500, "The server had an error")
    response = client.post("/api/threads/abc/messages", json={"apiKey": API_KEY})
    assert response.status_code == 500
    assert response.json()["message"] == "The server had an error"


def test_check_updates_first_check_reports_nothing(client, upstream):
    """Without a last known id nothing is announced, even with messages upstream."""

    upstream.threads["T1"] = conversation(5)

    response = client.post("/api/threads/T1/check-updates", json={"apiKey": API_KEY})

    assert response.status_code == 200
    assert response.json() == {"hasNewMessages": False, "newMessages": []}


def test_check_updates_returns_suffix_and_broadcasts(client, relay_app, upstream):
    upstream.threads["abc"] = conversation(3)
    client.post("/api/threads/abc/messages", json={"apiKey": API_KEY})
    upstream.threads["abc"] = conversation(5)

    with client.websocket_connect("/ws") as ws:
        _subscribe(ws, relay_app, "abc")

        response = client.post(
            "/api/threads/abc/check-updates",
            json={"apiKey": API_KEY, "lastMessageId": "m3"},
        )
        body = response.json()
        assert body["hasNewMessages"] is True
        assert _ids(body["newMessages"]) == ["m4", "m5"]

        frame = ws.receive_json()
        assert frame == {"type": "new_messages", "threadId": "abc", "messages": body["newMessages"]}

    assert _ids(client.get("/api/threads/abc/messages").json()["messages"]) == ["m1", "m2", "m3", "m4", "m5"]
    assert upstream.calls[-1] == ("abc", {"order": "desc", "limit": 20})


def test_check_updates_last_id_outside_window_reports_nothing(client, upstream):
    upstream.threads["abc"] = conversation(25)

    response = client.post(
        "/api/threads/abc/check-updates",
        json={"apiKey": API_KEY, "lastMessageId": "m1"},
    )

    assert response.json() == {"hasNewMessages": False, "newMessages": []}


def test_check_updates_error_codes(client, upstream):
    assert client.post("/api/threads/abc/check-updates", json={}).status_code == 400
    assert (
        client.post("/api/threads/missing/check-updates", json={"apiKey": API_KEY}).status_code
        == 404
    )
    upstream.threads["abc"] = conversation(1)
    assert (
        client.post("/api/threads/abc/check-updates", json={"apiKey": "sk-wrong"}).status_code
        == 401
    )


def test_unsubscribe_stops_pushes(client, relay_app, upstream):
    upstream.threads["abc"] = conversation(1)

    with client.websocket_connect("/ws") as leaving, client.websocket_connect("/ws") as staying:
        _subscribe(leaving, relay_app, "abc")
        _subscribe(staying, relay_app, "abc")
        assert wait_for(lambda: len(relay_app.state.broadcaster.subscribers("abc")) == 2)

        leaving.send_json({"type": "unsubscribe_thread", "threadId": "abc"})
        assert wait_for(lambda: len(relay_app.state.broadcaster.subscribers("abc")) == 1)

        client.post("/api/threads/abc/messages", json={"apiKey": API_KEY})

        assert staying.receive_json()["type"] == "messages_updated"
        assert relay_app.state.broadcaster.get_stats()["broadcast_count"] == 1


def test_malformed_and_unknown_frames_keep_connection_open(client, relay_app):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("this is not json")
        ws.send_json({"type": "ping"})
        ws.send_json({"type": "subscribe_thread"})
        _subscribe(ws, relay_app, "abc")


def test_disconnect_removes_all_subscriptions(client, relay_app):
    broadcaster = relay_app.state.broadcaster

    with client.websocket_connect("/ws") as ws:
        for thread_id in ("t1", "t2", "t3"):
            _subscribe(ws, relay_app, thread_id)

    assert wait_for(lambda: broadcaster.get_stats()["threads"] == 0)


def test_health_reports_stats(client, upstream):
    upstream.threads["abc"] = conversation(2)
    client.post("/api/threads/abc/messages", json={"apiKey": API_KEY})

    body = client.get("/api/health").json()

    assert body["status"] == "ok"
    assert body["store"] == {"threads": 1, "messages": 2}
    assert body["broadcaster"]["threads"] == 0


class BrokenStore(ThreadStore):
    def get_messages(self, thread_id):
        raise RuntimeError("storage offline")


def test_get_stored_messages_storage_failure_is_500(fetcher):
    app = create_app(config=RelayConfig(), store=BrokenStore(), fetcher=fetcher)

    with TestClient(app) as broken_client:
        response = broken_client.get("/api/threads/abc/messages")

    assert response.status_code == 500
    assert response.json() == {"message": "Failed to fetch messages"}


def test_failed_requests_do_not_leave_thread_locks_behind(client, relay_app, upstream):
    for index in range(50):
        response = client.post(f"/api/threads/missing-{index}/messages", json={"apiKey": API_KEY})
        assert response.status_code == 404

    upstream.threads["abc"] = conversation(1)
    client.post("/api/threads/abc/messages", json={"apiKey": API_KEY})
    client.post("/api/threads/abc/check-updates", json={"apiKey": API_KEY, "lastMessageId": "m1"})

    assert len(relay_app.state.service._locks) == 0
