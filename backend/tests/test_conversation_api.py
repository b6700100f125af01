from __future__ import annotations

import os

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from booking_chat import api as api_module
from booking_chat.config import DEFAULT_PRESET_QUESTIONS
from booking_chat.identity import ProfileRecord
from booking_chat.main import create_app


PREFIX = "/api/v1/conversations"
CLIENT = {"X-User-Id": "client-1"}
TRAINER = {"X-User-Id": "trainer-1"}


def _client(*, gate_server_enforcement: bool = True) -> TestClient:
    os.environ["RUNTIME_CONFIG_GUARD_MODE"] = "off"
    os.environ["THREAD_STORE_BACKEND"] = "inmemory"
    os.environ["GATE_SERVER_ENFORCEMENT"] = "true" if gate_server_enforcement else "false"
    from booking_chat.config import get_settings

    api_module._settings = get_settings()
    api_module.thread_repo = api_module.create_thread_repository(
        backend=api_module._settings.thread_store_backend,
        database_url=api_module._settings.database_url,
    )
    api_module.conversation_service = api_module._create_service(
        api_module._settings,
        repository=api_module.thread_repo,
        oracle=api_module.transaction_oracle,
    )
    api_module.reset_runtime_state_for_tests()
    return TestClient(create_app())


def _start_thread(client: TestClient) -> str:
    created = client.post(
        f"{PREFIX}/threads",
        json={"participant_id": "trainer-1", "subject_ref": "listing-7"},
        headers=CLIENT,
    )
    assert created.status_code == 201
    return created.json()["thread_id"]


def test_presets_and_classify_endpoints() -> None:
    client = _client()

    presets = client.get(f"{PREFIX}/presets")
    assert presets.status_code == 200
    assert presets.json()["items"] == list(DEFAULT_PRESET_QUESTIONS)

    flagged = client.post(f"{PREFIX}/classify", json={"text": "reach me on whatsapp"})
    assert flagged.status_code == 200
    assert flagged.json()["flagged"] is True
    assert flagged.json()["text"] == "reach me on whatsapp"
    assert flagged.json()["reasons"] == ["channel_keyword"]

    clean = client.post(f"{PREFIX}/classify", json={"text": "great session, thanks!"})
    assert clean.json()["flagged"] is False
    assert clean.json()["advisory"] is None


def test_create_thread_is_idempotent_and_validates_participants() -> None:
    client = _client()
    thread_id = _start_thread(client)

    again = client.post(
        f"{PREFIX}/threads",
        json={"participant_id": "client-1", "subject_ref": "listing-7"},
        headers=TRAINER,
    )
    assert again.status_code == 201
    assert again.json()["thread_id"] == thread_id
    assert sorted(again.json()["participant_ids"]) == ["client-1", "trainer-1"]

    self_thread = client.post(f"{PREFIX}/threads", json={"participant_id": "client-1"}, headers=CLIENT)
    assert self_thread.status_code == 422

    anonymous = client.post(f"{PREFIX}/threads", json={"participant_id": "trainer-1"})
    assert anonymous.status_code == 401


def test_restricted_thread_only_accepts_unsent_presets() -> None:
    client = _client()
    thread_id = _start_thread(client)

    gate = client.get(f"{PREFIX}/threads/{thread_id}/gate", headers=CLIENT)
    assert gate.status_code == 200
    assert gate.json()["mode"] == "restricted"
    assert gate.json()["available_presets"] == list(DEFAULT_PRESET_QUESTIONS)

    free_text = client.post(
        f"{PREFIX}/threads/{thread_id}/messages",
        json={"content": "What's your phone number?"},
        headers=CLIENT,
    )
    assert free_text.status_code == 403

    question = DEFAULT_PRESET_QUESTIONS[0]
    preset = client.post(f"{PREFIX}/threads/{thread_id}/messages", json={"content": question}, headers=CLIENT)
    assert preset.status_code == 201
    assert preset.json()["mode"] == "restricted"
    assert preset.json()["flagged"] is False

    repeat = client.post(f"{PREFIX}/threads/{thread_id}/messages", json={"content": question}, headers=CLIENT)
    assert repeat.status_code == 403

    detail = client.get(f"{PREFIX}/threads/{thread_id}", headers=CLIENT)
    assert detail.status_code == 200
    assert question not in detail.json()["available_presets"]
    assert [item["content"] for item in detail.json()["messages"]] == [question]


def test_confirmed_booking_unlocks_free_text_with_advisory() -> None:
    client = _client()
    thread_id = _start_thread(client)
    api_module.transaction_oracle.confirm("client-1", "trainer-1")

    posted = client.post(
        f"{PREFIX}/threads/{thread_id}/messages",
        json={"content": "call me at 555-123-4567"},
        headers=TRAINER,
    )
    assert posted.status_code == 201
    body = posted.json()
    assert body["mode"] == "unlocked"
    assert body["flagged"] is True
    assert body["advisory"]
    assert body["message"]["content"] == "call me at 555-123-4567"

    gate = client.get(f"{PREFIX}/threads/{thread_id}/gate", headers=CLIENT)
    assert gate.json() == {"thread_id": thread_id, "mode": "unlocked", "available_presets": []}

    messages = client.get(f"{PREFIX}/threads/{thread_id}/messages", headers=CLIENT)
    assert [item["message_id"] for item in messages.json()["items"]] == [body["message"]["message_id"]]


def test_free_text_passes_when_server_enforcement_is_disabled() -> None:
    client = _client(gate_server_enforcement=False)
    thread_id = _start_thread(client)

    posted = client.post(
        f"{PREFIX}/threads/{thread_id}/messages",
        json={"content": "Hello from a trusted client"},
        headers=CLIENT,
    )
    assert posted.status_code == 201
    assert posted.json()["mode"] == "restricted"


def test_outsiders_and_unknown_threads_get_404() -> None:
    client = _client()
    thread_id = _start_thread(client)
    stranger = {"X-User-Id": "stranger"}

    assert client.get(f"{PREFIX}/threads/{thread_id}", headers=stranger).status_code == 404
    assert client.get(f"{PREFIX}/threads/{thread_id}/messages", headers=stranger).status_code == 404
    assert client.get(f"{PREFIX}/threads/{thread_id}/gate", headers=stranger).status_code == 404
    posted = client.post(
        f"{PREFIX}/threads/{thread_id}/messages",
        json={"content": DEFAULT_PRESET_QUESTIONS[0]},
        headers=stranger,
    )
    assert posted.status_code == 404
    assert client.get(f"{PREFIX}/threads/thread_missing", headers=CLIENT).status_code == 404


def test_blank_message_is_rejected() -> None:
    client = _client()
    thread_id = _start_thread(client)
    posted = client.post(f"{PREFIX}/threads/{thread_id}/messages", json={"content": "   "}, headers=CLIENT)
    assert posted.status_code == 422


def test_inbox_lists_threads_with_resolved_identities() -> None:
    client = _client()
    api_module.identity_directory.add_business(
        ProfileRecord(user_id="trainer-1", display_name="Peak Studio", avatar_url="https://cdn.example/peak.png")
    )
    api_module.catalog_directory.add_label("listing-7", "Sunrise Yoga")
    thread_id = _start_thread(client)
    client.post(
        f"{PREFIX}/threads/{thread_id}/messages",
        json={"content": DEFAULT_PRESET_QUESTIONS[3]},
        headers=CLIENT,
    )

    inbox = client.get(f"{PREFIX}/threads", headers=CLIENT)
    assert inbox.status_code == 200
    items = inbox.json()["items"]
    assert len(items) == 1
    assert items[0]["thread_id"] == thread_id
    assert items[0]["subject_label"] == "Sunrise Yoga"
    assert items[0]["other_party"]["kind"] == "business"
    assert items[0]["other_party"]["display_name"] == "Peak Studio"
    assert items[0]["last_message_preview"] == DEFAULT_PRESET_QUESTIONS[3]

    trainer_inbox = client.get(f"{PREFIX}/threads", headers=TRAINER).json()["items"]
    assert trainer_inbox[0]["other_party"]["kind"] == "unknown"
    assert trainer_inbox[0]["other_party"]["display_name"] == "Chat"


def test_feed_socket_pushes_new_messages() -> None:
    client = _client()
    thread_id = _start_thread(client)

    with client.websocket_connect(f"{PREFIX}/threads/{thread_id}/feed?user_id=trainer-1") as websocket:
        assert websocket.receive_json() == {"type": "subscribed", "data": {"thread_id": thread_id}}

        posted = client.post(
            f"{PREFIX}/threads/{thread_id}/messages",
            json={"content": DEFAULT_PRESET_QUESTIONS[1]},
            headers=CLIENT,
        )
        assert posted.status_code == 201

        event = websocket.receive_json()
        assert event["type"] == "message.created"
        assert event["data"]["message_id"] == posted.json()["message"]["message_id"]
        assert event["data"]["sender_id"] == "client-1"


def test_feed_socket_rejects_outsiders() -> None:
    client = _client()
    thread_id = _start_thread(client)

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(f"{PREFIX}/threads/{thread_id}/feed?user_id=stranger") as websocket:
            websocket.receive_json()
    assert exc_info.value.code == 4404


def test_free_text_stays_open_after_the_booking_is_revoked() -> None:
    client = _client()
    thread_id = _start_thread(client)
    api_module.transaction_oracle.confirm("client-1", "trainer-1")
    assert client.get(f"{PREFIX}/threads/{thread_id}/gate", headers=CLIENT).json()["mode"] == "unlocked"

    api_module.transaction_oracle.revoke("client-1", "trainer-1")
    posted = client.post(
        f"{PREFIX}/threads/{thread_id}/messages",
        json={"content": "Still on for Thursday?"},
        headers=TRAINER,
    )
    assert posted.status_code == 201
    assert posted.json()["mode"] == "unlocked"
