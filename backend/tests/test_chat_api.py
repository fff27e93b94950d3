"""HTTP-level tests for the chat and files routers."""
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from conftest import PNG_BYTES, parse_stream

from app.ai_provider.resolver import set_resolver
from app.attachments.service import set_attachment_manager
from app.auth import TrustedHeaderAuthProvider, set_auth_provider
from app.chat.orchestrator import set_orchestrator
from app.main import app

ALICE = {"X-User-Id": "U1"}
BOB = {"X-User-Id": "U2"}


@pytest.fixture()
def client(orchestrator, resolver, manager) -> Generator[TestClient, None, None]:
    """TestClient wired to in-memory services; the lifespan is not run."""
    set_orchestrator(orchestrator)
    set_resolver(resolver)
    set_attachment_manager(manager)
    set_auth_provider(TrustedHeaderAuthProvider())
    yield TestClient(app)
    set_orchestrator(None)
    set_resolver(None)
    set_attachment_manager(None)


def send(client, text="Hello", conversation_id="c1", headers=ALICE, **extra):
    body = {"id": conversation_id, "messages": [{"role": "user", "content": text}]}
    body.update(extra)
    return client.post("/api/chat", json=body, headers=headers)


def upload(client, name="a.png", content=PNG_BYTES, content_type="image/png", headers=ALICE, data=None):
    return client.post(
        "/api/files/upload",
        files={"file": (name, content, content_type)},
        data=data or {},
        headers=headers,
    )


class TestPostChat:
    """Tests for POST /api/chat."""

    def test_streams_reply_in_data_stream_format(self, client):
        resp = send(client)

        assert resp.status_code == 200
        assert resp.headers["x-vercel-ai-data-stream"] == "v1"
        assert resp.headers["content-type"].startswith("text/plain")
        events = parse_stream([resp.text])
        assert [code for code, _ in events] == ["2", "0", "0", "d"]
        assert events[0][1][0]["type"] == "user-message-id"
        assert "".join(value for code, value in events if code == "0") == "Hi there"
        assert events[-1][1] == {"finishReason": "stop"}

    def test_conversation_persisted(self, client):
        send(client)

        resp = client.get("/api/chat/c1", headers=ALICE)

        assert resp.status_code == 200
        body = resp.json()
        assert body["title"] == "Friendly Greeting"
        assert [(t["role"], t["content"]) for t in body["turns"]] == [
            ("user", "Hello"),
            ("assistant", "Hi there"),
        ]

    def test_requires_user(self, client):
        assert send(client, headers={}).status_code == 401

    def test_unknown_model(self, client):
        resp = send(client, modelId="gpt-9")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Model not found: gpt-9"

    def test_last_message_must_be_user(self, client):
        resp = client.post(
            "/api/chat",
            json={"id": "c1", "messages": [{"role": "assistant", "content": "Hi"}]},
            headers=ALICE,
        )
        assert resp.status_code == 400
        assert send(client, text="   ").status_code == 400

    def test_other_users_conversation_rejected(self, client):
        send(client)
        assert send(client, headers=BOB).status_code == 401

    def test_provider_failure_is_error_event(self, client, provider):
        provider.fail_at = 1

        events = parse_stream([send(client).text])

        assert [code for code, _ in events] == ["2", "0", "3"]

    def test_attachment_ids_activated(self, client, provider):
        attachment_id = upload(client).json()["id"]

        send(client, text="What is this?", attachmentIds=[attachment_id])

        turns = client.get("/api/chat/c1", headers=ALICE).json()["turns"]
        assert [a["id"] for a in turns[0]["attachments"]] == [attachment_id]
        assert provider.stream_calls[0]["messages"][-1].images

    def test_invalid_attachment_id(self, client):
        resp = send(client, attachmentIds=["nope"])
        assert resp.status_code == 400


class TestConversationEndpoints:
    """Tests for history, delete and update endpoints."""

    def test_history_newest_first(self, client):
        send(client, conversation_id="c1")
        send(client, conversation_id="c2")
        send(client, conversation_id="c3", headers=BOB)

        history = client.get("/api/history", headers=ALICE).json()

        assert [c["id"] for c in history] == ["c2", "c1"]
        assert len(history[0]["turns"]) == 2

    def test_delete_one(self, client):
        send(client)

        assert client.delete("/api/chat", params={"id": "c1"}, headers=BOB).status_code == 401
        resp = client.delete("/api/chat", params={"id": "c1"}, headers=ALICE)
        assert resp.status_code == 200
        assert resp.json() == {"message": "Chat deleted"}
        assert client.get("/api/chat/c1", headers=ALICE).status_code == 404
        assert client.delete("/api/chat", params={"id": "c1"}, headers=ALICE).status_code == 404

    def test_delete_requires_id(self, client):
        assert client.delete("/api/chat", headers=ALICE).status_code == 400

    def test_delete_all(self, client):
        send(client, conversation_id="c1")
        send(client, conversation_id="c2")

        resp = client.delete("/api/chat", params={"deleteAll": "true"}, headers=ALICE)

        assert resp.json() == {"message": "All chats deleted", "deleted_count": 2}
        assert client.get("/api/history", headers=ALICE).json() == []

    def test_visibility(self, client):
        send(client)
        assert client.get("/api/chat/c1", headers=BOB).status_code == 401

        resp = client.patch("/api/chat/c1/visibility", json={"visibility": "public"}, headers=ALICE)

        assert resp.json() == {"id": "c1", "visibility": "public"}
        assert client.get("/api/chat/c1", headers=BOB).status_code == 200
        assert client.patch(
            "/api/chat/c1/visibility", json={"visibility": "private"}, headers=BOB
        ).status_code == 401

    def test_change_model(self, client):
        send(client)

        resp = client.patch("/api/chat/c1/model", json={"modelId": "llama3.2-vision"}, headers=ALICE)
        assert resp.json() == {"id": "c1", "modelId": "llama3.2-vision"}

        resp = client.patch("/api/chat/c1/model", json={"modelId": "gpt-9"}, headers=ALICE)
        assert resp.status_code == 404

    def test_delete_trailing_turns(self, client):
        send(client, text="first")
        send(client, text="second")
        turns = client.get("/api/chat/c1", headers=ALICE).json()["turns"]

        resp = client.delete(f"/api/chat/turns/{turns[2]['id']}/trailing", headers=ALICE)

        assert resp.json() == {"deleted_count": 2}
        remaining = client.get("/api/chat/c1", headers=ALICE).json()["turns"]
        assert [t["content"] for t in remaining] == ["first", "Hi there"]

    def test_models(self, client):
        body = client.get("/api/models").json()
        assert body["default_model_id"] == "llama3.3"
        assert [m["id"] for m in body["models"]] == ["llama3.3", "llama3.2-vision"]

    def test_service_not_initialized(self, client):
        set_orchestrator(None)
        assert client.get("/api/history", headers=ALICE).status_code == 503


class TestFilesEndpoints:
    """Tests for the attachment endpoints."""

    def test_upload(self, client):
        resp = upload(client, name="my photo.png")

        assert resp.status_code == 200
        body = resp.json()
        assert body["name"] == "my_photo.png"
        assert body["contentType"] == "image/png"
        assert body["url"].startswith("/api/files/blob/")

    def test_upload_rejected(self, client):
        assert upload(client, name="a.exe", content_type="application/x-msdownload").status_code == 400
        assert upload(client, content=b"").status_code == 400
        assert upload(client, headers={}).status_code == 401

    def test_upload_to_existing_turn(self, client):
        send(client)
        turn_id = client.get("/api/chat/c1", headers=ALICE).json()["turns"][0]["id"]

        resp = upload(client, data={"turnId": turn_id})

        assert resp.status_code == 200
        turns = client.get("/api/chat/c1", headers=ALICE).json()["turns"]
        assert [a["id"] for a in turns[0]["attachments"]] == [resp.json()["id"]]
        assert upload(client, data={"turnId": turn_id}, headers=BOB).status_code == 401

    def test_delete(self, client):
        attachment_id = upload(client).json()["id"]

        assert client.delete("/api/files", params={"id": attachment_id}, headers=BOB).status_code == 401
        resp = client.delete("/api/files", params={"id": attachment_id}, headers=ALICE)
        assert resp.json() == {"message": "File deleted"}
        assert client.delete("/api/files", params={"id": "nope"}, headers=ALICE).status_code == 404

    def test_blob_download(self, client):
        url = upload(client).json()["url"]

        resp = client.get(url)

        assert resp.status_code == 200
        assert resp.content == PNG_BYTES
        assert resp.headers["content-type"] == "image/png"

    def test_blob_bad_signature(self, client):
        url = upload(client).json()["url"]
        path = url.split("?")[0]

        resp = client.get(path, params={"expires": 9999999999, "signature": "forged"})

        assert resp.status_code == 403


def test_health():
    resp = TestClient(app).get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
