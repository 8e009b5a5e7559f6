from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from inbox_threads import main
from inbox_threads.services.store import Store
from inbox_threads.services.stream_assembler import GenerationSession, SessionRegistry


class _FakeGenerationClient:
    def __init__(self, chunks: list[str]) -> None:
        self.chunks = chunks
        self.calls = 0

    @asynccontextmanager
    async def stream_reply(self, conversation_id: str, requester_display_name: str):
        self.calls += 1

        async def _chunks():
            for chunk in self.chunks:
                yield chunk

        yield _chunks()


class _FakeNotifier:
    async def notify(self, *, event_type: str, summary: str, context: dict | None = None) -> bool:
        return False


@pytest.fixture
def client(tmp_path, monkeypatch):
    store = Store(tmp_path / "api.db", mail_domain="example.org")
    store.init_db()
    generation = _FakeGenerationClient(["data: Hi Anna,[[DOUBLE_NEWLINE]]Fixed.\n\n"])
    monkeypatch.setattr(main, "store", store)
    monkeypatch.setattr(main, "notifier", _FakeNotifier())
    monkeypatch.setattr(main, "sessions", SessionRegistry(lambda cid: GenerationSession(cid, generation)))
    monkeypatch.setattr(main.settings, "inbound_webhook_secret", "")
    test_client = TestClient(main.app)
    test_client.generation = generation
    return test_client


def _conversation(client: TestClient) -> str:
    response = client.post(
        "/conversations",
        json={"requester_email": "anna@example.com", "requester_name": "Anna", "message": "Export fails."},
    )
    assert response.status_code == 201
    return response.json()["id"]


def test_reply_and_events_render_as_thread(client: TestClient) -> None:
    conversation_id = _conversation(client)

    reply = client.post(
        f"/conversations/{conversation_id}/replies",
        json={"content": "Looking into it.", "sender_email": "dana@example.org"},
    )
    client.post(f"/conversations/{conversation_id}/events/assignment", json={"assigned_to": "dana@example.org"})
    client.post(f"/conversations/{conversation_id}/events/tag", json={"tag_id": "bug"})

    assert reply.status_code == 201
    thread = client.get(f"/conversations/{conversation_id}/thread").json()
    assert [item["kind"] for item in thread["items"]] == ["message", "event_group"]
    assert thread["items"][0]["message"]["main_content_html"] == "<div>Looking into it.</div><br>"
    assert thread["items"][0]["message"]["attribution"].endswith("<anna@example.com> wrote:")
    assert [event["meta"]["action"] for event in thread["items"][1]["events"]] == ["assign", "added"]


def test_empty_reply_is_unprocessable(client: TestClient) -> None:
    conversation_id = _conversation(client)
    response = client.post(
        f"/conversations/{conversation_id}/replies", json={"content": " ", "sender_email": "dana@example.org"}
    )
    assert response.status_code == 422


def test_unknown_conversation_is_not_found(client: TestClient) -> None:
    assert client.get("/conversations/nope/thread").status_code == 404


def test_draft_generation(client: TestClient) -> None:
    conversation_id = _conversation(client)

    response = client.post(f"/conversations/{conversation_id}/draft", json={"requester_display_name": "Dana"})

    assert response.status_code == 200
    assert response.json()["text"] == "Hi Anna,\n\nFixed."
    assert response.json()["state"] == "completed"
    assert client.get(f"/conversations/{conversation_id}/draft").json()["text"] == "Hi Anna,\n\nFixed."
    assert client.post(f"/conversations/{conversation_id}/draft/cancel").json()["cancelled"] is False


def test_draft_rejects_generic_display_name(client: TestClient) -> None:
    conversation_id = _conversation(client)

    response = client.post(f"/conversations/{conversation_id}/draft", json={"requester_display_name": "Support"})

    assert response.status_code == 422
    assert client.generation.calls == 0


def test_inbound_webhook_status_codes(client: TestClient) -> None:
    assert client.post("/webhooks/inbound-email", json={"from": "a@example.com", "text": "hi"}).status_code == 400
    assert client.post("/webhooks/inbound-email", content=b"not json").status_code == 400


def test_rejected_display_name_creates_no_session(client: TestClient) -> None:
    conversation_id = _conversation(client)

    response = client.post(f"/conversations/{conversation_id}/draft", json={"requester_display_name": "x"})

    assert response.status_code == 422
    assert main.sessions.find(conversation_id) is None
    assert client.get(f"/conversations/{conversation_id}/draft").status_code == 404
