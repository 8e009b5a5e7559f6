import asyncio
from dataclasses import dataclass

from inbox_threads.services.store import Store
from inbox_threads.services.token_codec import build_message_id, build_thread_footer, new_id
from inbox_threads.webhooks.inbound_email import handle_inbound_email


@dataclass
class _SettingsStub:
    support_mailbox: str = "support@example.org"
    mail_domain: str = "example.org"


class _FakeNotifier:
    def __init__(self) -> None:
        self.events: list[str] = []

    async def notify(self, *, event_type: str, summary: str, context: dict | None = None) -> bool:
        self.events.append(event_type)
        return True


def _store(tmp_path) -> Store:
    store = Store(tmp_path / "threads.db", mail_domain="example.org")
    store.init_db()
    return store


def _payload(conversation_id: str, **overrides) -> dict:
    payload = {
        "from": "Anna <Anna@Example.com>",
        "text": f"Thanks, that worked.\n\nOn Mon, Support wrote:\n> {build_thread_footer(conversation_id)}",
        "headers": {"Message-ID": "<inbound-1@mail.example.com>"},
    }
    payload.update(overrides)
    return payload


def test_reply_from_requester_is_stored(tmp_path) -> None:
    store = _store(tmp_path)
    conversation = store.create_conversation("anna@example.com", "Anna", "Export fails.")
    notifier = _FakeNotifier()

    async def scenario():
        result = await handle_inbound_email(_payload(conversation.id), _SettingsStub(), store, notifier)
        await asyncio.sleep(0)
        return result

    result = asyncio.run(scenario())

    assert result["status"] == "ok"
    [record] = store.list_replies(conversation.id)
    assert record.id == result["reply_id"]
    assert record.content_text == "Thanks, that worked."
    assert record.message_id == "<inbound-1@mail.example.com>"
    assert record.sender_email == "anna@example.com"
    assert store.is_processed("<inbound-1@mail.example.com>")
    assert notifier.events == ["user_reply_received"]


def test_html_reply_keeps_only_new_content(tmp_path) -> None:
    store = _store(tmp_path)
    conversation = store.create_conversation("anna@example.com", "Anna", "Export fails.")
    html = (
        "<div>Works now</div><br>"
        '<div class="gmail_quote_container"><div class="gmail_attr">On Jan 5, 2024, support wrote:</div>'
        f"<blockquote>{build_thread_footer(conversation.id)}</blockquote></div>"
    )

    result = asyncio.run(handle_inbound_email(_payload(conversation.id, text="", html=html), _SettingsStub(), store))

    assert result["status"] == "ok"
    [record] = store.list_replies(conversation.id)
    assert record.content_html == "<div>Works now</div><br>"
    assert record.content_text == "Works now"


def test_reply_resolved_from_in_reply_to_header(tmp_path) -> None:
    store = _store(tmp_path)
    conversation = store.create_conversation("anna@example.com", "Anna", "Export fails.")
    headers = {
        "Message-ID": "<inbound-2@mail.example.com>",
        "In-Reply-To": build_message_id(new_id(), conversation.id, "example.org"),
    }

    result = asyncio.run(
        handle_inbound_email(_payload(conversation.id, text="Ok thanks", headers=headers), _SettingsStub(), store)
    )

    assert result == {"status": "ok", "reply_id": result["reply_id"], "conversation_id": conversation.id}
    [record] = store.list_replies(conversation.id)
    assert record.in_reply_to == headers["In-Reply-To"]


def test_duplicate_message_is_skipped(tmp_path) -> None:
    store = _store(tmp_path)
    conversation = store.create_conversation("anna@example.com", "Anna", "Export fails.")
    payload = _payload(conversation.id)

    asyncio.run(handle_inbound_email(payload, _SettingsStub(), store))
    result = asyncio.run(handle_inbound_email(payload, _SettingsStub(), store))

    assert result == {"status": "skipped", "reason": "duplicate"}
    assert len(store.list_replies(conversation.id)) == 1


def test_unauthorized_sender_is_skipped(tmp_path) -> None:
    store = _store(tmp_path)
    conversation = store.create_conversation("anna@example.com", "Anna", "Export fails.")

    result = asyncio.run(
        handle_inbound_email(_payload(conversation.id, **{"from": "mallory@example.net"}), _SettingsStub(), store)
    )

    assert result == {"status": "skipped", "reason": "unauthorized_sender"}
    assert store.list_replies(conversation.id) == []
    assert store.is_processed("<inbound-1@mail.example.com>")


def test_own_mailbox_is_skipped(tmp_path) -> None:
    store = _store(tmp_path)
    conversation = store.create_conversation("anna@example.com", "Anna", "Export fails.")

    result = asyncio.run(
        handle_inbound_email(_payload(conversation.id, **{"from": "support@example.org"}), _SettingsStub(), store)
    )

    assert result == {"status": "skipped", "reason": "own_mailbox"}


def test_missing_thread_identifier_is_rejected(tmp_path) -> None:
    store = _store(tmp_path)

    result = asyncio.run(handle_inbound_email({"from": "anna@example.com", "text": "hello"}, _SettingsStub(), store))

    assert result == {"status": "rejected", "reason": "thread_missing"}


def test_missing_fields_are_rejected(tmp_path) -> None:
    result = asyncio.run(handle_inbound_email({"text": "hello"}, _SettingsStub(), _store(tmp_path)))
    assert result == {"status": "rejected", "reason": "missing_fields"}


def test_unknown_conversation(tmp_path) -> None:
    store = _store(tmp_path)

    result = asyncio.run(handle_inbound_email(_payload(new_id()), _SettingsStub(), store))

    assert result == {"status": "not_found", "reason": "conversation_unknown"}


def test_quote_only_reply_is_skipped(tmp_path) -> None:
    store = _store(tmp_path)
    conversation = store.create_conversation("anna@example.com", "Anna", "Export fails.")
    text = f"> {build_thread_footer(conversation.id)}"

    result = asyncio.run(handle_inbound_email(_payload(conversation.id, text=text), _SettingsStub(), store))

    assert result == {"status": "skipped", "reason": "empty_reply"}
    assert store.list_replies(conversation.id) == []
