import logging
from email.utils import parseaddr
from typing import TYPE_CHECKING, Any

from inbox_threads.services.email_parser import extract_reply_text, html_to_text
from inbox_threads.services.models import SenderType
from inbox_threads.services.notifications import NotificationService, schedule_notification
from inbox_threads.services.quote_detector import detect_quote
from inbox_threads.services.token_codec import resolve_conversation_id

if TYPE_CHECKING:
    from inbox_threads.config import Settings
    from inbox_threads.services.store import Store

logger = logging.getLogger(__name__)


def _normalized_headers(payload: dict[str, Any]) -> dict[str, str]:
    headers = payload.get("headers") or {}
    return {str(key).lower(): str(value) for key, value in headers.items() if value}


def _reply_content(text_body: str, html_body: str) -> tuple[str, str]:
    if html_body:
        main_html = detect_quote(html_body).main_content
        return html_to_text(main_html), main_html
    return extract_reply_text(text_body), ""


async def handle_inbound_email(
    payload: dict[str, Any],
    settings: "Settings",
    store: "Store",
    notifier: "NotificationService | None" = None,
) -> dict[str, Any]:
    _, sender = parseaddr(str(payload.get("from") or ""))
    sender_normalized = sender.strip().lower()
    text_body = str(payload.get("text") or "")
    html_body = str(payload.get("html") or "")

    if not sender_normalized or not (text_body or html_body):
        return {"status": "rejected", "reason": "missing_fields"}

    headers = _normalized_headers(payload)
    message_id = headers.get("message-id", "").strip()
    if message_id and store.is_processed(message_id):
        return {"status": "skipped", "reason": "duplicate"}

    if sender_normalized == settings.support_mailbox.strip().lower():
        if message_id:
            store.mark_processed(message_id)
        return {"status": "skipped", "reason": "own_mailbox"}

    conversation_id = resolve_conversation_id(
        body=f"{text_body}\n{html_body}",
        in_reply_to=headers.get("in-reply-to", ""),
        references=headers.get("references", ""),
    )
    if not conversation_id:
        logger.warning("Inbound email carries no thread identifier", extra={"event": "inbound_thread_missing"})
        return {"status": "rejected", "reason": "thread_missing"}

    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        logger.warning(
            "Inbound email references an unknown conversation",
            extra={"event": "inbound_conversation_unknown", "conversation_id": conversation_id},
        )
        return {"status": "not_found", "reason": "conversation_unknown"}

    if sender_normalized != conversation.requester_email:
        logger.warning(
            "Skipping unauthorized inbound sender '%s' for conversation %s (expected '%s')",
            sender_normalized,
            conversation_id,
            conversation.requester_email,
        )
        if message_id:
            store.mark_processed(message_id)
        return {"status": "skipped", "reason": "unauthorized_sender"}

    content_text, content_html = _reply_content(text_body, html_body)
    if not content_text.strip():
        if message_id:
            store.mark_processed(message_id)
        return {"status": "skipped", "reason": "empty_reply"}

    record = store.insert_reply(
        conversation_id=conversation_id,
        sender_type=SenderType.USER,
        sender_email=sender_normalized,
        content_text=content_text,
        content_html=content_html,
        message_id=message_id or None,
        in_reply_to=headers.get("in-reply-to") or None,
    )
    if message_id:
        store.mark_processed(message_id)

    logger.info(
        "Stored inbound email reply",
        extra={
            "event": "inbound_reply_stored",
            "conversation_id": conversation_id,
            "reply_id": record.id,
            "message_id": record.message_id,
            "sender": sender_normalized,
        },
    )
    if notifier is not None:
        schedule_notification(
            notifier,
            event_type="user_reply_received",
            summary="Requester replied by email",
            context={"conversation_id": conversation_id, "reply_id": record.id},
        )
    return {"status": "ok", "reply_id": record.id, "conversation_id": conversation_id}
