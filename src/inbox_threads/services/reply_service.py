from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from inbox_threads.services.composer import compose_reply
from inbox_threads.services.errors import ValidationError
from inbox_threads.services.models import ReplyRecord, ReplyType, SenderType
from inbox_threads.services.notifications import NotificationService, schedule_notification
from inbox_threads.services.token_codec import build_conversation_message_id

if TYPE_CHECKING:
    from inbox_threads.services.store import Store

logger = logging.getLogger(__name__)


def _opening_message(store: "Store", conversation_id: str) -> Optional[ReplyRecord]:
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        return None
    return ReplyRecord(
        id=conversation.id,
        conversation_id=conversation.id,
        sender_type=SenderType.USER,
        sender_email=conversation.requester_email,
        content_text=conversation.message,
        content_html="",
        created_at=conversation.created_at,
        message_id=build_conversation_message_id(conversation.id, store.mail_domain),
    )


async def send_reply(
    store: "Store",
    conversation_id: str,
    content: str,
    *,
    sender_email: str,
    notifier: Optional["NotificationService"] = None,
) -> ReplyRecord:
    """Compose an admin reply quoting the latest message and store it.

    Storage failures raise ``PersistenceError`` with nothing written.
    """
    if not (content or "").strip():
        raise ValidationError("Reply content is empty.")

    prior = store.last_message(conversation_id) or _opening_message(store, conversation_id)
    composed = compose_reply(content, prior)
    record = store.insert_reply(
        conversation_id=conversation_id,
        sender_type=SenderType.ADMIN,
        sender_email=sender_email,
        content_text=composed.content_text,
        content_html=composed.content_html,
        in_reply_to=composed.in_reply_to,
    )
    logger.info(
        "Stored admin reply",
        extra={
            "event": "reply_stored",
            "conversation_id": conversation_id,
            "reply_id": record.id,
            "in_reply_to": record.in_reply_to,
        },
    )
    if notifier is not None:
        schedule_notification(
            notifier,
            event_type="reply_sent",
            summary="Admin reply stored",
            context={"conversation_id": conversation_id, "reply_id": record.id, "message_id": record.message_id},
        )
    return record


def record_assignment(
    store: "Store",
    conversation_id: str,
    *,
    assigned_to: Optional[str],
    sender_email: Optional[str] = None,
    meta: Optional[dict[str, Any]] = None,
) -> ReplyRecord:
    action = "assign" if assigned_to else "unassign"
    return store.insert_reply(
        conversation_id=conversation_id,
        sender_type=SenderType.SYSTEM,
        sender_email=sender_email,
        reply_type=ReplyType.ASSIGNMENT,
        meta={**(meta or {}), "assigned_to": assigned_to, "action": action},
    )


def tag_change_action(tag_id: Optional[str], old_tag_id: Optional[str]) -> str:
    if not tag_id:
        return "removed"
    return "changed" if old_tag_id else "added"


def record_tag_change(
    store: "Store",
    conversation_id: str,
    *,
    tag_id: Optional[str],
    old_tag_id: Optional[str],
    sender_email: Optional[str] = None,
    meta: Optional[dict[str, Any]] = None,
) -> ReplyRecord:
    return store.insert_reply(
        conversation_id=conversation_id,
        sender_type=SenderType.SYSTEM,
        sender_email=sender_email,
        reply_type=ReplyType.TAG_CHANGE,
        meta={
            **(meta or {}),
            "tag_id": tag_id,
            "old_tag_id": old_tag_id,
            "action": tag_change_action(tag_id, old_tag_id),
        },
    )
