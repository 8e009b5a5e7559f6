from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SenderType(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"


class ReplyType(str, Enum):
    NORMAL = "normal"
    ASSIGNMENT = "assignment"
    TAG_CHANGE = "tag_change"


SYSTEM_EVENT_TYPES = frozenset({ReplyType.ASSIGNMENT, ReplyType.TAG_CHANGE})


@dataclass
class ReplyRecord:
    id: str
    conversation_id: str
    sender_type: SenderType
    content_text: str
    content_html: str
    created_at: datetime
    message_id: str = ""
    in_reply_to: str | None = None
    type: ReplyType = ReplyType.NORMAL
    meta: dict[str, Any] = field(default_factory=dict)
    attachments: list[dict[str, Any]] = field(default_factory=list)
    sender_email: str | None = None

    @property
    def is_system_event(self) -> bool:
        return self.type in SYSTEM_EVENT_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_type": self.sender_type.value,
            "sender_email": self.sender_email,
            "content_text": self.content_text,
            "content_html": self.content_html,
            "created_at": self.created_at.isoformat(),
            "message_id": self.message_id,
            "in_reply_to": self.in_reply_to,
            "type": self.type.value,
            "meta": self.meta,
            "attachments": self.attachments,
        }


@dataclass
class Conversation:
    id: str
    requester_email: str
    requester_name: str
    message: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "requester_email": self.requester_email,
            "requester_name": self.requester_name,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }
