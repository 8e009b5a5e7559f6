import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from inbox_threads.services.errors import PersistenceError
from inbox_threads.services.models import Conversation, ReplyRecord, ReplyType, SenderType
from inbox_threads.services.token_codec import build_message_id, new_id

logger = logging.getLogger(__name__)

RepliesListener = Callable[[list[ReplyRecord]], None]

_REPLY_COLUMNS = (
    "id, conversation_id, sender_type, sender_email, content_text, content_html, created_at, "
    "message_id, in_reply_to, type, meta, attachments"
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _row_to_reply(row: tuple) -> ReplyRecord:
    return ReplyRecord(
        id=str(row[0]),
        conversation_id=str(row[1]),
        sender_type=SenderType(row[2]),
        sender_email=row[3],
        content_text=str(row[4] or ""),
        content_html=str(row[5] or ""),
        created_at=datetime.fromisoformat(row[6]),
        message_id=str(row[7] or ""),
        in_reply_to=row[8],
        type=ReplyType(row[9]),
        meta=json.loads(row[10] or "{}"),
        attachments=json.loads(row[11] or "[]"),
    )


class Store:
    def __init__(self, database_path: Path, *, mail_domain: str = "example.org") -> None:
        self.database_path = database_path
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.mail_domain = mail_domain
        self._listeners: dict[str, list[RepliesListener]] = {}

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.database_path)

    def init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    requester_email TEXT NOT NULL,
                    requester_name TEXT NOT NULL DEFAULT '',
                    message TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS replies (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL REFERENCES conversations(id),
                    sender_type TEXT NOT NULL,
                    sender_email TEXT,
                    content_text TEXT NOT NULL DEFAULT '',
                    content_html TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    in_reply_to TEXT,
                    type TEXT NOT NULL DEFAULT 'normal',
                    meta TEXT NOT NULL DEFAULT '{}',
                    attachments TEXT NOT NULL DEFAULT '[]'
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS replies_by_conversation ON replies(conversation_id, created_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_messages (
                    internet_message_id TEXT PRIMARY KEY,
                    processed_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.commit()

    def create_conversation(self, requester_email: str, requester_name: str, message: str) -> Conversation:
        conversation = Conversation(
            id=new_id(),
            requester_email=requester_email.strip().lower(),
            requester_name=requester_name.strip(),
            message=message,
            created_at=_utc_now(),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations(id, requester_email, requester_name, message, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    conversation.requester_email,
                    conversation.requester_name,
                    conversation.message,
                    _format_ts(conversation.created_at),
                ),
            )
            conn.commit()
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, requester_email, requester_name, message, created_at FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        if not row:
            return None
        return Conversation(
            id=str(row[0]),
            requester_email=str(row[1]),
            requester_name=str(row[2] or ""),
            message=str(row[3] or ""),
            created_at=datetime.fromisoformat(row[4]),
        )

    def insert_reply(
        self,
        *,
        conversation_id: str,
        sender_type: SenderType,
        content_text: str = "",
        content_html: str = "",
        sender_email: Optional[str] = None,
        in_reply_to: Optional[str] = None,
        reply_type: ReplyType = ReplyType.NORMAL,
        meta: Optional[dict[str, Any]] = None,
        attachments: Optional[list[dict[str, Any]]] = None,
        message_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> ReplyRecord:
        reply_id = new_id()
        record = ReplyRecord(
            id=reply_id,
            conversation_id=conversation_id,
            sender_type=sender_type,
            sender_email=sender_email,
            content_text=content_text,
            content_html=content_html,
            created_at=created_at or _utc_now(),
            message_id=message_id or build_message_id(reply_id, conversation_id, self.mail_domain),
            in_reply_to=in_reply_to,
            type=reply_type,
            meta=meta or {},
            attachments=attachments or [],
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO replies({_REPLY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.conversation_id,
                        record.sender_type.value,
                        record.sender_email,
                        record.content_text,
                        record.content_html,
                        _format_ts(record.created_at),
                        record.message_id,
                        record.in_reply_to,
                        record.type.value,
                        json.dumps(record.meta),
                        json.dumps(record.attachments),
                    ),
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"could not store reply for conversation {conversation_id}") from exc

        self._publish(conversation_id)
        return record

    def list_replies(self, conversation_id: str) -> list[ReplyRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_REPLY_COLUMNS}
                FROM replies
                WHERE conversation_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [_row_to_reply(row) for row in rows]

    def last_message(self, conversation_id: str) -> Optional[ReplyRecord]:
        """Latest non-event record, the one a new reply quotes."""
        messages = [record for record in self.list_replies(conversation_id) if not record.is_system_event]
        if not messages:
            return None
        return messages[-1]

    def is_processed(self, internet_message_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM processed_messages WHERE internet_message_id = ?",
                (internet_message_id,),
            ).fetchone()
            return row is not None

    def mark_processed(self, internet_message_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO processed_messages(internet_message_id)
                VALUES (?)
                """,
                (internet_message_id,),
            )
            conn.commit()

    def subscribe(self, conversation_id: str, listener: RepliesListener) -> Callable[[], None]:
        """Call ``listener`` with the full reply list after every write."""
        self._listeners.setdefault(conversation_id, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(conversation_id) or []
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def _publish(self, conversation_id: str) -> None:
        listeners = list(self._listeners.get(conversation_id) or [])
        if not listeners:
            return
        replies = self.list_replies(conversation_id)
        for listener in listeners:
            try:
                listener(replies)
            except Exception:
                logger.exception(
                    "Reply listener failed",
                    extra={"event": "reply_listener_failed", "conversation_id": conversation_id},
                )
