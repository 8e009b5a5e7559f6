import re
import uuid
from typing import Optional, Tuple

THREAD_TOKEN_PATTERN = re.compile(r"thread::(?P<conversation>[a-f0-9-]+)::", re.IGNORECASE)
MESSAGE_ID_PATTERN = re.compile(
    r"<?reply-(?P<reply>[a-f0-9-]{36})-(?P<conversation>[a-f0-9-]{36})@(?P<domain>[^>\s]+)>?",
    re.IGNORECASE,
)
CONVERSATION_MESSAGE_ID_PATTERN = re.compile(
    r"<?feedback-(?P<conversation>[a-f0-9-]+)@(?P<domain>[^>\s]+)>?",
    re.IGNORECASE,
)


def new_id() -> str:
    return str(uuid.uuid4())


def build_thread_token(conversation_id: str) -> str:
    return f"thread::{conversation_id}::"


def build_thread_footer(conversation_id: str) -> str:
    return (
        "Please do not modify this line or token as it may impact our ability to properly "
        f"process your reply: {build_thread_token(conversation_id)}"
    )


def extract_thread_token(body: str) -> Optional[str]:
    match = THREAD_TOKEN_PATTERN.search(body or "")
    if not match:
        return None
    return match.group("conversation").lower()


def build_message_id(reply_id: str, conversation_id: str, domain: str) -> str:
    return f"<reply-{reply_id}-{conversation_id}@{domain}>"


def build_conversation_message_id(conversation_id: str, domain: str) -> str:
    return f"<feedback-{conversation_id}@{domain}>"


def parse_message_id(message_id: str) -> Tuple[Optional[str], Optional[str]]:
    value = (message_id or "").strip()
    match = MESSAGE_ID_PATTERN.fullmatch(value)
    if match:
        return match.group("reply").lower(), match.group("conversation").lower()
    match = CONVERSATION_MESSAGE_ID_PATTERN.fullmatch(value)
    if match:
        return None, match.group("conversation").lower()
    return None, None


def resolve_conversation_id(*, body: str, in_reply_to: str = "", references: str = "") -> Optional[str]:
    token = extract_thread_token(body)
    if token:
        return token
    candidates = [in_reply_to] + list(reversed((references or "").split()))
    for candidate in candidates:
        _, conversation_id = parse_message_id(candidate)
        if conversation_id:
            return conversation_id
    return None
