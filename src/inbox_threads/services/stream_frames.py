"""Frame grammar of the reply-generation stream.

The backend writes server-sent-event style blocks separated by a blank line::

    data: Hi Anna,[[DOUBLE_NEWLINE]]Thanks

    event: full_replacement
    data: {"fullText": "..."}

Newlines inside generated text travel as ``[[NEWLINE]]`` and
``[[DOUBLE_NEWLINE]]`` placeholders so they survive the framing.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from inbox_threads.services.errors import ProtocolError

logger = logging.getLogger(__name__)

NEWLINE_TOKEN = "[[NEWLINE]]"
DOUBLE_NEWLINE_TOKEN = "[[DOUBLE_NEWLINE]]"
DONE_MARKER = "[DONE]"


class FrameKind(str, Enum):
    CONTENT = "content"
    FULL_REPLACEMENT = "full_replacement"
    ADMIN_NAME_CORRECTION = "admin_name_correction"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class StreamFrame:
    kind: FrameKind
    payload: Any = None


def decode_placeholders(text: str) -> str:
    return text.replace(DOUBLE_NEWLINE_TOKEN, "\n\n").replace(NEWLINE_TOKEN, "\n")


class BlockBuffer:
    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        self._pending = (self._pending + chunk).replace("\r\n", "\n")
        *blocks, self._pending = self._pending.split("\n\n")
        return [block for block in blocks if block.strip()]

    def flush(self) -> list[str]:
        rest, self._pending = self._pending, ""
        return [rest] if rest.strip() else []


def _field_value(raw: str) -> str:
    return raw[1:] if raw.startswith(" ") else raw


def _is_json(data: str) -> bool:
    try:
        json.loads(data)
    except ValueError:
        return False
    return True


def _content_frame(data: str) -> Optional[StreamFrame]:
    if not data or data == DONE_MARKER:
        return None
    if _is_json(data):
        logger.debug("Skipping metadata frame", extra={"event": "stream_metadata_skipped"})
        return None
    return StreamFrame(FrameKind.CONTENT, decode_placeholders(data))


def _json_object(event: str, payload: str) -> dict[str, Any]:
    try:
        parsed = json.loads(payload)
    except ValueError as exc:
        raise ProtocolError(f"malformed JSON in {event} frame") from exc
    if not isinstance(parsed, dict):
        raise ProtocolError(f"{event} frame payload is not an object")
    return parsed


def _error_message(payload: str) -> str:
    try:
        parsed = json.loads(payload)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict) and parsed.get("error"):
        return str(parsed["error"])
    return payload or "Error generating AI reply"


def decode_block(block: str) -> list[StreamFrame]:
    """Decode one block into frames.

    Blocks without an ``event:`` line may carry several ``data:`` lines; each
    one is its own content frame. Raises ``ProtocolError`` when a control
    frame carries malformed JSON.
    """
    event: Optional[str] = None
    data_lines: list[str] = []
    for line in block.split("\n"):
        if line.startswith("event:"):
            event = line[len("event:") :].strip()
        elif line.startswith("data:"):
            data_lines.append(_field_value(line[len("data:") :]))

    if event is None:
        frames = [_content_frame(data) for data in data_lines]
        return [frame for frame in frames if frame is not None]

    payload = "\n".join(data_lines)
    if event == FrameKind.FULL_REPLACEMENT.value:
        body = _json_object(event, payload)
        full_text = body.get("fullText")
        if not isinstance(full_text, str):
            raise ProtocolError("full_replacement frame has no fullText")
        return [StreamFrame(FrameKind.FULL_REPLACEMENT, decode_placeholders(full_text))]
    if event == FrameKind.ADMIN_NAME_CORRECTION.value:
        body = _json_object(event, payload)
        return [
            StreamFrame(
                FrameKind.ADMIN_NAME_CORRECTION,
                {"original": body.get("original"), "replacement": body.get("replacement")},
            )
        ]
    if event == FrameKind.ERROR.value:
        return [StreamFrame(FrameKind.ERROR, _error_message(payload))]
    if event == FrameKind.DONE.value:
        return [StreamFrame(FrameKind.DONE, payload)]

    logger.debug("Ignoring unknown stream event", extra={"event": "stream_unknown_event", "stream_event": event})
    return []
