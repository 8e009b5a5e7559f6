from __future__ import annotations

from typing import Any, Iterable

from inbox_threads.services.grouping import group_conversation
from inbox_threads.services.models import ReplyRecord
from inbox_threads.services.quote_detector import detect_quote


def _message_entry(record: ReplyRecord) -> dict[str, Any]:
    entry = record.to_dict()
    if record.content_html:
        extraction = detect_quote(record.content_html)
        entry["main_content_html"] = extraction.main_content
        entry["attribution"] = extraction.attribution
        entry["quoted_content_html"] = extraction.quoted_content
    else:
        entry["main_content_html"] = None
        entry["attribution"] = None
        entry["quoted_content_html"] = None
    return entry


def build_thread_view(records: Iterable[ReplyRecord]) -> list[dict[str, Any]]:
    view: list[dict[str, Any]] = []
    for item in group_conversation(records):
        if isinstance(item, list):
            view.append({"kind": "event_group", "events": [record.to_dict() for record in item]})
        else:
            view.append({"kind": "message", "message": _message_entry(item)})
    return view
