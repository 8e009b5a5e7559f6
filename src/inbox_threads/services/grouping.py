from __future__ import annotations

from typing import Iterable, Union

from inbox_threads.services.models import ReplyRecord

ThreadItem = Union[ReplyRecord, list[ReplyRecord]]


def group_conversation(records: Iterable[ReplyRecord]) -> list[ThreadItem]:
    grouped: list[ThreadItem] = []
    for record in records:
        if record.is_system_event:
            previous = grouped[-1] if grouped else None
            if isinstance(previous, list):
                previous.append(record)
            else:
                grouped.append([record])
            continue
        grouped.append(record)
    return grouped


def flatten(grouped: Iterable[ThreadItem]) -> list[ReplyRecord]:
    records: list[ReplyRecord] = []
    for item in grouped:
        if isinstance(item, list):
            records.extend(item)
        else:
            records.append(item)
    return records
