"""Build the stored HTML/text of an outgoing reply.

A reply quotes only the new content of the message it answers, so quotes
never nest more than one level deep no matter how long the thread grows.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from inbox_threads.services.email_parser import extract_reply_text, html_to_text
from inbox_threads.services.models import ReplyRecord
from inbox_threads.services.quote_detector import detect_quote

QUOTE_CONTAINER_STYLE = "margin:0 0 0 .8ex;border-left:1px solid #ccc;padding-left:1ex"

_LEADING_HTML_RE = re.compile(r"^<(?:div|br|p)\b", re.IGNORECASE)
_ANY_TAG_RE = re.compile(r"<[a-zA-Z][^>]*>")
_BR_VARIANTS_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_PARAGRAPH_OPEN_RE = re.compile(r"<p>", re.IGNORECASE)
_PARAGRAPH_CLOSE_RE = re.compile(r"</p>", re.IGNORECASE)
_EMPTY_DIV_RE = re.compile(r"<div>\s*(?:<br>)?\s*</div>", re.IGNORECASE)
_DIV_JOIN_RE = re.compile(r"</div>\s*((?:<br>\s*)*)<div>", re.IGNORECASE)
_DIV_OPEN_RE = re.compile(r"<div\b", re.IGNORECASE)
_EDGE_BREAKS_RE = re.compile(r"^(?:<br>\s*)+|(?:\s*<br>)+$", re.IGNORECASE)


@dataclass(frozen=True)
class ComposedReply:
    content_html: str
    content_text: str
    in_reply_to: Optional[str] = None


def looks_like_html(content: str) -> bool:
    stripped = content.strip()
    return bool(_LEADING_HTML_RE.match(stripped) or _ANY_TAG_RE.search(stripped))


def plain_text_to_html(text: str) -> str:
    escaped = html.escape(text.strip(), quote=False).replace("\r\n", "\n").replace("\n", "<br>")
    return f"<div>{escaped}</div><br>"


def normalize_editor_html(markup: str) -> str:
    body = _BR_VARIANTS_RE.sub("<br>", markup.strip())
    body = _PARAGRAPH_OPEN_RE.sub("<div>", body)
    body = _PARAGRAPH_CLOSE_RE.sub("</div>", body)

    previous = None
    while previous != body:
        previous = body
        body = _EMPTY_DIV_RE.sub("<br>", body)
        body = _DIV_JOIN_RE.sub(lambda match: "<br>" + re.sub(r"\s+", "", match.group(1)), body)
    body = _EDGE_BREAKS_RE.sub("", body)

    wrapped = body.startswith("<div>") and body.endswith("</div>") and len(_DIV_OPEN_RE.findall(body)) == 1
    if not wrapped:
        body = f"<div>{body}</div>"
    return f"{body}<br>"


def format_attribution_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    hour = value.hour % 12 or 12
    meridiem = "AM" if value.hour < 12 else "PM"
    return f"{value:%a, %b} {value.day}, {value.year} at {hour}:{value.minute:02d} {meridiem}"


def build_attribution(sent_at: datetime, email: str) -> str:
    return f"On {format_attribution_date(sent_at)}, <{email}> wrote:"


def _prior_main_html(prior: ReplyRecord) -> str:
    if prior.content_html:
        return detect_quote(prior.content_html).main_content
    text = extract_reply_text(prior.content_text)
    return html.escape(text, quote=False).replace("\n", "<br>")


def _quote_container(attribution: str, quoted_html: str) -> str:
    return (
        f'<div class="email_quote_container">'
        f'<div class="email_attr">{html.escape(attribution, quote=False)}</div>'
        f'<blockquote class="email_quote" style="{QUOTE_CONTAINER_STYLE}">{quoted_html}</blockquote>'
        f"</div>"
    )


def _quote_plain_text(attribution: str, quoted_text: str) -> str:
    lines = quoted_text.split("\n") if quoted_text else [""]
    return attribution + "\n" + "\n".join(f"> {line}" for line in lines)


def compose_reply(
    content: str,
    prior: Optional[ReplyRecord] = None,
    *,
    quoted_sender_email: Optional[str] = None,
) -> ComposedReply:
    raw = content or ""
    if looks_like_html(raw):
        content_html = normalize_editor_html(raw)
        content_text = html_to_text(raw)
    else:
        content_html = plain_text_to_html(raw)
        content_text = raw.strip()

    if prior is None:
        return ComposedReply(content_html=content_html, content_text=content_text)

    email = quoted_sender_email or prior.sender_email or "unknown"
    attribution = build_attribution(prior.created_at, email)
    prior_html = _prior_main_html(prior)

    content_html = content_html + _quote_container(attribution, prior_html)
    content_text = content_text + "\n\n" + _quote_plain_text(attribution, html_to_text(prior_html))

    return ComposedReply(
        content_html=content_html,
        content_text=content_text,
        in_reply_to=prior.message_id or None,
    )
