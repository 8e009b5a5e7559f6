"""Split stored HTML email bodies into new content and quoted history.

Mail clients mark the start of the quoted previous message in different ways.
``detect_quote`` runs an ordered list of rules over the body and splits at the
first rule that matches. Structural markers (Gmail container, Apple Mail and
generic ``type="cite"`` blockquotes) always win over the looser fallback
markers, wherever in the body they occur.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from inbox_threads.services.email_parser import html_to_text, inline_text

logger = logging.getLogger(__name__)

# Attribution lines are short; only look this far back from a boundary.
_ATTRIBUTION_WINDOW = 600


@dataclass(frozen=True)
class QuoteExtraction:
    main_content: str
    attribution: Optional[str] = None
    quoted_content: Optional[str] = None

    @property
    def has_quote(self) -> bool:
        return self.quoted_content is not None


@dataclass(frozen=True)
class QuoteSplit:
    boundary: int
    attribution: Optional[str] = None


@dataclass(frozen=True)
class QuoteRule:
    name: str
    find: Callable[[str], Optional[QuoteSplit]]
    fallback: bool = False


def _class_re(tag: str, class_name: str) -> re.Pattern[str]:
    return re.compile(
        rf"<{tag}\b[^>]*\bclass\s*=\s*[\"'][^\"']*(?<![\w-]){class_name}(?![\w-])[^\"']*[\"'][^>]*>",
        re.IGNORECASE,
    )


_IMG_RE = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
_PIXEL_ATTR_RE = {
    name: re.compile(rf"(?<![\w-]){name}\s*=\s*[\"']?\s*1(?:px)?\s*[\"']?(?=[\s/>])", re.IGNORECASE)
    for name in ("width", "height")
}
_PIXEL_STYLE_RE = {
    name: re.compile(rf"(?<![\w-]){name}\s*:\s*1px\b", re.IGNORECASE) for name in ("width", "height")
}

_GMAIL_CONTAINER_RE = _class_re("div", "gmail_quote_container")
_GMAIL_QUOTE_RE = _class_re("div", "gmail_quote")
_EMAIL_QUOTE_CONTAINER_RE = _class_re("div", "email_quote_container")
_ATTR_BODY_RE = re.compile(
    r"<div\b[^>]*\bclass\s*=\s*[\"'][^\"']*(?<![\w-])(?:gmail_attr|email_attr)(?![\w-])[^\"']*[\"'][^>]*>"
    r"(?P<body>.*?)</div>",
    re.IGNORECASE | re.DOTALL,
)

_APPLE_CITE_RE = re.compile(
    r"<div\s+dir\s*=\s*[\"']ltr[\"']\s*>\s*<br\s*/?>\s*(?P<quote><blockquote\s+type\s*=\s*[\"']cite[\"'])",
    re.IGNORECASE,
)
_CITE_RE = re.compile(r"<blockquote\b[^>]*\btype\s*=\s*[\"']cite[\"'][^>]*>", re.IGNORECASE)
_BLOCKQUOTE_RE = re.compile(r"<blockquote\b[^>]*>", re.IGNORECASE)

_ATTRIBUTION_START_RE = re.compile(r"\bOn\s")
_APPLE_ATTRIBUTION_RE = re.compile(r"On\s[^<>]{1,80}?,\s*at\s[^<>]{1,40}?,\s(?:[^<>]|<[^<>]*>){1,300}?wrote:")
_ANY_ATTRIBUTION_RE = re.compile(r"On\s(?:[^<>]|<[^<>]*>){1,400}?wrote:")
_WROTE_RE = re.compile(r"wrote:")
_MARKUP_GAP_RE = re.compile(r"(?:\s|&nbsp;|<[^<>]*>)*", re.IGNORECASE)
_OPENING_TAG_TAIL_RE = re.compile(r"<(?:div|p|span)\b[^<>]*>\s*\Z", re.IGNORECASE)

_CLIENT_REPLY_DIV_RE = re.compile(
    r"(?:<hr\b[^<>]*>\s*)?<div\b[^<>]*\bid\s*=\s*[\"']"
    r"(?:AppleMailSignature|appendonsend|divRplyFwdMsg|OLK_SRC_BODY_SECTION|Signature)[\"'][^<>]*>",
    re.IGNORECASE,
)
_FORWARDED_HEADER_RE = re.compile(
    r"-{3,}\s*(?i:original message|forwarded message)\s*-{3,}"
    r"|(?:<(?:b|strong)>\s*)?From:\s*(?:</(?:b|strong)>)?(?:[^<>]|<[^<>]*>){1,400}?(?:To|Date|Sent|Subject):"
)
_QUOTED_TEXT_MARKER_RE = re.compile(
    r"<[a-zA-Z][^<>]*\bdata-marker\s*=\s*[\"']__QUOTED_TEXT__[\"'][^<>]*>",
    re.IGNORECASE,
)
_YAHOO_QUOTED_RE = re.compile(r"(?:<hr\b[^<>]*>\s*)?<(?:hr|div)\b[^<>]*yahoo_quoted_[^<>]*>", re.IGNORECASE)

_ARTIFACT_TAIL_RE = re.compile(r"(?:<br\s*/?>|<div>\s*(?:<br\s*/?>)?\s*</div>)\Z", re.IGNORECASE)
_GREETING_RE = re.compile(r"\b(?:Hi|Hello|Hey|Dear)\s+[^,\n]{1,40},")
_SIGN_OFF_RE = re.compile(
    r"^\s*(?:Best|Best regards|Kind regards|Regards|Thanks|Thank you|Cheers)\s*,\s*$",
    re.MULTILINE | re.IGNORECASE,
)


def _is_tracking_pixel(tag: str) -> bool:
    return all(_PIXEL_ATTR_RE[name].search(tag) or _PIXEL_STYLE_RE[name].search(tag) for name in ("width", "height"))


def strip_tracking_pixels(html: str) -> str:
    return _IMG_RE.sub(lambda match: "" if _is_tracking_pixel(match.group(0)) else match.group(0), html)


def _line_start(html: str, position: int) -> int:
    # Pull the boundary back over opening tags wrapping the attribution line.
    while position > 0:
        match = _OPENING_TAG_TAIL_RE.search(html, max(0, position - 300), position)
        if not match:
            break
        position = match.start()
    return position


def _attribution_ending_at(html: str, end: int, pattern: re.Pattern[str]) -> Optional[int]:
    window_start = max(0, end - _ATTRIBUTION_WINDOW)
    starts = [match.start() for match in _ATTRIBUTION_START_RE.finditer(html, window_start, end)]
    for start in reversed(starts):
        if pattern.fullmatch(html, start, end):
            return start
    return None


def _attribution_before(html: str, limit: int, pattern: re.Pattern[str]) -> Optional[tuple[int, int]]:
    wrote = html.rfind("wrote:", max(0, limit - _ATTRIBUTION_WINDOW), limit)
    if wrote < 0:
        return None
    end = wrote + len("wrote:")
    if not _MARKUP_GAP_RE.fullmatch(html, end, limit):
        return None
    start = _attribution_ending_at(html, end, pattern)
    if start is None:
        return None
    return start, end


def _attribution_after(html: str, position: int, pattern: re.Pattern[str]) -> Optional[str]:
    match = pattern.search(html, position, position + _ATTRIBUTION_WINDOW)
    if not match or not _MARKUP_GAP_RE.fullmatch(html, position, match.start()):
        return None
    return inline_text(match.group(0))


def _nested_attribution(quoted: str) -> Optional[str]:
    match = _ATTR_BODY_RE.search(quoted)
    if not match:
        return None
    return inline_text(match.group("body")) or None


def _split_at_cite(html: str, quote_start: int, search_limit: int, pattern: re.Pattern[str]) -> QuoteSplit:
    found = _attribution_before(html, search_limit, pattern)
    if found:
        start, end = found
        return QuoteSplit(_line_start(html, start), inline_text(html[start:end]))
    return QuoteSplit(quote_start, _attribution_after(html, quote_start, pattern))


def _find_gmail_container(html: str) -> Optional[QuoteSplit]:
    # A stray <br> Gmail leaves before the container stays with the main content.
    match = _GMAIL_CONTAINER_RE.search(html)
    if not match:
        return None
    return QuoteSplit(match.start(), _nested_attribution(html[match.start():]))


def _find_apple_mail(html: str) -> Optional[QuoteSplit]:
    match = _APPLE_CITE_RE.search(html)
    if not match:
        return None
    return _split_at_cite(html, match.start("quote"), match.start(), _APPLE_ATTRIBUTION_RE)


def _find_cite_blockquote(html: str) -> Optional[QuoteSplit]:
    match = _CITE_RE.search(html)
    if not match:
        return None
    return _split_at_cite(html, match.start(), match.start(), _ANY_ATTRIBUTION_RE)


def _find_gmail_quote(html: str) -> Optional[QuoteSplit]:
    match = _GMAIL_QUOTE_RE.search(html)
    if not match:
        return None
    return QuoteSplit(match.start(), _nested_attribution(html[match.start():]))


def _find_on_wrote_text(html: str) -> Optional[QuoteSplit]:
    for wrote in _WROTE_RE.finditer(html):
        start = _attribution_ending_at(html, wrote.end(), _ANY_ATTRIBUTION_RE)
        if start is None:
            continue
        boundary = _line_start(html, start)
        # An attribution at the very top leaves nothing to show as new content.
        if boundary == 0:
            continue
        return QuoteSplit(boundary, inline_text(html[start : wrote.end()]))
    return None


def _find_email_quote_container(html: str) -> Optional[QuoteSplit]:
    match = _EMAIL_QUOTE_CONTAINER_RE.search(html)
    if not match:
        return None
    return QuoteSplit(match.start(), _nested_attribution(html[match.start():]))


def _find_pattern(pattern: re.Pattern[str], *, line_start: bool = False) -> Callable[[str], Optional[QuoteSplit]]:
    def find(html: str) -> Optional[QuoteSplit]:
        match = pattern.search(html)
        if not match:
            return None
        return QuoteSplit(_line_start(html, match.start()) if line_start else match.start())

    return find


QUOTE_RULES: tuple[QuoteRule, ...] = (
    QuoteRule("gmail_quote_container", _find_gmail_container),
    QuoteRule("apple_mail_cite", _find_apple_mail),
    QuoteRule("cite_blockquote", _find_cite_blockquote),
    QuoteRule("gmail_quote", _find_gmail_quote, fallback=True),
    QuoteRule("on_wrote_text", _find_on_wrote_text, fallback=True),
    QuoteRule("email_quote_container", _find_email_quote_container, fallback=True),
    QuoteRule("blockquote", _find_pattern(_BLOCKQUOTE_RE), fallback=True),
    QuoteRule("client_reply_div", _find_pattern(_CLIENT_REPLY_DIV_RE), fallback=True),
    QuoteRule("forwarded_header", _find_pattern(_FORWARDED_HEADER_RE, line_start=True), fallback=True),
    QuoteRule("quoted_text_marker", _find_pattern(_QUOTED_TEXT_MARKER_RE), fallback=True),
    QuoteRule("yahoo_quoted", _find_pattern(_YAHOO_QUOTED_RE), fallback=True),
)


def trim_trailing_artifacts(main_content: str) -> str:
    text = html_to_text(main_content)
    if _GREETING_RE.search(text) or _SIGN_OFF_RE.search(text):
        return main_content

    end = len(main_content.rstrip())
    artifacts = 0
    while end > 0:
        match = _ARTIFACT_TAIL_RE.search(main_content, max(0, end - 64), end)
        if not match:
            break
        end = len(main_content[: match.start()].rstrip())
        artifacts += 1

    if artifacts < 2:
        return main_content
    return main_content[:end]


def detect_quote(html: Optional[str], rules: tuple[QuoteRule, ...] = QUOTE_RULES) -> QuoteExtraction:
    if not html:
        return QuoteExtraction(main_content="")

    cleaned = strip_tracking_pixels(html)
    for rule in rules:
        split = rule.find(cleaned)
        if split is None:
            continue

        main_content = cleaned[: split.boundary]
        if rule.fallback:
            main_content = trim_trailing_artifacts(main_content)
        logger.debug(
            "Detected quoted history",
            extra={"event": "quote_boundary_detected", "rule": rule.name, "boundary": split.boundary},
        )
        return QuoteExtraction(
            main_content=main_content,
            attribution=split.attribution,
            quoted_content=cleaned[split.boundary :],
        )

    return QuoteExtraction(main_content=cleaned)
