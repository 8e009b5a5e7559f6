import html
import re

_QUOTE_MARKERS = (
    "-----Original Message-----",
    "--------------- Original Message ---------------",
    "From:",
    "Sent:",
    "To:",
    "Subject:",
)

_SIGNATURE_MARKERS = (
    "Sent from my iPhone",
    "Sent from my iPad",
    "Sent from my Android",
    "Get Outlook for iOS",
    "Get Outlook for Android",
)

# Tag names must be followed by whitespace, "/" or ">" so "<user@example.com>" survives.
TAG_RE = re.compile(r"</?[a-zA-Z][a-zA-Z0-9-]*(?:\s[^<>]*)?/?>")
_BLOCK_END_RE = re.compile(r"</(?:div|p|li|tr|h[1-6]|blockquote)\s*>", re.IGNORECASE)
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)


def strip_tags(markup: str) -> str:
    return TAG_RE.sub("", markup or "")


def html_to_text(markup: str) -> str:
    text = _BR_RE.sub("\n", markup or "")
    text = _BLOCK_END_RE.sub("\n", text)
    text = strip_tags(text)
    text = html.unescape(text).replace("\xa0", " ")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def inline_text(markup: str) -> str:
    text = html.unescape(strip_tags(_BR_RE.sub(" ", markup or ""))).replace("\xa0", " ")
    return " ".join(text.split())


def extract_reply_text(raw_text: str) -> str:
    lines = (raw_text or "").replace("\r", "").split("\n")
    kept: list[str] = []

    for line in lines:
        stripped = line.strip()

        if stripped.startswith(">"):
            break
        if any(stripped.startswith(marker) for marker in _QUOTE_MARKERS):
            break
        if re.match(r"^On .+ wrote:$", stripped):
            break
        if stripped == "--" or any(stripped.startswith(marker) for marker in _SIGNATURE_MARKERS):
            break

        kept.append(line.rstrip())

    text = "\n".join(kept).strip()
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text
