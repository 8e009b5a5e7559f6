from datetime import datetime, timezone

from inbox_threads.services.composer import compose_reply
from inbox_threads.services.models import ReplyRecord, SenderType
from inbox_threads.services.quote_detector import QUOTE_RULES, detect_quote, strip_tracking_pixels

GMAIL_HTML = (
    "<div>Thanks for the update</div><br>"
    '<div class="gmail_quote_container"><div dir="ltr" class="gmail_attr">'
    "On Jan 5, 2024, <user@example.com> wrote:<br></div>"
    '<blockquote class="gmail_quote">Original message body</blockquote></div>'
)


def test_gmail_container_splits_at_container_start() -> None:
    result = detect_quote(GMAIL_HTML)

    assert result.main_content == "<div>Thanks for the update</div><br>"
    assert result.attribution == "On Jan 5, 2024, <user@example.com> wrote:"
    assert result.quoted_content is not None
    assert result.quoted_content.startswith('<div class="gmail_quote_container">')
    assert result.main_content + result.quoted_content == GMAIL_HTML


def test_gmail_split_reconstructs_pixel_stripped_input() -> None:
    pixel = '<img src="https://track.example.com/o.gif" width="1" height="1" alt="">'
    html = GMAIL_HTML.replace("</div><br>", f"</div>{pixel}<br>", 1)

    result = detect_quote(html)

    assert pixel not in result.main_content
    assert result.main_content + result.quoted_content == strip_tracking_pixels(html)
    assert result.main_content + result.quoted_content == GMAIL_HTML


def test_tracking_pixel_in_inline_style_is_removed() -> None:
    html = '<div>Hello</div><img style="width:1px;height:1px" src="https://t.example/p.png">'
    assert detect_quote(html).main_content == "<div>Hello</div>"


def test_regular_images_are_kept() -> None:
    html = '<div>Chart</div><img src="chart.png" width="100" height="1">'
    result = detect_quote(html)
    assert result.main_content == html
    assert result.quoted_content is None


def test_unmatched_input_is_returned_unchanged() -> None:
    html = "<div>No quote here</div><div>Just two lines</div>"

    result = detect_quote(html)

    assert result.main_content == html
    assert result.attribution is None
    assert result.quoted_content is None


def test_empty_input_yields_empty_result() -> None:
    for value in ("", None):
        result = detect_quote(value)
        assert result.main_content == ""
        assert result.attribution is None
        assert result.quoted_content is None


def test_detection_is_idempotent_on_main_content() -> None:
    first = detect_quote(GMAIL_HTML)
    second = detect_quote(first.main_content)

    assert second.main_content == first.main_content
    assert second.quoted_content is None


def test_apple_mail_moves_boundary_to_attribution_line() -> None:
    html = (
        '<div dir="ltr">Works for me</div>'
        '<div dir="ltr">On Jan 5, 2024, at 10:00 AM, Jane Doe &lt;jane@example.com&gt; wrote:</div>'
        '<div dir="ltr"><br><blockquote type="cite"><div dir="ltr">Original</div></blockquote></div>'
    )

    result = detect_quote(html)

    assert result.main_content == '<div dir="ltr">Works for me</div>'
    assert result.attribution == "On Jan 5, 2024, at 10:00 AM, Jane Doe <jane@example.com> wrote:"
    assert result.quoted_content.startswith('<div dir="ltr">On Jan 5, 2024')


def test_apple_mail_without_attribution_splits_at_blockquote() -> None:
    html = '<div dir="ltr">Sure</div><div dir="ltr"><br><blockquote type="cite">Original text</blockquote></div>'

    result = detect_quote(html)

    assert result.main_content == '<div dir="ltr">Sure</div><div dir="ltr"><br>'
    assert result.attribution is None
    assert result.quoted_content == '<blockquote type="cite">Original text</blockquote></div>'


def test_cite_blockquote_with_attribution_paragraph() -> None:
    html = (
        "<p>Thanks!</p>"
        "<p>On Tue, Mar 3, 2024 Bob &lt;bob@example.com&gt; wrote:</p>"
        '<blockquote type="cite">Old</blockquote>'
    )

    result = detect_quote(html)

    assert result.main_content == "<p>Thanks!</p>"
    assert result.attribution == "On Tue, Mar 3, 2024 Bob <bob@example.com> wrote:"


def test_structural_rule_wins_over_earlier_fallback_marker() -> None:
    html = (
        "<div>Reply</div>"
        '<div class="gmail_quote">Earlier</div>'
        '<blockquote type="cite">Cited</blockquote>'
    )

    result = detect_quote(html)

    assert result.main_content == '<div>Reply</div><div class="gmail_quote">Earlier</div>'
    assert result.quoted_content == '<blockquote type="cite">Cited</blockquote>'


def test_gmail_container_wins_over_earlier_blockquote() -> None:
    html = (
        "<div>See below</div><blockquote>inline citation</blockquote>"
        '<div class="gmail_quote_container">older</div>'
    )

    result = detect_quote(html)

    assert result.main_content == "<div>See below</div><blockquote>inline citation</blockquote>"


def test_on_wrote_text_fallback() -> None:
    html = (
        "<div>Sounds great</div>"
        "<div>On Mon, Jan 8, 2024 at 9:00 AM Alice &lt;alice@example.com&gt; wrote:</div>"
        "<div>old stuff</div>"
    )

    result = detect_quote(html)

    assert result.main_content == "<div>Sounds great</div>"
    assert result.attribution == "On Mon, Jan 8, 2024 at 9:00 AM Alice <alice@example.com> wrote:"
    assert result.quoted_content.startswith("<div>On Mon")


def test_attribution_at_top_is_not_a_boundary() -> None:
    html = "<div>On Jan 1, 2024, Bob wrote:</div><div>text</div>"

    result = detect_quote(html)

    assert result.main_content == html
    assert result.quoted_content is None


def test_fallback_trims_trailing_breaks() -> None:
    html = "<div>Quick note</div><br><br><blockquote>older</blockquote>"

    result = detect_quote(html)

    assert result.main_content == "<div>Quick note</div>"
    assert result.quoted_content == "<blockquote>older</blockquote>"


def test_fallback_keeps_spacing_when_signed() -> None:
    html = "<div>Hi Sam,</div><div>All set.</div><div>Best,</div><div>Jo</div><br><br><blockquote>older</blockquote>"

    result = detect_quote(html)

    assert result.main_content.endswith("<div>Jo</div><br><br>")


def test_outlook_forwarded_header() -> None:
    html = (
        "<div>See attached.</div>"
        "<div><b>From:</b> Support &lt;support@example.org&gt;<br><b>Sent:</b> Monday</div>"
        "<div>old</div>"
    )

    result = detect_quote(html)

    assert result.main_content == "<div>See attached.</div>"
    assert result.quoted_content.startswith("<div><b>From:</b>")


def test_original_message_marker() -> None:
    html = "<div>Done</div><div>-----Original Message-----<br>older</div>"

    result = detect_quote(html)

    assert result.main_content == "<div>Done</div>"


def test_outlook_reply_div() -> None:
    html = '<div>Approved</div><div id="appendonsend"></div><div>old</div>'
    assert detect_quote(html).main_content == "<div>Approved</div>"


def test_quoted_text_marker() -> None:
    html = '<div>New</div><div data-marker="__QUOTED_TEXT__">old</div>'
    assert detect_quote(html).quoted_content == '<div data-marker="__QUOTED_TEXT__">old</div>'


def test_yahoo_quoted_block() -> None:
    html = '<div>Thanks</div><div id="yahoo_quoted_123" class="yahoo_quoted">old</div>'

    result = detect_quote(html)

    assert result.main_content == "<div>Thanks</div>"
    assert result.quoted_content.startswith('<div id="yahoo_quoted_123"')


def test_own_quote_container_round_trips_through_detector() -> None:
    prior = ReplyRecord(
        id="r1",
        conversation_id="c1",
        sender_type=SenderType.USER,
        sender_email="user@example.com",
        content_text="",
        content_html=GMAIL_HTML,
        created_at=datetime(2024, 1, 5, 10, 30, tzinfo=timezone.utc),
        message_id="<m1@example.com>",
    )
    composed = compose_reply("Sounds good!", prior)

    result = detect_quote(composed.content_html)

    assert result.main_content == "<div>Sounds good!</div><br>"
    assert result.attribution == "On Fri, Jan 5, 2024 at 10:30 AM, <user@example.com> wrote:"
    assert result.quoted_content.startswith('<div class="email_quote_container">')


def test_rules_are_evaluated_in_priority_order() -> None:
    assert [rule.name for rule in QUOTE_RULES] == [
        "gmail_quote_container",
        "apple_mail_cite",
        "cite_blockquote",
        "gmail_quote",
        "on_wrote_text",
        "email_quote_container",
        "blockquote",
        "client_reply_div",
        "forwarded_header",
        "quoted_text_marker",
        "yahoo_quoted",
    ]
    assert [rule.fallback for rule in QUOTE_RULES[:3]] == [False, False, False]
    assert all(rule.fallback for rule in QUOTE_RULES[3:])
