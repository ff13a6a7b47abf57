import base64
import email

from supportdesk.services.gmail_service import (
    GmailService,
    _decode_gmail_body,
    _encode_reply,
    _gmail_header,
    reply_subject,
)


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii")


def test_demo_mode_when_credentials_missing() -> None:
    service = GmailService(enabled=True)

    messages = service.list_inbox_messages(max_results=10)

    assert service.is_available is True
    assert service.is_demo_mode is True
    assert [m.id for m in messages] == ["demo-101", "demo-102", "demo-103", "demo-104", "demo-105"]
    assert {m.thread_id for m in messages if m.id in {"demo-102", "demo-103"}} == {"thread-102"}


def test_demo_thread_and_message_lookup() -> None:
    service = GmailService(enabled=True)

    assert [m.id for m in service.get_thread("thread-102")] == ["demo-102", "demo-103"]
    assert service.get_message("demo-104").subject == "Question about invoices"
    assert service.get_message("missing") is None
    assert service.send_reply(thread_id="thread-101", to="dana@example.org", subject="Re: x", body="b")


def test_disabled_service_returns_empty_results() -> None:
    service = GmailService(enabled=False)

    assert service.is_available is False
    assert service.list_inbox_messages() == []
    assert service.get_thread("thread-101") == []
    assert service.send_reply(thread_id="t", to="a@b.c", subject="s", body="b") is False


def test_decode_gmail_body_prefers_plain_text() -> None:
    payload = {
        "parts": [
            {"mimeType": "text/html", "body": {"data": _b64("<p>html</p>")}},
            {"mimeType": "text/plain", "body": {"data": _b64("plain body")}},
        ]
    }

    assert _decode_gmail_body(payload) == "plain body"


def test_decode_gmail_body_falls_back_to_top_level_body() -> None:
    assert _decode_gmail_body({"body": {"data": _b64("top level")}}) == "top level"
    assert _decode_gmail_body({}) == ""


def test_gmail_header_is_case_insensitive() -> None:
    payload = {"headers": [{"name": "Message-ID", "value": "<abc@mail>"}]}

    assert _gmail_header(payload, "message-id") == "<abc@mail>"
    assert _gmail_header(payload, "References") == ""


def test_reply_subject_prefixes_once() -> None:
    assert reply_subject("Billing question") == "Re: Billing question"
    assert reply_subject("RE: Billing question") == "RE: Billing question"
    assert reply_subject("") == "Re: (no subject)"


def test_encoded_reply_carries_threading_headers() -> None:
    raw = _encode_reply(
        to="dana@example.org",
        subject="Re: Help",
        body="Answer",
        in_reply_to="<m1@mail>",
        references="<m0@mail> <m1@mail>",
    )
    padded = raw + "=" * (-len(raw) % 4)
    message = email.message_from_bytes(base64.urlsafe_b64decode(padded))

    assert message["To"] == "dana@example.org"
    assert message["In-Reply-To"] == "<m1@mail>"
    assert message["References"] == "<m0@mail> <m1@mail>"
