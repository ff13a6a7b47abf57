"""Gmail adapter service for support-inbox ingestion and replies.

Supports three modes:
- **Gmail API**: direct REST API calls with an OAuth2 refresh token.
- **Demo**: returns sample customer-support emails for development/testing.
- **Disabled**: returns empty results when the mail feature is off.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from typing import Any

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.modify",
]
DEFAULT_INBOX_QUERY = "in:inbox -from:me"

_DEMO_EMAILS: list[dict[str, Any]] = [
    {
        "id": "demo-101",
        "thread_id": "thread-101",
        "from": "Dana Cole <dana@example.org>",
        "to": "support@example.com",
        "subject": "How do I cancel my subscription?",
        "snippet": "Hi, I need help. How do I cancel my subscription before the next billing date?",
        "body": (
            "Hi,\n\n"
            "I need help with my account. How do I cancel my subscription before "
            "the next billing date?\n\n"
            "Thanks,\nDana"
        ),
        "date": "2026-02-22T10:30:00Z",
        "labels": ["INBOX", "UNREAD"],
    },
    {
        "id": "demo-102",
        "thread_id": "thread-102",
        "from": "Sam Ortiz <sam.ortiz@example.net>",
        "to": "support@example.com",
        "subject": "Password reset not working",
        "snippet": "The reset link is broken. How do I reset my password?",
        "body": (
            "Hello support,\n\n"
            "The password reset link you sent is broken and I'm stuck on the login page. "
            "How do I reset my password?\n\n"
            "Sam"
        ),
        "date": "2026-02-21T14:00:00Z",
        "labels": ["INBOX", "UNREAD"],
    },
    {
        "id": "demo-103",
        "thread_id": "thread-102",
        "from": "Sam Ortiz <sam.ortiz@example.net>",
        "to": "support@example.com",
        "subject": "Re: Password reset not working",
        "snippet": "Following up, I still cannot log in. How do I reset my password?",
        "body": (
            "Following up on my earlier email: I still cannot log in. "
            "How do I reset my password?\n\nSam"
        ),
        "date": "2026-02-21T18:20:00Z",
        "labels": ["INBOX", "UNREAD"],
    },
    {
        "id": "demo-104",
        "thread_id": "thread-104",
        "from": "Priya Nair <priya@example.com>",
        "to": "support@example.com",
        "subject": "Question about invoices",
        "snippet": "Where can I download past invoices for my payment history?",
        "body": (
            "Hi team,\n\n"
            "Quick question: where can I download past invoices for my payment history? "
            "Our finance department needs them.\n\nBest,\nPriya"
        ),
        "date": "2026-02-20T09:15:00Z",
        "labels": ["INBOX"],
    },
    {
        "id": "demo-105",
        "thread_id": "thread-105",
        "from": "promo@newsletter.com",
        "to": "support@example.com",
        "subject": "Weekly deals just for you!",
        "snippet": "Check out this week's best deals on office supplies...",
        "body": "Check out this week's best deals on office supplies and gadgets!",
        "date": "2026-02-18T08:00:00Z",
        "labels": ["INBOX", "UNREAD"],
    },
]


@dataclass
class EmailMessage:
    """Standardized email representation."""

    id: str
    thread_id: str
    sender: str
    recipient: str
    subject: str
    snippet: str
    body: str
    date: str
    labels: list[str] = field(default_factory=list)
    message_id_header: str | None = None  # RFC Message-ID for reply threading
    references: str | None = None  # RFC References for reply threading


def _b64_text(data: str) -> str:
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        return ""


def _walk_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Flatten nested multipart payloads depth-first."""
    flat: list[dict[str, Any]] = []
    for part in payload.get("parts") or []:
        flat.append(part)
        flat.extend(_walk_parts(part))
    return flat


def _decode_gmail_body(payload: dict[str, Any]) -> str:
    """Best body text: any text/plain part, else any text/html part, else the top-level body."""
    if not payload:
        return ""
    parts = _walk_parts(payload)
    for wanted in ("text/plain", "text/html"):
        for part in parts:
            if part.get("mimeType") != wanted:
                continue
            text = _b64_text((part.get("body") or {}).get("data") or "")
            if text:
                return text
    return _b64_text((payload.get("body") or {}).get("data") or "")


def _gmail_header(payload: dict[str, Any], name: str) -> str:
    """Case-insensitive header lookup on a Gmail API payload."""
    headers = {
        str(h.get("name", "")).lower(): str(h.get("value", ""))
        for h in payload.get("headers") or []
    }
    return headers.get(name.lower(), "")


def parse_gmail_message(msg: dict[str, Any]) -> EmailMessage:
    """Map a ``format=full`` Gmail API message onto an EmailMessage."""
    payload = msg.get("payload") or {}
    snippet = msg.get("snippet") or ""
    return EmailMessage(
        id=msg.get("id", ""),
        thread_id=msg.get("threadId", ""),
        sender=_gmail_header(payload, "From"),
        recipient=_gmail_header(payload, "To"),
        subject=_gmail_header(payload, "Subject"),
        snippet=snippet[:200],
        body=_decode_gmail_body(payload) or snippet,
        # internalDate is epoch milliseconds; the Date header is the fallback.
        date=msg.get("internalDate") or _gmail_header(payload, "Date"),
        labels=list(msg.get("labelIds") or []),
        message_id_header=_gmail_header(payload, "Message-ID") or None,
        references=_gmail_header(payload, "References") or None,
    )


def _encode_reply(
    *,
    to: str,
    subject: str,
    body: str,
    in_reply_to: str | None = None,
    references: str | None = None,
) -> str:
    mime = MIMEText(body, "plain", "utf-8")
    mime["To"] = to
    mime["Subject"] = subject
    if in_reply_to:
        mime["In-Reply-To"] = in_reply_to
    if references:
        mime["References"] = references
    return base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii").rstrip("=")


def reply_subject(subject: str) -> str:
    """Prefix ``Re:`` once."""
    subject = (subject or "").strip() or "(no subject)"
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}"


class _GmailApiClient:
    """Thin wrapper over the Gmail v1 resource for the authorized mailbox ("me")."""

    def __init__(self, *, client_id: str, client_secret: str, refresh_token: str) -> None:
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri="https://oauth2.googleapis.com/token",
            client_id=client_id,
            client_secret=client_secret,
            scopes=GMAIL_SCOPES,
        )
        self._resource = build("gmail", "v1", credentials=creds, cache_discovery=False)

    def _run(self, request: Any, action: str) -> dict[str, Any] | None:
        try:
            return request.execute()
        except HttpError as exc:
            logger.error("Gmail API %s failed: %s", action, exc)
            return None

    def _messages(self) -> Any:
        return self._resource.users().messages()

    def list_messages(self, *, query: str, max_results: int) -> list[EmailMessage]:
        listing = self._run(
            self._messages().list(userId="me", q=query, maxResults=max_results),
            "list messages",
        )
        found: list[EmailMessage] = []
        for ref in (listing or {}).get("messages", []):
            message = self.get_message(ref.get("id") or "")
            if message is not None:
                found.append(message)
        return found

    def get_message(self, message_id: str) -> EmailMessage | None:
        if not message_id:
            return None
        raw = self._run(
            self._messages().get(userId="me", id=message_id, format="full"),
            f"get message {message_id}",
        )
        return parse_gmail_message(raw) if raw else None

    def get_thread(self, thread_id: str) -> list[EmailMessage]:
        thread = self._run(
            self._resource.users().threads().get(userId="me", id=thread_id, format="full"),
            f"get thread {thread_id}",
        )
        return [parse_gmail_message(m) for m in (thread or {}).get("messages", [])]

    def send(self, *, raw: str, thread_id: str) -> bool:
        sent = self._run(
            self._messages().send(userId="me", body={"raw": raw, "threadId": thread_id}),
            f"send reply in thread {thread_id}",
        )
        return sent is not None


def _demo_message(raw: dict[str, Any]) -> EmailMessage:
    return EmailMessage(
        id=raw["id"],
        thread_id=raw["thread_id"],
        sender=raw["from"],
        recipient=raw["to"],
        subject=raw["subject"],
        snippet=raw["snippet"],
        body=raw["body"],
        date=raw["date"],
        labels=list(raw.get("labels", [])),
    )


class GmailService:
    """Adapter for Gmail email operations.

    - **Gmail API mode**: OAuth2 refresh token from env vars.
    - **Demo mode**: sample support emails (tests/fallback).
    - **Disabled**: ``enabled=False`` -> all methods return empty results.
    """

    def __init__(
        self,
        *,
        enabled: bool = False,
        gmail_client_id: str | None = None,
        gmail_client_secret: str | None = None,
        gmail_refresh_token: str | None = None,
        inbox_query: str = DEFAULT_INBOX_QUERY,
    ) -> None:
        self._enabled = enabled
        self._inbox_query = inbox_query
        self._api: _GmailApiClient | None = None

        if enabled and gmail_client_id and gmail_client_secret and gmail_refresh_token:
            try:
                self._api = _GmailApiClient(
                    client_id=gmail_client_id.strip(),
                    client_secret=gmail_client_secret.strip(),
                    refresh_token=gmail_refresh_token.strip(),
                )
            except Exception as exc:
                logger.warning("Gmail API init error, falling back to demo mode: %s", exc)
        if enabled:
            logger.info("GmailService running in %s mode", "demo" if self._api is None else "Gmail API")

    @property
    def is_available(self) -> bool:
        return self._enabled

    @property
    def is_demo_mode(self) -> bool:
        return self._api is None

    def list_inbox_messages(self, max_results: int = 25) -> list[EmailMessage]:
        """Fetch recent inbox messages (several may share a thread)."""
        if not self._enabled:
            return []
        if self._api is not None:
            return self._api.list_messages(query=self._inbox_query, max_results=max_results)
        return [_demo_message(raw) for raw in _DEMO_EMAILS[:max_results]]

    def get_message(self, message_id: str) -> EmailMessage | None:
        if not self._enabled:
            return None
        if self._api is not None:
            return self._api.get_message(message_id)
        return next((_demo_message(r) for r in _DEMO_EMAILS if r["id"] == message_id), None)

    def get_thread(self, thread_id: str) -> list[EmailMessage]:
        """Every message in a thread, oldest first."""
        if not self._enabled:
            return []
        if self._api is not None:
            return self._api.get_thread(thread_id)
        return [_demo_message(r) for r in _DEMO_EMAILS if r["thread_id"] == thread_id]

    def send_reply(
        self,
        *,
        thread_id: str,
        to: str,
        subject: str,
        body: str,
        in_reply_to: str | None = None,
        references: str | None = None,
    ) -> bool:
        """Send a reply in the customer's thread. Demo mode accepts without sending."""
        if not self._enabled:
            return False
        if self._api is None:
            logger.debug("Demo mode: would send reply in thread %s", thread_id)
            return True
        raw = _encode_reply(
            to=to,
            subject=subject,
            body=body,
            in_reply_to=in_reply_to,
            references=references,
        )
        return self._api.send(raw=raw, thread_id=thread_id)
