"""Email status transitions, thread de-duplication, and inbox tab buckets."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import replace
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Literal

from supportdesk.services.gmail_service import EmailMessage
from supportdesk.services.triage_store import EmailRecord

STATUS_PENDING = "pending"
STATUS_PROCESSED = "processed"
STATUS_REPLIED = "replied"
STATUS_REMOVED_FROM_READY = "removed_from_ready"
STATUS_NOT_RELEVANT = "not_relevant"

TERMINAL_STATUSES = {STATUS_REPLIED, STATUS_NOT_RELEVANT}

TAB_UNANSWERED = "unanswered"
TAB_READY = "ready"
TAB_REPLIED = "replied"
TAB_NOT_RELEVANT = "not_relevant"
INBOX_TABS = (TAB_UNANSWERED, TAB_READY, TAB_REPLIED, TAB_NOT_RELEVANT)

InboxTab = Literal["unanswered", "ready", "replied", "not_relevant"]

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    STATUS_PENDING: {STATUS_PROCESSED, STATUS_NOT_RELEVANT, STATUS_REPLIED},
    STATUS_PROCESSED: {STATUS_REPLIED, STATUS_REMOVED_FROM_READY, STATUS_NOT_RELEVANT, STATUS_PENDING},
    STATUS_REMOVED_FROM_READY: {STATUS_PROCESSED, STATUS_PENDING, STATUS_NOT_RELEVANT, STATUS_REPLIED},
    STATUS_NOT_RELEVANT: {STATUS_PENDING},
    STATUS_REPLIED: set(),
}


class InvalidTransitionError(ValueError):
    """Raised when an email status change is not part of the triage flow."""


def message_timestamp(message: EmailMessage) -> float:
    """Best-effort epoch seconds for a message date (Gmail internalDate, RFC 2822, or ISO)."""

    raw = (message.date or "").strip()
    if not raw:
        return 0.0
    if raw.isdigit():
        # Gmail internalDate is epoch milliseconds.
        return int(raw) / 1000.0
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
    except ValueError:
        pass
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp()


def dedupe_threads(messages: Iterable[EmailMessage]) -> list[EmailMessage]:
    """Keep the newest message per thread, newest threads first."""

    latest: dict[str, tuple[float, EmailMessage]] = {}
    for message in messages:
        key = message.thread_id or message.id
        ts = message_timestamp(message)
        current = latest.get(key)
        if current is None or ts > current[0]:
            latest[key] = (ts, message)
    ordered = sorted(latest.values(), key=lambda pair: pair[0], reverse=True)
    return [message for _, message in ordered]


def to_email_record(message: EmailMessage, *, user_id: str) -> EmailRecord:
    """Convert a fetched message into a pending inbox record keyed by thread."""

    ts = message_timestamp(message)
    received = datetime.fromtimestamp(ts, tz=UTC).isoformat() if ts else message.date
    return EmailRecord(
        id=message.thread_id or message.id,
        user_id=user_id,
        thread_id=message.thread_id or message.id,
        subject=message.subject,
        sender=message.sender,
        received_at=received,
        content=message.body or message.snippet,
        sort_timestamp=ts,
        message_id_header=message.message_id_header,
        references=message.references,
    )


def merge_emails(existing: Sequence[EmailRecord], incoming: Sequence[EmailRecord]) -> list[EmailRecord]:
    """Union by id, newest first; incoming fields win but a terminal status is never downgraded."""

    merged: dict[str, EmailRecord] = {e.id: e for e in existing}
    for email in incoming:
        current = merged.get(email.id)
        if current is None:
            merged[email.id] = email
            continue
        if current.status in TERMINAL_STATUSES or current.status == STATUS_REMOVED_FROM_READY:
            merged[email.id] = replace(
                email,
                status=current.status,
                is_replied=current.is_replied,
                is_not_relevant=current.is_not_relevant,
                irrelevance_reason=current.irrelevance_reason,
                irrelevance_category=current.irrelevance_category,
                suggested_reply=email.suggested_reply or current.suggested_reply,
                matched_faq_id=email.matched_faq_id or current.matched_faq_id,
            )
            continue
        merged[email.id] = email
    return sorted(merged.values(), key=lambda e: e.sort_timestamp, reverse=True)


def bucket_for(email: EmailRecord) -> InboxTab | None:
    """Inbox tab an email belongs to, or None when it is hidden from every tab."""

    if email.is_replied or email.status == STATUS_REPLIED:
        return TAB_REPLIED
    if email.is_not_relevant or email.status == STATUS_NOT_RELEVANT:
        return TAB_NOT_RELEVANT
    if email.status == STATUS_PROCESSED and email.matched_faq_id and email.suggested_reply:
        return TAB_READY
    if not email.matched_faq_id:
        return TAB_UNANSWERED
    return None


def bucket_counts(emails: Iterable[EmailRecord]) -> dict[str, int]:
    counts = {tab: 0 for tab in INBOX_TABS}
    for email in emails:
        tab = bucket_for(email)
        if tab is not None:
            counts[tab] += 1
    return counts


def filter_by_tab(emails: Iterable[EmailRecord], tab: str) -> list[EmailRecord]:
    return [email for email in emails if bucket_for(email) == tab]


def transition(email: EmailRecord, new_status: str) -> EmailRecord:
    """Return a copy of ``email`` in ``new_status`` with the boolean flags kept in step."""

    if new_status == email.status:
        return email
    allowed = ALLOWED_TRANSITIONS.get(email.status)
    if allowed is None:
        raise InvalidTransitionError(f"Unknown email status: {email.status!r}")
    if new_status not in allowed:
        raise InvalidTransitionError(f"Cannot move email from {email.status!r} to {new_status!r}")

    updated = replace(
        email,
        status=new_status,
        is_replied=new_status == STATUS_REPLIED,
        is_not_relevant=new_status == STATUS_NOT_RELEVANT,
    )
    if new_status == STATUS_PENDING:
        updated = replace(
            updated,
            irrelevance_reason=None,
            irrelevance_category=None,
        )
    return updated
