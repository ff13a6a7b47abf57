"""Persistence layer for triage data (SQLite locally, Firestore in production).

Everything is scoped per user: FAQs, inbox emails, cached LLM analyses,
not-relevant verdicts, settings, dispute templates, AI usage logs and the
user's Stripe key.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
import json
import logging
from pathlib import Path
import sqlite3
import uuid
from typing import Any, Protocol, TypeVar

logger = logging.getLogger(__name__)

AI_LOG_SORT_FIELDS = {"timestamp", "cost", "total_tokens", "function_name", "model", "status"}


@dataclass
class FAQRecord:
    """One answered (or still unanswered) FAQ entry in a user's knowledge base."""

    id: str
    user_id: str
    question: str
    answer: str = ""
    category: str = "General"
    instructions: str | None = None
    email_ids: list[str] = field(default_factory=list)
    similar_patterns: list[str] = field(default_factory=list)
    confidence: float = 1.0
    requires_customer_specific_info: bool = False
    use_count: int = 0
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_answered(self) -> bool:
        return bool(self.answer and self.answer.strip())


@dataclass
class EmailRecord:
    """Inbox email (one per thread) together with its triage state."""

    id: str
    user_id: str
    thread_id: str
    subject: str
    sender: str
    received_at: str
    content: str
    status: str = "pending"
    is_replied: bool = False
    is_not_relevant: bool = False
    matched_faq_id: str | None = None
    match_confidence: float | None = None
    suggested_reply: str | None = None
    questions: list[str] = field(default_factory=list)
    irrelevance_reason: str | None = None
    irrelevance_category: str | None = None
    sort_timestamp: float = 0.0
    message_id_header: str | None = None
    references: str | None = None


@dataclass
class EmailAnalysisRecord:
    """Cached LLM analysis of one thread."""

    user_id: str
    thread_id: str
    saved_at: str
    analysis: dict[str, Any]


@dataclass
class NotRelevantRecord:
    """Why an email was excluded from the support queue."""

    id: str
    user_id: str
    email_id: str
    reason: str
    category: str
    confidence: float
    details: str | None
    created_at: str


@dataclass
class AILogRecord:
    """Token usage and cost for one LLM call."""

    id: str
    user_id: str
    function_name: str
    timestamp: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: float
    status: str
    error: str | None = None


_R = TypeVar("_R")


def _record_from_dict(cls: type[_R], data: dict[str, Any]) -> _R:
    """Build a record dataclass from a stored mapping, ignoring unknown keys."""

    names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    return cls(**{k: v for k, v in data.items() if k in names})


def merge_faq_upsert(
    existing: FAQRecord | None,
    *,
    user_id: str,
    question: str,
    answer: str,
    category: str | None = None,
    instructions: str | None = None,
    email_ids: list[str] | None = None,
    similar_patterns: list[str] | None = None,
    requires_customer_specific_info: bool = False,
    faq_id: str | None = None,
) -> FAQRecord:
    """Merge an upsert payload into an existing FAQ, preserving created_at and use_count.

    New FAQs always get a fresh id; a ``faq_id`` that matched nothing is not reused.
    """

    now = utc_now_iso()
    if existing is None:
        return FAQRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            question=question.strip(),
            answer=answer.strip(),
            category=category or "General",
            instructions=instructions,
            email_ids=list(dict.fromkeys(email_ids or [])),
            similar_patterns=list(similar_patterns or []),
            confidence=1.0,
            requires_customer_specific_info=requires_customer_specific_info,
            use_count=0,
            created_at=now,
            updated_at=now,
        )
    return FAQRecord(
        id=existing.id,
        user_id=user_id,
        question=question.strip() or existing.question,
        answer=answer.strip(),
        category=category or existing.category,
        instructions=instructions if instructions is not None else existing.instructions,
        email_ids=list(dict.fromkeys([*existing.email_ids, *(email_ids or [])])),
        similar_patterns=list(
            dict.fromkeys([*existing.similar_patterns, *(similar_patterns or [])])
        ),
        confidence=1.0,
        requires_customer_specific_info=requires_customer_specific_info,
        use_count=existing.use_count,
        created_at=existing.created_at or now,
        updated_at=now,
    )


def find_existing_faq(
    faqs: list[FAQRecord],
    *,
    faq_id: str | None,
    question: str,
) -> FAQRecord | None:
    """Locate the FAQ an upsert targets: by id first, then by exact question text."""

    if faq_id:
        for faq in faqs:
            if faq.id == faq_id:
                return faq
    wanted = question.strip()
    for faq in faqs:
        if faq.question.strip() == wanted:
            return faq
    return None


class TriageStore(Protocol):
    """Store contract used by the triage pipeline and the HTTP API."""

    def list_faqs(self, user_id: str) -> list[FAQRecord]:
        """Return every FAQ for the user, oldest first."""

    def upsert_faq(self, user_id: str, **payload: Any) -> FAQRecord:
        """Create or update one FAQ (matched by id, then by question)."""

    def delete_faq(self, user_id: str, faq_id: str) -> bool:
        """Delete an FAQ and report whether it existed."""

    def increment_faq_use(self, user_id: str, faq_id: str) -> None:
        """Bump the use counter after a reply built from the FAQ is sent."""

    def save_emails(self, user_id: str, emails: list[EmailRecord]) -> int:
        """Insert or overwrite emails by id and return the written count."""

    def list_emails(self, user_id: str) -> list[EmailRecord]:
        """Return stored emails, newest first."""

    def get_email(self, user_id: str, email_id: str) -> EmailRecord | None:
        """Return one stored email."""

    def update_email(self, email: EmailRecord) -> EmailRecord:
        """Overwrite one email (status changes, sent replies) and return it."""

    def get_analysis(self, user_id: str, thread_id: str) -> EmailAnalysisRecord | None:
        """Return cached analysis for a thread, regardless of age."""

    def save_analysis(self, record: EmailAnalysisRecord) -> None:
        """Persist analysis for a thread."""

    def add_not_relevant(self, record: NotRelevantRecord) -> None:
        """Persist a not-relevant verdict."""

    def list_not_relevant_ids(self, user_id: str) -> set[str]:
        """Return email ids marked as not relevant."""

    def remove_not_relevant(self, user_id: str, email_id: str) -> None:
        """Drop not-relevant verdicts for an email (restore)."""

    def get_user_settings(self, user_id: str) -> dict[str, Any]:
        """Return stored user settings (empty when never saved)."""

    def save_user_settings(self, user_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Merge updates into stored settings and return the result."""

    def get_email_templates(self, user_id: str) -> list[dict[str, Any]]:
        """Return stored dispute template overrides."""

    def save_email_templates(self, user_id: str, templates: list[dict[str, Any]]) -> None:
        """Replace dispute template overrides."""

    def insert_ai_log(self, record: AILogRecord) -> None:
        """Persist one AI usage log entry."""

    def list_ai_logs(
        self,
        user_id: str,
        *,
        sort_field: str = "timestamp",
        descending: bool = True,
        limit: int = 100,
    ) -> list[AILogRecord]:
        """Return AI usage log entries in the requested order."""

    def get_stripe_key(self, user_id: str) -> str | None:
        """Return the user's Stripe secret key."""

    def set_stripe_key(self, user_id: str, api_key: str) -> None:
        """Store the user's Stripe secret key."""

    def delete_stripe_key(self, user_id: str) -> bool:
        """Delete the user's Stripe key and report whether it existed."""


class SqliteTriageStore:
    """SQLite-backed implementation for local development and testing."""

    def __init__(self, *, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        """Open a SQLite connection with Row access for named column parsing."""

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        """Create tables when missing."""

        ddl = """
        CREATE TABLE IF NOT EXISTS faqs (
            user_id TEXT NOT NULL,
            id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            data_json TEXT NOT NULL,
            PRIMARY KEY (user_id, id)
        );
        CREATE INDEX IF NOT EXISTS idx_faqs_user ON faqs(user_id, created_at);
        CREATE TABLE IF NOT EXISTS emails (
            user_id TEXT NOT NULL,
            id TEXT NOT NULL,
            sort_timestamp REAL NOT NULL,
            data_json TEXT NOT NULL,
            PRIMARY KEY (user_id, id)
        );
        CREATE TABLE IF NOT EXISTS email_analyses (
            user_id TEXT NOT NULL,
            thread_id TEXT NOT NULL,
            saved_at TEXT NOT NULL,
            analysis_json TEXT NOT NULL,
            PRIMARY KEY (user_id, thread_id)
        );
        CREATE TABLE IF NOT EXISTS not_relevant (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            email_id TEXT NOT NULL,
            data_json TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_not_relevant_user ON not_relevant(user_id, email_id);
        CREATE TABLE IF NOT EXISTS user_settings (
            user_id TEXT PRIMARY KEY,
            settings_json TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS email_templates (
            user_id TEXT PRIMARY KEY,
            templates_json TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS ai_logs (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            function_name TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            model TEXT NOT NULL,
            input_tokens INTEGER NOT NULL,
            output_tokens INTEGER NOT NULL,
            total_tokens INTEGER NOT NULL,
            cost REAL NOT NULL,
            status TEXT NOT NULL,
            error TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_ai_logs_user_time ON ai_logs(user_id, timestamp DESC);
        CREATE TABLE IF NOT EXISTS stripe_keys (
            user_id TEXT PRIMARY KEY,
            api_key TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._connect() as conn:
            conn.executescript(ddl)
            conn.commit()

    # -- FAQs ----------------------------------------------------------------------

    def list_faqs(self, user_id: str) -> list[FAQRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data_json FROM faqs WHERE user_id = ? ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [_record_from_dict(FAQRecord, json.loads(row["data_json"])) for row in rows]

    def upsert_faq(self, user_id: str, **payload: Any) -> FAQRecord:
        existing = find_existing_faq(
            self.list_faqs(user_id),
            faq_id=payload.get("faq_id"),
            question=payload.get("question", ""),
        )
        record = merge_faq_upsert(existing, user_id=user_id, **payload)
        self._write_faq(record)
        return record

    def _write_faq(self, record: FAQRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO faqs (id, user_id, created_at, data_json) VALUES (?, ?, ?, ?)",
                (record.id, record.user_id, record.created_at, json.dumps(asdict(record))),
            )
            conn.commit()

    def delete_faq(self, user_id: str, faq_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM faqs WHERE user_id = ? AND id = ?", (user_id, faq_id))
            conn.commit()
            return cur.rowcount > 0

    def increment_faq_use(self, user_id: str, faq_id: str) -> None:
        for faq in self.list_faqs(user_id):
            if faq.id == faq_id:
                faq.use_count += 1
                faq.updated_at = utc_now_iso()
                self._write_faq(faq)
                return

    # -- Emails --------------------------------------------------------------------

    def save_emails(self, user_id: str, emails: list[EmailRecord]) -> int:
        if not emails:
            return 0
        rows = [
            (user_id, e.id, float(e.sort_timestamp or 0.0), json.dumps(asdict(e)))
            for e in emails
        ]
        with self._connect() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO emails (user_id, id, sort_timestamp, data_json) VALUES (?, ?, ?, ?)",
                rows,
            )
            conn.commit()
        return len(rows)

    def list_emails(self, user_id: str) -> list[EmailRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data_json FROM emails WHERE user_id = ? ORDER BY sort_timestamp DESC",
                (user_id,),
            ).fetchall()
        return [_record_from_dict(EmailRecord, json.loads(row["data_json"])) for row in rows]

    def get_email(self, user_id: str, email_id: str) -> EmailRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data_json FROM emails WHERE user_id = ? AND id = ?",
                (user_id, email_id),
            ).fetchone()
        if row is None:
            return None
        return _record_from_dict(EmailRecord, json.loads(row["data_json"]))

    def update_email(self, email: EmailRecord) -> EmailRecord:
        self.save_emails(email.user_id, [email])
        return email

    # -- Analyses ------------------------------------------------------------------

    def get_analysis(self, user_id: str, thread_id: str) -> EmailAnalysisRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT saved_at, analysis_json FROM email_analyses WHERE user_id = ? AND thread_id = ?",
                (user_id, thread_id),
            ).fetchone()
        if row is None:
            return None
        return EmailAnalysisRecord(
            user_id=user_id,
            thread_id=thread_id,
            saved_at=row["saved_at"],
            analysis=json.loads(row["analysis_json"] or "{}"),
        )

    def save_analysis(self, record: EmailAnalysisRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO email_analyses (user_id, thread_id, saved_at, analysis_json)
                VALUES (?, ?, ?, ?)
                """,
                (
                    record.user_id,
                    record.thread_id,
                    record.saved_at,
                    json.dumps(record.analysis, ensure_ascii=True),
                ),
            )
            conn.commit()

    # -- Not relevant --------------------------------------------------------------

    def add_not_relevant(self, record: NotRelevantRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO not_relevant (id, user_id, email_id, data_json) VALUES (?, ?, ?, ?)",
                (record.id, record.user_id, record.email_id, json.dumps(asdict(record))),
            )
            conn.commit()

    def list_not_relevant_ids(self, user_id: str) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT email_id FROM not_relevant WHERE user_id = ?",
                (user_id,),
            ).fetchall()
        return {row["email_id"] for row in rows}

    def remove_not_relevant(self, user_id: str, email_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM not_relevant WHERE user_id = ? AND email_id = ?",
                (user_id, email_id),
            )
            conn.commit()

    # -- Settings and templates ----------------------------------------------------

    def get_user_settings(self, user_id: str) -> dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT settings_json FROM user_settings WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return json.loads(row["settings_json"]) if row else {}

    def save_user_settings(self, user_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        merged = {**self.get_user_settings(user_id), **updates, "updated_at": utc_now_iso()}
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO user_settings (user_id, settings_json) VALUES (?, ?)",
                (user_id, json.dumps(merged)),
            )
            conn.commit()
        return merged

    def get_email_templates(self, user_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT templates_json FROM email_templates WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return json.loads(row["templates_json"]) if row else []

    def save_email_templates(self, user_id: str, templates: list[dict[str, Any]]) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO email_templates (user_id, templates_json) VALUES (?, ?)",
                (user_id, json.dumps(templates)),
            )
            conn.commit()

    # -- AI logs -------------------------------------------------------------------

    def insert_ai_log(self, record: AILogRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO ai_logs (
                    id, user_id, function_name, timestamp, model, input_tokens,
                    output_tokens, total_tokens, cost, status, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.user_id,
                    record.function_name,
                    record.timestamp,
                    record.model,
                    record.input_tokens,
                    record.output_tokens,
                    record.total_tokens,
                    record.cost,
                    record.status,
                    record.error,
                ),
            )
            conn.commit()

    def list_ai_logs(
        self,
        user_id: str,
        *,
        sort_field: str = "timestamp",
        descending: bool = True,
        limit: int = 100,
    ) -> list[AILogRecord]:
        if sort_field not in AI_LOG_SORT_FIELDS:
            sort_field = "timestamp"
        direction = "DESC" if descending else "ASC"
        sql = f"""
        SELECT id, user_id, function_name, timestamp, model, input_tokens,
               output_tokens, total_tokens, cost, status, error
        FROM ai_logs
        WHERE user_id = ?
        ORDER BY {sort_field} {direction}
        LIMIT ?
        """
        with self._connect() as conn:
            rows = conn.execute(sql, (user_id, max(1, int(limit)))).fetchall()
        return [_record_from_dict(AILogRecord, dict(row)) for row in rows]

    # -- Stripe keys ---------------------------------------------------------------

    def get_stripe_key(self, user_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT api_key FROM stripe_keys WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return row["api_key"] if row else None

    def set_stripe_key(self, user_id: str, api_key: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO stripe_keys (user_id, api_key, updated_at) VALUES (?, ?, ?)",
                (user_id, api_key, utc_now_iso()),
            )
            conn.commit()

    def delete_stripe_key(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM stripe_keys WHERE user_id = ?", (user_id,))
            conn.commit()
            return cur.rowcount > 0


class FirestoreTriageStore:
    """Firestore-backed implementation used when Firebase is configured.

    Documents live under ``users/{user_id}/<collection>``.
    """

    def __init__(self, *, client: Any) -> None:
        self._client = client

    def _col(self, user_id: str, name: str):  # type: ignore[no-untyped-def]
        return self._client.collection("users").document(user_id).collection(name)

    def _user_doc(self, user_id: str, name: str):  # type: ignore[no-untyped-def]
        return self._client.collection("users").document(user_id).collection("meta").document(name)

    # -- FAQs ----------------------------------------------------------------------

    def list_faqs(self, user_id: str) -> list[FAQRecord]:
        faqs = [
            _record_from_dict(FAQRecord, doc.to_dict() or {})
            for doc in self._col(user_id, "faqs").stream()
        ]
        return sorted(faqs, key=lambda f: f.created_at)

    def upsert_faq(self, user_id: str, **payload: Any) -> FAQRecord:
        existing = find_existing_faq(
            self.list_faqs(user_id),
            faq_id=payload.get("faq_id"),
            question=payload.get("question", ""),
        )
        record = merge_faq_upsert(existing, user_id=user_id, **payload)
        self._col(user_id, "faqs").document(record.id).set(asdict(record))
        return record

    def delete_faq(self, user_id: str, faq_id: str) -> bool:
        ref = self._col(user_id, "faqs").document(faq_id)
        if not ref.get().exists:
            return False
        ref.delete()
        return True

    def increment_faq_use(self, user_id: str, faq_id: str) -> None:
        ref = self._col(user_id, "faqs").document(faq_id)
        snapshot = ref.get()
        if not snapshot.exists:
            return
        data = snapshot.to_dict() or {}
        ref.update(
            {
                "use_count": int(data.get("use_count", 0)) + 1,
                "updated_at": utc_now_iso(),
            }
        )

    # -- Emails --------------------------------------------------------------------

    def save_emails(self, user_id: str, emails: list[EmailRecord]) -> int:
        col = self._col(user_id, "emails")
        for email in emails:
            col.document(email.id).set(asdict(email))
        return len(emails)

    def list_emails(self, user_id: str) -> list[EmailRecord]:
        emails = [
            _record_from_dict(EmailRecord, doc.to_dict() or {})
            for doc in self._col(user_id, "emails").stream()
        ]
        return sorted(emails, key=lambda e: e.sort_timestamp, reverse=True)

    def get_email(self, user_id: str, email_id: str) -> EmailRecord | None:
        snapshot = self._col(user_id, "emails").document(email_id).get()
        if not snapshot.exists:
            return None
        return _record_from_dict(EmailRecord, snapshot.to_dict() or {})

    def update_email(self, email: EmailRecord) -> EmailRecord:
        self.save_emails(email.user_id, [email])
        return email

    # -- Analyses ------------------------------------------------------------------

    def get_analysis(self, user_id: str, thread_id: str) -> EmailAnalysisRecord | None:
        snapshot = self._col(user_id, "email_analyses").document(thread_id).get()
        if not snapshot.exists:
            return None
        data = snapshot.to_dict() or {}
        return EmailAnalysisRecord(
            user_id=user_id,
            thread_id=thread_id,
            saved_at=str(data.get("saved_at", "")),
            analysis=dict(data.get("analysis") or {}),
        )

    def save_analysis(self, record: EmailAnalysisRecord) -> None:
        self._col(record.user_id, "email_analyses").document(record.thread_id).set(asdict(record))

    # -- Not relevant --------------------------------------------------------------

    def add_not_relevant(self, record: NotRelevantRecord) -> None:
        self._col(record.user_id, "not_relevant").document(record.id).set(asdict(record))

    def list_not_relevant_ids(self, user_id: str) -> set[str]:
        return {
            (doc.to_dict() or {}).get("email_id", "")
            for doc in self._col(user_id, "not_relevant").stream()
        } - {""}

    def remove_not_relevant(self, user_id: str, email_id: str) -> None:
        col = self._col(user_id, "not_relevant")
        for doc in col.where("email_id", "==", email_id).stream():
            col.document(doc.id).delete()

    # -- Settings and templates ----------------------------------------------------

    def get_user_settings(self, user_id: str) -> dict[str, Any]:
        snapshot = self._user_doc(user_id, "settings").get()
        return (snapshot.to_dict() or {}) if snapshot.exists else {}

    def save_user_settings(self, user_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        payload = {**updates, "updated_at": utc_now_iso()}
        self._user_doc(user_id, "settings").set(payload, merge=True)
        return {**self.get_user_settings(user_id), **payload}

    def get_email_templates(self, user_id: str) -> list[dict[str, Any]]:
        snapshot = self._user_doc(user_id, "email_templates").get()
        if not snapshot.exists:
            return []
        return list((snapshot.to_dict() or {}).get("templates") or [])

    def save_email_templates(self, user_id: str, templates: list[dict[str, Any]]) -> None:
        self._user_doc(user_id, "email_templates").set(
            {"templates": templates, "updated_at": utc_now_iso()}
        )

    # -- AI logs -------------------------------------------------------------------

    def insert_ai_log(self, record: AILogRecord) -> None:
        self._col(record.user_id, "ai_logs").document(record.id).set(asdict(record))

    def list_ai_logs(
        self,
        user_id: str,
        *,
        sort_field: str = "timestamp",
        descending: bool = True,
        limit: int = 100,
    ) -> list[AILogRecord]:
        if sort_field not in AI_LOG_SORT_FIELDS:
            sort_field = "timestamp"
        query = (
            self._col(user_id, "ai_logs")
            .order_by(sort_field, direction="DESCENDING" if descending else "ASCENDING")
            .limit(max(1, int(limit)))
        )
        return [_record_from_dict(AILogRecord, doc.to_dict() or {}) for doc in query.stream()]

    # -- Stripe keys ---------------------------------------------------------------

    def get_stripe_key(self, user_id: str) -> str | None:
        snapshot = self._user_doc(user_id, "stripe").get()
        if not snapshot.exists:
            return None
        return (snapshot.to_dict() or {}).get("api_key") or None

    def set_stripe_key(self, user_id: str, api_key: str) -> None:
        self._user_doc(user_id, "stripe").set({"api_key": api_key, "updated_at": utc_now_iso()})

    def delete_stripe_key(self, user_id: str) -> bool:
        ref = self._user_doc(user_id, "stripe")
        if not ref.get().exists:
            return False
        ref.delete()
        return True


def create_triage_store(
    *,
    firestore_client: Any | None,
    sqlite_path: str,
) -> TriageStore:
    """Factory selecting Firestore when a client is available, otherwise SQLite."""

    if firestore_client is not None:
        logger.info("Triage store backend: firestore")
        return FirestoreTriageStore(client=firestore_client)
    logger.info("Triage store backend: sqlite (%s)", sqlite_path)
    return SqliteTriageStore(db_path=sqlite_path)


def build_record_id(*parts: str) -> str:
    """Build a stable id from content parts so repeated writes stay idempotent."""

    seed = "|".join(p.strip().lower() for p in parts)
    return str(uuid.uuid5(uuid.NAMESPACE_URL, seed))


def utc_now_iso() -> str:
    """Return current UTC timestamp in ISO-8601 format."""

    return datetime.now(tz=UTC).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO timestamp into an aware UTC datetime (None when invalid)."""

    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
