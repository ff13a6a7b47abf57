from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest

from supportdesk.agents.relevance_agent import (
    MAX_CONTENT_CHARS,
    RelevanceAgent,
    truncate_for_prompt,
)
from supportdesk.services.ai_usage_log import AIUsageLogger
from supportdesk.services.chat_service import ChatJsonResult, TokenUsage
from supportdesk.services.inbox_state import STATUS_REPLIED, InvalidTransitionError
from supportdesk.services.triage_store import EmailRecord, SqliteTriageStore

USER = "agent@example.com"


@dataclass
class DummyChatService:
    available: bool = True
    data: dict[str, Any] | None = None
    calls: int = 0
    last_prompt: str = ""

    @property
    def is_available(self) -> bool:
        return self.available

    @property
    def model(self) -> str:
        return "gpt-4o-mini"

    def generate_json(self, *, system_prompt: str, user_prompt: str) -> ChatJsonResult:
        self.calls += 1
        self.last_prompt = user_prompt
        if self.data is None:
            raise RuntimeError("provider timeout")
        return ChatJsonResult(data=dict(self.data), usage=TokenUsage(50, 10, 60), model=self.model)


@pytest.fixture
def store(tmp_path) -> SqliteTriageStore:
    store = SqliteTriageStore(db_path=str(tmp_path / "triage.db"))
    store.save_emails(
        USER,
        [
            EmailRecord(
                id="thread-105",
                user_id=USER,
                thread_id="thread-105",
                subject="Weekly deals just for you!",
                sender="promo@newsletter.com",
                received_at="2026-02-18T08:00:00+00:00",
                content="Check out this week's best deals on office supplies and gadgets!",
                matched_faq_id="faq-1",
                suggested_reply="Hi there",
            )
        ],
    )
    return store


def _agent(store, chat: DummyChatService) -> RelevanceAgent:
    return RelevanceAgent(chat_service=chat, store=store, usage_logger=AIUsageLogger(store=store))


class TestTruncateForPrompt:
    def test_short_text_is_untouched(self) -> None:
        assert truncate_for_prompt("Hello", "Body") == ("Hello", "Body")

    def test_long_subject_is_clipped(self) -> None:
        subject, _ = truncate_for_prompt("s" * 150, "")

        assert subject == "s" * 100 + "..."

    def test_long_content_keeps_head_and_tail(self) -> None:
        content = "h" * 3000 + "t" * 2000

        _, clipped = truncate_for_prompt("", content)

        assert clipped.startswith("h" * 2400 + "\n\n[... 1000 characters truncated ...]\n\n")
        assert clipped.endswith("t" * 1600)
        assert len(content) - MAX_CONTENT_CHARS == 1000


class TestMarkNotRelevant:
    def test_llm_verdict_is_recorded(self, store) -> None:
        chat = DummyChatService(
            data={"reason": "Marketing newsletter", "category": "Spam", "confidence": 1.4, "details": "Promo"}
        )

        email, steps = _agent(store, chat).mark_not_relevant(user_id=USER, email_id="thread-105")

        assert email.is_not_relevant is True
        assert email.irrelevance_reason == "Marketing newsletter"
        assert email.irrelevance_category == "spam"
        assert steps[0].response["confidence"] == 1.0
        assert steps[0].prompt["source"] == "llm"
        assert "Weekly deals" in chat.last_prompt
        assert store.list_not_relevant_ids(USER) == {"thread-105"}
        assert store.get_email(USER, "thread-105").status == "not_relevant"
        assert [log.function_name for log in store.list_ai_logs(USER)] == ["analyze_irrelevant"]

    def test_caller_reason_skips_llm(self, store) -> None:
        chat = DummyChatService()

        email, steps = _agent(store, chat).mark_not_relevant(
            user_id=USER, email_id="thread-105", reason="Vendor newsletter"
        )

        assert chat.calls == 0
        assert email.irrelevance_reason == "Vendor newsletter"
        assert email.irrelevance_category == "other"
        assert steps[0].prompt["source"] == "caller"

    def test_unknown_category_and_failure_fall_back(self, store) -> None:
        failing = DummyChatService(data=None)

        email, _ = _agent(store, failing).mark_not_relevant(user_id=USER, email_id="thread-105")

        assert email.irrelevance_reason == "Marked as not relevant"
        assert email.irrelevance_category == "other"
        assert store.list_ai_logs(USER)[0].status == "failed"

    def test_missing_email(self, store) -> None:
        with pytest.raises(KeyError):
            _agent(store, DummyChatService()).mark_not_relevant(user_id=USER, email_id="nope")

    def test_replied_email_cannot_be_marked(self, store) -> None:
        email = store.get_email(USER, "thread-105")
        store.update_email(EmailRecord(**{**email.__dict__, "status": STATUS_REPLIED, "is_replied": True}))

        with pytest.raises(InvalidTransitionError):
            _agent(store, DummyChatService()).mark_not_relevant(
                user_id=USER, email_id="thread-105", reason="x"
            )


class TestRestore:
    def test_restore_returns_email_to_unanswered(self, store) -> None:
        agent = _agent(store, DummyChatService(available=False))
        agent.mark_not_relevant(user_id=USER, email_id="thread-105")

        restored = agent.restore(user_id=USER, email_id="thread-105")

        assert restored.status == "pending"
        assert restored.is_not_relevant is False
        assert restored.irrelevance_reason is None
        assert restored.matched_faq_id is None
        assert restored.suggested_reply is None
        assert store.list_not_relevant_ids(USER) == set()


def test_run_requires_email_id(store) -> None:
    with pytest.raises(ValueError):
        _agent(store, DummyChatService()).run("Mark", {"user_id": USER})


def test_run_reports_category(store) -> None:
    result = _agent(store, DummyChatService(available=False)).run(
        "Mark", {"user_id": USER, "email_id": "thread-105"}
    )

    assert result.response == "Marked as not relevant (other): Marked as not relevant"
    assert result.payload["email"].is_not_relevant is True
