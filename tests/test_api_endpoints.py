from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi import HTTPException

import supportdesk.main as main_module
from supportdesk.agents.knowledge_agent import KnowledgeAgent
from supportdesk.agents.relevance_agent import RelevanceAgent
from supportdesk.agents.triage_agent import TriageAgent
from supportdesk.config import DevUser
from supportdesk.schemas import (
    FAQUpsertRequest,
    KnowledgeReportRequest,
    NotRelevantRequest,
    ReplyFormattingPayload,
    ReplyRequest,
    SimulateRequest,
    StripeKeyRequest,
    UserSettingsUpdateRequest,
)
from supportdesk.services.ai_usage_log import AIUsageLogger
from supportdesk.services.cache import TTLCache
from supportdesk.services.firebase_auth import FirebaseAuthService
from supportdesk.services.gmail_service import GmailService
from supportdesk.services.rate_limiter import FetchThrottle, FixedWindowRateLimiter
from supportdesk.services.stripe_service import DisputeSummary
from supportdesk.services.triage_store import SqliteTriageStore

USER = "agent@example.com"


class DummyChatService:
    is_available = False
    model = "gpt-4o-mini"


class RecordingGmailService(GmailService):
    def __init__(self, *, accept: bool = True) -> None:
        super().__init__(enabled=True)
        self.accept = accept
        self.sent: list[dict[str, Any]] = []

    def send_reply(self, **kwargs: Any) -> bool:
        self.sent.append(kwargs)
        return self.accept


@dataclass
class DummyStripeService:
    disputes: list[DisputeSummary] = field(default_factory=list)
    keys_seen: list[str] = field(default_factory=list)

    def list_open_disputes(self, api_key: str) -> list[DisputeSummary]:
        self.keys_seen.append(api_key)
        return list(self.disputes)


@pytest.fixture
def api(monkeypatch, tmp_path):
    store = SqliteTriageStore(db_path=str(tmp_path / "api.db"))
    gmail = RecordingGmailService()
    chat = DummyChatService()
    usage = AIUsageLogger(store=store)
    monkeypatch.setattr(main_module, "store", store)
    monkeypatch.setattr(main_module, "gmail_service", gmail)
    monkeypatch.setattr(main_module, "usage_logger", usage)
    monkeypatch.setattr(
        main_module,
        "auth_service",
        FirebaseAuthService(enabled=False, dev_user=DevUser(uid="dev", email=USER, name="Agent")),
    )
    monkeypatch.setattr(
        main_module,
        "triage_agent",
        TriageAgent(gmail_service=gmail, chat_service=chat, store=store, usage_logger=usage),
    )
    monkeypatch.setattr(main_module, "relevance_agent", RelevanceAgent(chat_service=chat, store=store))
    monkeypatch.setattr(main_module, "knowledge_agent", KnowledgeAgent(chat_service=chat))
    monkeypatch.setattr(main_module, "inbox_cache", TTLCache(ttl_seconds=300))
    monkeypatch.setattr(main_module, "rate_limiter", FixedWindowRateLimiter(limit=5, window_seconds=30))
    monkeypatch.setattr(main_module, "fetch_throttle", FetchThrottle(min_interval_seconds=30))
    return main_module


def _inbox(api, tab: str = "unanswered", force_refresh: bool = False):
    return api.inbox(tab=tab, force_refresh=force_refresh, authorization=None)


def _answer_reset_faq(api):
    return api.upsert_faq(
        FAQUpsertRequest(question="How do I reset my password?", answer="Use the reset link."),
        authorization=None,
    )


class TestInbox:
    def test_first_load_triages_then_serves_cache(self, api) -> None:
        first = _inbox(api)
        second = _inbox(api)

        assert first.status == "ok"
        assert first.cached is False
        assert {i.id for i in first.items} == {"thread-101", "thread-102", "thread-104"}
        assert first.counts == {"unanswered": 3, "ready": 0, "replied": 0, "not_relevant": 0}
        assert first.demo_mode is True
        assert first.steps
        assert second.cached is True
        assert second.steps == []

    def test_force_refresh_is_throttled(self, api) -> None:
        assert _inbox(api, force_refresh=True).status == "ok"

        with pytest.raises(HTTPException) as excinfo:
            _inbox(api, force_refresh=True)

        assert excinfo.value.status_code == 429
        assert excinfo.value.detail["retry_after"] == 30

    def test_missing_token_is_rejected_when_auth_enabled(self, api, monkeypatch) -> None:
        monkeypatch.setattr(api, "auth_service", FirebaseAuthService(enabled=True))

        with pytest.raises(HTTPException) as excinfo:
            _inbox(api)

        assert excinfo.value.status_code == 401


class TestFaqEndpoints:
    def test_answering_faq_moves_matching_email_to_ready(self, api) -> None:
        _inbox(api)

        response = _answer_reset_faq(api)
        ready = _inbox(api, tab="ready")

        assert response.status == "ok"
        assert response.rematched_emails == 1
        assert [i.id for i in ready.items] == ["thread-102"]
        assert ready.items[0].suggested_reply.startswith("Hi there,")

    def test_unanswered_faq_does_not_rematch(self, api) -> None:
        _inbox(api)

        response = api.upsert_faq(FAQUpsertRequest(question="Can I pay by invoice?"), authorization=None)

        assert response.faq.answer == ""
        assert response.rematched_emails == 0

    def test_list_and_delete(self, api) -> None:
        faq = _answer_reset_faq(api).faq

        assert [f.id for f in api.list_faqs(authorization=None).faqs] == [faq.id]
        assert api.delete_faq(faq.id, authorization=None).faqs == []
        assert api.delete_faq(faq.id, authorization=None).status == "error"

    def test_deleting_answered_faq_returns_email_to_unanswered(self, api) -> None:
        _inbox(api)
        faq = _answer_reset_faq(api).faq
        assert [i.id for i in _inbox(api, tab="ready").items] == ["thread-102"]

        api.delete_faq(faq.id, authorization=None)

        assert _inbox(api, tab="ready").items == []
        assert "thread-102" in {i.id for i in _inbox(api).items}
        assert api.store.get_email(USER, "thread-102").matched_faq_id is None

    def test_patterns_group_unanswered_questions(self, api) -> None:
        _inbox(api)
        _answer_reset_faq(api)

        response = api.faq_patterns(threshold=None, authorization=None)

        assert response.status == "ok"
        assert response.threshold == api.settings.faq_similarity_threshold
        assert sorted(g.source_ids[0] for g in response.groups) == ["thread-101", "thread-104"]

    def test_simulate_uses_user_confidence_threshold(self, api) -> None:
        _answer_reset_faq(api)
        api.store.save_user_settings(USER, {"confidence_threshold": 95})

        hit = api.simulate_email(SimulateRequest(body="How do I reset my password?"), authorization=None)
        miss = api.simulate_email(SimulateRequest(body="How can I reset the password?"), authorization=None)

        assert hit.matches[0].confidence == 100
        assert hit.requires_human_response is False
        assert miss.matches == []
        assert miss.reason == "No FAQ matched with at least 95% confidence."


class TestEmailActions:
    def test_reply_sends_in_thread_and_marks_replied(self, api) -> None:
        _inbox(api)
        _answer_reset_faq(api)

        response = api.reply_to_email(
            "thread-102",
            ReplyRequest(body="Final answer."),
            authorization=None,
            x_forwarded_for="203.0.113.7",
        )

        assert response.status == "ok"
        assert response.email.tab == "replied"
        assert api.gmail_service.sent[0]["thread_id"] == "thread-102"
        assert api.gmail_service.sent[0]["subject"] == "Re: Password reset not working"
        assert api.store.list_faqs(USER)[0].use_count == 1
        assert _inbox(api, tab="replied").items[0].suggested_reply == "Final answer."

        again = api.reply_to_email(
            "thread-102",
            ReplyRequest(body="Again"),
            authorization=None,
            x_forwarded_for="203.0.113.7",
        )
        assert again.error == "Email has already been replied to."

    def test_failed_send_keeps_email_open(self, api) -> None:
        _inbox(api)
        api.gmail_service.accept = False

        response = api.reply_to_email(
            "thread-101", ReplyRequest(body="Hi"), authorization=None, x_forwarded_for=None
        )

        assert response.status == "error"
        assert api.store.get_email(USER, "thread-101").status == "pending"

    def test_reply_to_not_relevant_email_is_rejected_before_sending(self, api) -> None:
        _inbox(api)
        api.mark_not_relevant(
            "thread-101",
            payload=NotRelevantRequest(reason="Vendor mail"),
            authorization=None,
            x_forwarded_for=None,
        )

        response = api.reply_to_email(
            "thread-101", ReplyRequest(body="Hi"), authorization=None, x_forwarded_for=None
        )

        assert response.status == "error"
        assert response.error.startswith("InvalidTransitionError")
        assert api.gmail_service.sent == []
        assert api.store.get_email(USER, "thread-101").status == "not_relevant"

    def test_reply_rate_limit(self, api, monkeypatch) -> None:
        monkeypatch.setattr(api, "rate_limiter", FixedWindowRateLimiter(limit=1, window_seconds=30))
        _inbox(api)
        api.reply_to_email("thread-101", ReplyRequest(body="Hi"), authorization=None, x_forwarded_for="1.1.1.1")

        with pytest.raises(HTTPException) as excinfo:
            api.reply_to_email("thread-104", ReplyRequest(body="Hi"), authorization=None, x_forwarded_for="1.1.1.1")

        assert excinfo.value.status_code == 429
        assert excinfo.value.headers == {"Retry-After": "30"}

    def test_not_relevant_and_restore(self, api) -> None:
        _inbox(api)

        marked = api.mark_not_relevant(
            "thread-104",
            payload=NotRelevantRequest(reason="Finance vendor"),
            authorization=None,
            x_forwarded_for=None,
        )
        hidden = _inbox(api, tab="not_relevant")
        restored = api.restore_email("thread-104", authorization=None)

        assert marked.response == "Finance vendor"
        assert [i.id for i in hidden.items] == ["thread-104"]
        assert restored.email.tab == "unanswered"
        assert _inbox(api).counts["not_relevant"] == 0

    def test_remove_from_ready_requires_draft(self, api) -> None:
        _inbox(api)

        rejected = api.remove_from_ready("thread-101", authorization=None)
        _answer_reset_faq(api)
        removed = api.remove_from_ready("thread-102", authorization=None)

        assert rejected.status == "error"
        assert rejected.error.startswith("InvalidTransitionError")
        assert removed.status == "ok"
        assert removed.email.tab is None
        assert _inbox(api, tab="ready").items == []

    def test_thread_lists_every_message(self, api) -> None:
        _inbox(api)

        response = api.email_thread("thread-102", authorization=None)

        assert response.status == "ok"
        assert response.thread_id == "thread-102"
        assert [m.id for m in response.messages] == ["demo-102", "demo-103"]
        assert response.messages[0].sender

    def test_thread_for_unknown_email(self, api) -> None:
        response = api.email_thread("nope", authorization=None)

        assert response.status == "error"
        assert response.error.startswith("KeyError")

    def test_unknown_email(self, api) -> None:
        response = api.remove_from_ready("nope", authorization=None)

        assert response.status == "error"
        assert response.error.startswith("KeyError")


class TestKnowledgeReport:
    def test_report_over_stored_emails(self, api) -> None:
        _inbox(api)

        response = api.knowledge_report(payload=None, authorization=None, x_forwarded_for=None)

        assert response.status == "ok"
        assert response.email_count == 3
        assert response.customer_sentiment.overall == "unknown"
        assert len(response.faq_groups) == 3

    def test_report_filters_email_ids(self, api) -> None:
        _inbox(api)

        response = api.knowledge_report(
            payload=KnowledgeReportRequest(email_ids=["thread-101"]),
            authorization=None,
            x_forwarded_for=None,
        )

        assert response.email_count == 1
        assert response.key_customer_points == ["How do I cancel my subscription?"]


class TestSettingsAndLogs:
    def test_settings_defaults_and_merge(self, api) -> None:
        defaults = api.get_user_settings(authorization=None).settings

        updated = api.update_user_settings(
            UserSettingsUpdateRequest(
                confidence_threshold=70,
                reply_formatting=ReplyFormattingPayload(signature="Cheers, Support"),
            ),
            authorization=None,
        ).settings

        assert defaults["confidence_threshold"] == api.settings.default_confidence_threshold
        assert updated["confidence_threshold"] == 70
        assert updated["reply_formatting"]["signature"] == "Cheers, Support"
        assert updated["reply_formatting"]["greeting"] == "Hi there"

    def test_email_templates_default(self, api) -> None:
        response = api.get_email_templates(authorization=None)

        assert [t.name for t in response.templates] == ["First Response", "Follow Up", "Final Notice"]

    def test_logs_listing(self, api) -> None:
        api.usage_logger.log(user_id=USER, function_name="analyze_email", model="gpt-4o-mini")

        response = api.ai_logs(sort_field="timestamp", direction="desc", limit=10, authorization=None)

        assert response.status == "ok"
        assert [log.function_name for log in response.logs] == ["analyze_email"]


class TestStripe:
    def test_disputes_need_a_key(self, api) -> None:
        response = api.stripe_disputes(authorization=None)

        assert response.status == "error"
        assert response.error == "No Stripe API key configured."

    def test_disputes_with_saved_key(self, api, monkeypatch) -> None:
        stripe = DummyStripeService(
            disputes=[
                DisputeSummary(
                    id="dp_1",
                    status="needs_response",
                    reason="fraudulent",
                    amount=4900,
                    currency="usd",
                    created=None,
                    due_by=None,
                    charge_id="ch_1",
                    customer_email="dana@example.org",
                    customer_name="Dana",
                )
            ]
        )
        monkeypatch.setattr(api, "stripe_service", stripe)

        saved = api.save_stripe_key(StripeKeyRequest(api_key=" sk_test_1 "), authorization=None)
        response = api.stripe_disputes(authorization=None)

        assert saved.has_stripe_key is True
        assert stripe.keys_seen == ["sk_test_1"]
        assert [d.id for d in response.disputes] == ["dp_1"]
        assert api.delete_stripe_key(authorization=None).has_stripe_key is False
