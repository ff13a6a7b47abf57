"""Agent that explains why an email is not a support request and files it away."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

from supportdesk.agents.base import Agent, AgentResult
from supportdesk.schemas import StepLog
from supportdesk.services.ai_usage_log import AIUsageLogger
from supportdesk.services.chat_service import ChatService
from supportdesk.services.inbox_state import STATUS_NOT_RELEVANT, STATUS_PENDING, transition
from supportdesk.services.triage_store import (
    EmailRecord,
    NotRelevantRecord,
    TriageStore,
    build_record_id,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

MAX_SUBJECT_CHARS = 100
MAX_CONTENT_CHARS = 4000

IRRELEVANCE_CATEGORIES = ("spam", "personal", "automated", "internal", "too_specific", "other")

_SYSTEM_PROMPT = (
    "You analyze why an email is not relevant to customer support. Respond with a JSON object: "
    '{"reason": "brief explanation", '
    '"category": "spam" | "personal" | "automated" | "internal" | "too_specific" | "other", '
    '"confidence": number between 0 and 1, '
    '"details": "detailed explanation of the analysis"}'
)


@dataclass
class IrrelevanceVerdict:
    reason: str
    category: str
    confidence: float
    details: str


def truncate_for_prompt(subject: str, content: str) -> tuple[str, str]:
    """Clip the subject and keep the head (60%) and tail (40%) of long content."""

    subject = subject or ""
    content = content or ""
    if len(subject) > MAX_SUBJECT_CHARS:
        subject = subject[:MAX_SUBJECT_CHARS] + "..."
    if len(content) > MAX_CONTENT_CHARS:
        head = content[: int(MAX_CONTENT_CHARS * 0.6)]
        tail = content[-int(MAX_CONTENT_CHARS * 0.4):]
        dropped = len(content) - MAX_CONTENT_CHARS
        content = f"{head}\n\n[... {dropped} characters truncated ...]\n\n{tail}"
    return subject, content


def _fallback_verdict(reason: str | None = None) -> IrrelevanceVerdict:
    return IrrelevanceVerdict(
        reason=reason or "Marked as not relevant",
        category="other",
        confidence=0.5,
        details="",
    )


def _verdict_from_json(data: dict[str, Any]) -> IrrelevanceVerdict:
    category = str(data.get("category") or "other").strip().lower()
    if category not in IRRELEVANCE_CATEGORIES:
        category = "other"
    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    return IrrelevanceVerdict(
        reason=str(data.get("reason") or "Not a support request"),
        category=category,
        confidence=min(1.0, max(0.0, confidence)),
        details=str(data.get("details") or ""),
    )


class RelevanceAgent(Agent):
    """Categorizes not-relevant mail and moves emails in and out of that tab."""

    name = "relevance_agent"

    def __init__(
        self,
        *,
        chat_service: ChatService,
        store: TriageStore,
        usage_logger: AIUsageLogger | None = None,
    ) -> None:
        self.chat_service = chat_service
        self.store = store
        self.usage_logger = usage_logger

    def analyze_irrelevant(self, email: EmailRecord, *, user_id: str) -> IrrelevanceVerdict:
        if not self.chat_service.is_available:
            return _fallback_verdict()
        subject, content = truncate_for_prompt(email.subject, email.content)
        user_prompt = (
            "Please analyze this email and explain why it is not relevant:\n\n"
            f"Subject: {subject}\n\nContent: {content}"
        )
        try:
            result = self.chat_service.generate_json(system_prompt=_SYSTEM_PROMPT, user_prompt=user_prompt)
        except Exception as exc:
            logger.warning("Irrelevance analysis failed for %s: %s", email.id, exc)
            if self.usage_logger is not None:
                self.usage_logger.log(
                    user_id=user_id,
                    function_name="analyze_irrelevant",
                    model=self.chat_service.model,
                    error=f"{type(exc).__name__}: {exc}",
                )
            return _fallback_verdict()
        if self.usage_logger is not None:
            self.usage_logger.log(
                user_id=user_id,
                function_name="analyze_irrelevant",
                model=self.chat_service.model,
                usage=result.usage,
            )
        return _verdict_from_json(result.data)

    def mark_not_relevant(
        self,
        *,
        user_id: str,
        email_id: str,
        reason: str | None = None,
        analyze: bool = True,
    ) -> tuple[EmailRecord, list[StepLog]]:
        """Move an email to the not-relevant tab, recording why.

        A caller-supplied ``reason`` skips the LLM analysis.
        """

        email = self.store.get_email(user_id, email_id)
        if email is None:
            raise KeyError(f"Email not found: {email_id}")

        if reason:
            verdict = _fallback_verdict(reason)
            source = "caller"
        elif analyze:
            verdict = self.analyze_irrelevant(email, user_id=user_id)
            source = "llm" if self.chat_service.is_available else "fallback"
        else:
            verdict = _fallback_verdict()
            source = "fallback"

        updated = replace(
            transition(email, STATUS_NOT_RELEVANT),
            irrelevance_reason=verdict.reason,
            irrelevance_category=verdict.category,
        )
        self.store.update_email(updated)
        self.store.add_not_relevant(
            NotRelevantRecord(
                id=build_record_id(user_id, email_id, "not_relevant"),
                user_id=user_id,
                email_id=email_id,
                reason=verdict.reason,
                category=verdict.category,
                confidence=verdict.confidence,
                details=verdict.details,
                created_at=utc_now_iso(),
            )
        )
        step = StepLog(
            module="relevance_agent.mark_not_relevant",
            prompt={"email_id": email_id, "source": source},
            response={
                "category": verdict.category,
                "confidence": verdict.confidence,
                "reason": verdict.reason,
            },
        )
        return updated, [step]

    def restore(self, *, user_id: str, email_id: str) -> EmailRecord:
        """Bring a not-relevant email back to the unanswered tab."""

        email = self.store.get_email(user_id, email_id)
        if email is None:
            raise KeyError(f"Email not found: {email_id}")
        updated = replace(
            transition(email, STATUS_PENDING),
            matched_faq_id=None,
            match_confidence=None,
            suggested_reply=None,
        )
        self.store.update_email(updated)
        self.store.remove_not_relevant(user_id, email_id)
        return updated

    def run(self, prompt: str, context: dict[str, object] | None = None) -> AgentResult:
        context = dict(context or {})
        user_id = str(context.get("user_id") or "")
        email_id = str(context.get("email_id") or "")
        if not user_id or not email_id:
            raise ValueError("relevance_agent requires context['user_id'] and context['email_id']")
        reason = context.get("reason")
        updated, steps = self.mark_not_relevant(
            user_id=user_id,
            email_id=email_id,
            reason=str(reason) if reason else None,
            analyze=bool(context.get("analyze", True)),
        )
        return AgentResult(
            response=f"Marked as not relevant ({updated.irrelevance_category}): {updated.irrelevance_reason}",
            steps=steps,
            payload={"email": updated},
        )
