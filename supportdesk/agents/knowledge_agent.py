"""Knowledge-base agent: insight reports over support mail and FAQ simulation.

The report groups the questions customers ask into candidate FAQs with the
greedy word-overlap clustering from ``faq_matching`` and, when an LLM is
configured, adds key points, sentiment and recommended actions.  Without an
LLM the same report shape is filled from the grouping alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from supportdesk.agents.base import Agent, AgentResult
from supportdesk.agents.triage_agent import heuristic_questions
from supportdesk.schemas import StepLog
from supportdesk.services.ai_usage_log import AIUsageLogger
from supportdesk.services.chat_service import ChatService
from supportdesk.services.email_templates import ReplyFormatting, apply_formatting, render_template
from supportdesk.services.faq_matching import (
    DEFAULT_SIMILARITY_THRESHOLD,
    PatternGroup,
    concept_confidence,
    find_matching_faq,
    group_similar_patterns,
    levenshtein_similarity,
)
from supportdesk.services.triage_store import EmailRecord, FAQRecord

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 1000
DEFAULT_CONFIDENCE_THRESHOLD = 80

_INSIGHTS_SYSTEM_PROMPT = (
    "You are an expert at analyzing customer communications and generating actionable insights. "
    "Respond with a JSON object: "
    '{"keyCustomerPoints": string[], '
    '"commonQuestions": [{"question": string, "typicalAnswer": string, "frequency": number}], '
    '"recommendedActions": string[], '
    '"customerSentiment": {"overall": string, "details": string}}'
)


@dataclass
class CommonQuestion:
    question: str
    typical_answer: str
    frequency: int


@dataclass
class CustomerSentiment:
    overall: str
    details: str


@dataclass
class KnowledgeReport:
    """Insights over a batch of support emails."""

    email_count: int
    key_customer_points: list[str]
    customer_sentiment: CustomerSentiment
    common_questions: list[CommonQuestion]
    recommended_actions: list[str]
    faq_groups: list[PatternGroup] = field(default_factory=list)


@dataclass
class SimulationMatch:
    faq: FAQRecord
    confidence: int
    suggested_reply: str


@dataclass
class SimulationResult:
    matches: list[SimulationMatch]
    requires_human_response: bool
    reason: str


def _email_questions(email: EmailRecord) -> list[str]:
    return list(email.questions) or heuristic_questions(email.content, 5)


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def _common_questions_from_json(value: Any) -> list[CommonQuestion]:
    if not isinstance(value, list):
        return []
    items: list[CommonQuestion] = []
    for raw in value:
        if not isinstance(raw, dict) or not raw.get("question"):
            continue
        try:
            frequency = int(raw.get("frequency") or 1)
        except (TypeError, ValueError):
            frequency = 1
        items.append(
            CommonQuestion(
                question=str(raw["question"]),
                typical_answer=str(raw.get("typicalAnswer") or raw.get("typical_answer") or ""),
                frequency=frequency,
            )
        )
    return items


class KnowledgeAgent(Agent):
    """Builds knowledge-base reports and simulates how an email would be answered."""

    name = "knowledge_agent"

    def __init__(
        self,
        *,
        chat_service: ChatService,
        usage_logger: AIUsageLogger | None = None,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> None:
        self.chat_service = chat_service
        self.usage_logger = usage_logger
        self.similarity_threshold = similarity_threshold

    # -- reports -------------------------------------------------------------------

    def group_questions(self, emails: list[EmailRecord]) -> list[PatternGroup]:
        items = [(q, [email.id]) for email in emails for q in _email_questions(email)]
        return group_similar_patterns(items, threshold=self.similarity_threshold)

    def _heuristic_report(
        self,
        emails: list[EmailRecord],
        groups: list[PatternGroup],
        faqs: list[FAQRecord],
    ) -> KnowledgeReport:
        key_points = list(dict.fromkeys(e.subject.strip() for e in emails if e.subject.strip()))[:5]
        ranked = sorted(groups, key=lambda g: g.size, reverse=True)
        common: list[CommonQuestion] = []
        actions: list[str] = []
        for group in ranked:
            match = find_matching_faq(group.representative, faqs, threshold=self.similarity_threshold)
            common.append(
                CommonQuestion(
                    question=group.representative,
                    typical_answer=match.faq.answer if match else "",
                    frequency=group.size,
                )
            )
            if match is None and group.size >= 2:
                actions.append(f'Add an FAQ answer for "{group.representative}"')
        return KnowledgeReport(
            email_count=len(emails),
            key_customer_points=key_points,
            customer_sentiment=CustomerSentiment(
                overall="unknown",
                details="Sentiment analysis needs an LLM provider.",
            ),
            common_questions=common[:10],
            recommended_actions=actions,
            faq_groups=groups,
        )

    def generate_insights(
        self,
        emails: list[EmailRecord],
        *,
        user_id: str,
        faqs: list[FAQRecord] | None = None,
    ) -> tuple[KnowledgeReport, list[StepLog]]:
        faqs = faqs or []
        groups = self.group_questions(emails)
        report = self._heuristic_report(emails, groups, faqs)
        steps = [
            StepLog(
                module="knowledge_agent.group_questions",
                prompt={"email_count": len(emails), "threshold": self.similarity_threshold},
                response={"group_count": len(groups), "sizes": [g.size for g in groups]},
            )
        ]
        if not emails or not self.chat_service.is_available:
            steps.append(
                StepLog(
                    module="knowledge_agent.insights",
                    prompt={"email_count": len(emails)},
                    response={"status": "heuristic"},
                )
            )
            return report, steps

        blocks = []
        for email in emails:
            blocks.append(
                f"Subject: {email.subject}\nFrom: {email.sender}\nBody: {email.content[:MAX_BODY_CHARS]}"
            )
        user_prompt = (
            "Analyze the following customer emails. Focus on common questions, customer "
            "sentiment and actionable recommendations.\n\n" + "\n\n---\n\n".join(blocks)
        )
        try:
            result = self.chat_service.generate_json(
                system_prompt=_INSIGHTS_SYSTEM_PROMPT,
                user_prompt=user_prompt,
            )
        except Exception as exc:
            logger.warning("Insight generation failed, using heuristic report: %s", exc)
            if self.usage_logger is not None:
                self.usage_logger.log(
                    user_id=user_id,
                    function_name="generate_insights",
                    model=self.chat_service.model,
                    error=f"{type(exc).__name__}: {exc}",
                )
            steps.append(
                StepLog(
                    module="knowledge_agent.insights",
                    prompt={"email_count": len(emails)},
                    response={"status": "error", "error": f"{type(exc).__name__}: {exc}"},
                )
            )
            return report, steps

        if self.usage_logger is not None:
            self.usage_logger.log(
                user_id=user_id,
                function_name="generate_insights",
                model=self.chat_service.model,
                usage=result.usage,
            )
        data = result.data
        sentiment = data.get("customerSentiment") if isinstance(data.get("customerSentiment"), dict) else {}
        report = KnowledgeReport(
            email_count=len(emails),
            key_customer_points=_str_list(data.get("keyCustomerPoints") or data.get("keyPoints"))
            or report.key_customer_points,
            customer_sentiment=CustomerSentiment(
                overall=str(sentiment.get("overall") or "neutral"),
                details=str(sentiment.get("details") or ""),
            ),
            common_questions=_common_questions_from_json(data.get("commonQuestions"))
            or report.common_questions,
            recommended_actions=_str_list(data.get("recommendedActions") or data.get("suggestedActions"))
            or report.recommended_actions,
            faq_groups=groups,
        )
        steps.append(
            StepLog(
                module="knowledge_agent.insights",
                prompt={"email_count": len(emails)},
                response={
                    "status": "ok",
                    "common_question_count": len(report.common_questions),
                    "sentiment": report.customer_sentiment.overall,
                },
            )
        )
        return report, steps

    # -- simulation ----------------------------------------------------------------

    def simulate_email(
        self,
        *,
        subject: str,
        body: str,
        faqs: list[FAQRecord],
        confidence_threshold: int = DEFAULT_CONFIDENCE_THRESHOLD,
        formatting: ReplyFormatting | None = None,
    ) -> SimulationResult:
        """Score every answered FAQ against an incoming email.

        Confidence is the concept-weighted word overlap, raised to the
        normalized edit similarity when that is higher.
        """

        formatting = formatting or ReplyFormatting()
        text = f"{subject} {body}".strip()
        matches: list[SimulationMatch] = []
        for faq in faqs:
            if not faq.is_answered:
                continue
            confidence = max(
                concept_confidence(text, faq.question),
                round(levenshtein_similarity(body, faq.question) * 100),
            )
            if confidence < confidence_threshold:
                continue
            reply = apply_formatting(render_template(faq.answer, {"firstName": "there"}), formatting)
            matches.append(SimulationMatch(faq=faq, confidence=confidence, suggested_reply=reply))

        matches.sort(key=lambda m: m.confidence, reverse=True)
        if matches:
            reason = f"Matched {len(matches)} FAQ(s); best confidence {matches[0].confidence}%."
        else:
            reason = f"No FAQ matched with at least {confidence_threshold}% confidence."
        return SimulationResult(
            matches=matches,
            requires_human_response=not matches,
            reason=reason,
        )

    def run(self, prompt: str, context: dict[str, object] | None = None) -> AgentResult:
        context = dict(context or {})
        emails = [e for e in context.get("emails") or [] if isinstance(e, EmailRecord)]  # type: ignore[attr-defined]
        faqs = [f for f in context.get("faqs") or [] if isinstance(f, FAQRecord)]  # type: ignore[attr-defined]
        report, steps = self.generate_insights(emails, user_id=str(context.get("user_id") or ""), faqs=faqs)
        lines = [f"Analyzed {report.email_count} email(s)."]
        for item in report.common_questions[:5]:
            lines.append(f"- {item.question} (x{item.frequency})")
        return AgentResult(response="\n".join(lines), steps=steps, payload={"report": report})
