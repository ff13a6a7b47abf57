"""Domain agent for triaging the customer-support inbox.

Fetches messages, keeps the newest message per thread, drops non-support and
not-relevant mail, extracts customer questions, matches them against the
user's answered FAQs, and drafts replies for human review.  Uses a
LangChain-first architecture with composable RunnableLambda stages.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any

from langchain_core.runnables import RunnableLambda

from supportdesk.agents.base import Agent, AgentResult
from supportdesk.schemas import StepLog
from supportdesk.services.ai_usage_log import AIUsageLogger
from supportdesk.services.cache import (
    ANSWERED_FAQS_TTL_SECONDS,
    QUESTIONS_TTL_SECONDS,
    TTLCache,
    is_fresh,
)
from supportdesk.services.chat_service import ChatService, TokenUsage
from supportdesk.services.email_templates import (
    ReplyFormatting,
    apply_formatting,
    first_name_from_sender,
    render_template,
)
from supportdesk.services.faq_matching import (
    DEFAULT_SIMILARITY_THRESHOLD,
    AnsweredStatus,
    check_answered_status,
)
from supportdesk.services.gmail_service import EmailMessage, GmailService
from supportdesk.services.inbox_state import (
    STATUS_NOT_RELEVANT,
    STATUS_PENDING,
    STATUS_PROCESSED,
    STATUS_REMOVED_FROM_READY,
    STATUS_REPLIED,
    bucket_counts,
    bucket_for,
    dedupe_threads,
    merge_emails,
    to_email_record,
    transition,
)
from supportdesk.services.triage_store import (
    EmailAnalysisRecord,
    EmailRecord,
    FAQRecord,
    TriageStore,
    parse_iso,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

NO_MAIL_RESPONSE = "No support emails need attention right now."

SETTLED_STATUSES = {STATUS_REPLIED, STATUS_NOT_RELEVANT, STATUS_REMOVED_FROM_READY}


@dataclass
class TriageAgentConfig:
    """Configuration knobs for inbox triage."""

    max_inbox_fetch: int = 25
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    analysis_cache_days: int = 30
    max_questions_per_email: int = 5
    max_answer_words: int = 200


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------

SUPPORT_KEYWORDS = [
    "help",
    "support",
    "issue",
    "problem",
    "error",
    "question",
    "not working",
    "broken",
    "failed",
    "stuck",
    "can't",
    "cannot",
    "how to",
    "how do i",
    "assistance",
    "bug",
    "feature request",
]

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")


def is_support_email(subject: str, content: str) -> bool:
    """Keyword heuristic for customer-support mail."""
    text = f"{subject} {content}".lower()
    return any(keyword in text for keyword in SUPPORT_KEYWORDS)


def heuristic_questions(text: str, limit: int) -> list[str]:
    """Sentences ending in '?' (deduplicated, in order)."""
    seen: dict[str, str] = {}
    for sentence in _SENTENCE_SPLIT_RE.split(text or ""):
        sentence = sentence.strip()
        if len(sentence) > 3 and sentence.endswith("?"):
            seen.setdefault(sentence.lower(), sentence)
    return list(seen.values())[:limit]


def _questions_from_analysis(analysis: dict[str, Any], limit: int) -> list[str]:
    raw = analysis.get("suggestedQuestions") or []
    if not isinstance(raw, list):
        return []
    questions = [str(q).strip() for q in raw if isinstance(q, str) and q.strip()]
    return list(dict.fromkeys(questions))[:limit]


def _normalize_analysis(data: dict[str, Any]) -> dict[str, Any]:
    def _str_list(value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(v).strip() for v in value if str(v).strip()]

    return {
        "suggestedQuestions": _str_list(data.get("suggestedQuestions")),
        "sentiment": str(data.get("sentiment") or "neutral"),
        "keyPoints": _str_list(data.get("keyPoints")),
        "concepts": _str_list(data.get("concepts")),
        "requiresHumanResponse": bool(data.get("requiresHumanResponse", True)),
        "reason": str(data.get("reason") or ""),
        "isSupport": bool(data.get("isSupport", True)),
    }


def _cap_words(text: str, max_words: int) -> str:
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + " ..."


# ---------------------------------------------------------------------------
# LLM prompt builders
# ---------------------------------------------------------------------------


def _analysis_prompts(record: EmailRecord) -> tuple[str, str]:
    system = (
        "You analyze customer support emails. Respond with a JSON object with keys: "
        "suggestedQuestions (array of at most 5 generic, FAQ-style questions the customer is asking), "
        "sentiment (positive, neutral or negative), keyPoints (array of strings), "
        "concepts (array of short topic names), requiresHumanResponse (boolean), "
        "reason (string), isSupport (boolean). Phrase questions so they apply to any "
        "customer; replace personal details with {email} or {username}."
    )
    user = f"Subject: {record.subject}\n\nEmail:\n{record.content[:4000]}"
    return system, user


def _reply_prompts(
    record: EmailRecord,
    status: AnsweredStatus,
    formatting: ReplyFormatting,
) -> tuple[str, str]:
    system = (
        "You are a customer support agent drafting a reply that a human will review before sending. "
        "Answer every question using only the FAQ answers provided; never invent policies or details.\n"
        f'- Use this greeting style: "{formatting.greeting}"\n'
        f'- Use this signature style: "{formatting.signature}"\n'
        f"- {formatting.custom_prompt}"
    )
    best = status.best_match
    faq_lines = []
    for match in status.matches:
        faq_lines.append(f"Q: {match.faq.question}\nA: {match.faq.answer}")
        if match.faq.instructions:
            faq_lines.append(f"Instructions: {match.faq.instructions}")
    user = (
        f"Customer: {record.sender}\n"
        f"Subject: {record.subject}\n"
        f"Email:\n{record.content[:3000]}\n\n"
        f"Primary matched question: {best.faq.question if best else ''}\n\n"
        "Answered FAQs:\n" + "\n\n".join(faq_lines) + "\n\nDraft the reply:"
    )
    return system, user


def _template_reply(record: EmailRecord, faqs: list[FAQRecord], formatting: ReplyFormatting) -> str:
    first_name = first_name_from_sender(record.sender)
    answers = []
    for faq in faqs:
        answer = render_template(faq.answer, {"firstName": first_name, "email": record.sender})
        if answer and answer not in answers:
            answers.append(answer)
    return apply_formatting("\n\n".join(answers), formatting, first_name=first_name)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TriagePipeline:
    """LangChain-first triage pipeline composed of RunnableLambda stages."""

    def __init__(
        self,
        *,
        gmail_service: GmailService,
        chat_service: ChatService,
        store: TriageStore,
        config: TriageAgentConfig,
        usage_logger: AIUsageLogger | None = None,
    ) -> None:
        self._gmail = gmail_service
        self._chat = chat_service
        self._store = store
        self._config = config
        self._usage = usage_logger
        self._answered_faqs_cache = TTLCache(ttl_seconds=ANSWERED_FAQS_TTL_SECONDS)
        self._questions_cache = TTLCache(ttl_seconds=QUESTIONS_TTL_SECONDS)

        self.fetch_inbox = RunnableLambda(self._fetch_inbox_stage).with_config(
            run_name="FetchInbox",
        )
        self.dedupe_threads = RunnableLambda(self._dedupe_threads_stage).with_config(
            run_name="DedupeThreads",
        )
        self.drop_not_relevant = RunnableLambda(self._drop_not_relevant_stage).with_config(
            run_name="DropNotRelevant",
        )
        self.support_filter = RunnableLambda(self._support_filter_stage).with_config(
            run_name="SupportFilter",
        )
        self.extract_questions = RunnableLambda(self._extract_questions_stage).with_config(
            run_name="ExtractQuestions",
        )
        self.match_faqs = RunnableLambda(self._match_faqs_stage).with_config(
            run_name="MatchFAQs",
        )
        self.draft_replies = RunnableLambda(self._draft_replies_stage).with_config(
            run_name="DraftReplies",
        )
        self.bucket = RunnableLambda(self._bucket_stage).with_config(
            run_name="Bucket",
        )
        self.build_answer = RunnableLambda(self._build_answer_stage).with_config(
            run_name="BuildAnswer",
        )

    # -- state merge helper --------------------------------------------------------

    @staticmethod
    def _apply(state: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
        merged = dict(state)
        new_steps = updates.pop("steps", [])
        merged.update(updates)
        merged["steps"] = merged.get("steps", []) + new_steps
        return merged

    # -- main orchestration --------------------------------------------------------

    def invoke(self, state: dict[str, Any]) -> dict[str, Any]:
        state = self._apply(state, self.fetch_inbox.invoke(state))
        return self._process(state)

    def invoke_with_messages(
        self, state: dict[str, Any], messages: list[EmailMessage]
    ) -> dict[str, Any]:
        """Run pipeline on a pre-fetched list of messages. Skips fetch_inbox."""
        state = dict(state)
        state["raw_messages"] = messages
        state = self._apply(
            state,
            {
                "steps": [
                    StepLog(
                        module="triage_agent.provided_messages",
                        prompt={"source": "caller", "count": len(messages)},
                        response={"status": "ok", "count": len(messages)},
                    )
                ],
            },
        )
        return self._process(state)

    def invoke_rematch(self, state: dict[str, Any]) -> dict[str, Any]:
        """Re-run FAQ matching and drafting over stored open emails (no Gmail fetch)."""
        user_id = state["user_id"]
        stored = self._store.list_emails(user_id)
        open_emails = [
            e for e in stored
            if e.status in (STATUS_PENDING, STATUS_PROCESSED) and not e.is_replied and not e.is_not_relevant
        ]
        state = dict(state)
        state["existing"] = {e.id: e for e in stored}
        state["candidates"] = open_emails
        open_ids = {e.id for e in open_emails}
        state["carried"] = [e for e in stored if e.id not in open_ids]
        state = self._apply(state, self.match_faqs.invoke(state))
        state = self._apply(state, self.draft_replies.invoke(state))
        state = self._apply(state, self.bucket.invoke(state))
        state = self._apply(state, self.build_answer.invoke(state))
        return state

    def _process(self, state: dict[str, Any]) -> dict[str, Any]:
        if state.get("raw_messages"):
            state = self._apply(state, self.dedupe_threads.invoke(state))
            state = self._apply(state, self.drop_not_relevant.invoke(state))
            state = self._apply(state, self.support_filter.invoke(state))
            state = self._apply(state, self.extract_questions.invoke(state))
            state = self._apply(state, self.match_faqs.invoke(state))
            state = self._apply(state, self.draft_replies.invoke(state))
        state = self._apply(state, self.bucket.invoke(state))
        state = self._apply(state, self.build_answer.invoke(state))
        return state

    def invalidate_faqs(self, user_id: str) -> None:
        self._answered_faqs_cache.invalidate(user_id)

    # -- stage implementations -----------------------------------------------------

    def _fetch_inbox_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        cfg = self._config
        if not self._gmail.is_available:
            return {
                "raw_messages": [],
                "fetch_note": "Gmail is not configured. Set GMAIL_ENABLED=true to fetch support mail.",
                "steps": [
                    StepLog(
                        module="triage_agent.fetch_inbox",
                        prompt={"max_results": cfg.max_inbox_fetch},
                        response={"status": "unavailable", "reason": "Gmail service not configured"},
                    )
                ],
            }

        try:
            messages = self._gmail.list_inbox_messages(max_results=cfg.max_inbox_fetch)
            return {
                "raw_messages": messages,
                "steps": [
                    StepLog(
                        module="triage_agent.fetch_inbox",
                        prompt={"max_results": cfg.max_inbox_fetch},
                        response={
                            "status": "ok",
                            "fetched_count": len(messages),
                            "demo_mode": self._gmail.is_demo_mode,
                        },
                    )
                ],
            }
        except Exception as exc:
            logger.warning("Inbox fetch failed: %s", exc)
            return {
                "raw_messages": [],
                "fetch_note": f"Failed to fetch inbox: {type(exc).__name__}: {exc}",
                "steps": [
                    StepLog(
                        module="triage_agent.fetch_inbox",
                        prompt={"max_results": cfg.max_inbox_fetch},
                        response={"status": "error", "error": f"{type(exc).__name__}: {exc}"},
                    )
                ],
            }

    def _dedupe_threads_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        raw_messages: list[EmailMessage] = state.get("raw_messages") or []
        threads = dedupe_threads(raw_messages)
        records = [to_email_record(m, user_id=state["user_id"]) for m in threads]
        return {
            "records": records,
            "steps": [
                StepLog(
                    module="triage_agent.dedupe_threads",
                    prompt={"message_count": len(raw_messages)},
                    response={
                        "thread_count": len(records),
                        "duplicates_dropped": len(raw_messages) - len(records),
                    },
                )
            ],
        }

    def _drop_not_relevant_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        user_id = state["user_id"]
        records: list[EmailRecord] = state.get("records") or []
        existing = {e.id: e for e in self._store.list_emails(user_id)}
        not_relevant_ids = self._store.list_not_relevant_ids(user_id)

        candidates: list[EmailRecord] = []
        carried: list[EmailRecord] = []
        for record in records:
            stored = existing.get(record.id)
            if record.id in not_relevant_ids and stored is None:
                carried.append(replace(record, status=STATUS_NOT_RELEVANT, is_not_relevant=True))
            elif stored is not None and (record.id in not_relevant_ids or stored.status in SETTLED_STATUSES):
                carried.append(stored)
            elif (
                stored is not None
                and stored.status == STATUS_PROCESSED
                and stored.sort_timestamp >= record.sort_timestamp
            ):
                # No newer message on the thread; keep the reviewed draft.
                carried.append(stored)
            else:
                candidates.append(record)

        return {
            "existing": existing,
            "candidates": candidates,
            "carried": carried,
            "steps": [
                StepLog(
                    module="triage_agent.drop_not_relevant",
                    prompt={"thread_count": len(records)},
                    response={
                        "to_process": len(candidates),
                        "already_settled": len(carried),
                    },
                )
            ],
        }

    def _support_filter_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        candidates: list[EmailRecord] = state.get("candidates") or []
        support = [r for r in candidates if is_support_email(r.subject, r.content)]
        return {
            "candidates": support,
            "steps": [
                StepLog(
                    module="triage_agent.support_filter",
                    prompt={"candidate_count": len(candidates)},
                    response={
                        "support_count": len(support),
                        "non_support_ignored": len(candidates) - len(support),
                    },
                )
            ],
        }

    def _extract_questions_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        user_id = state["user_id"]
        candidates: list[EmailRecord] = state.get("candidates") or []
        sources: dict[str, int] = {}
        updated: list[EmailRecord] = []
        for record in candidates:
            questions, source = self._questions_for(user_id, record)
            sources[source] = sources.get(source, 0) + 1
            updated.append(replace(record, questions=questions))
        return {
            "candidates": updated,
            "steps": [
                StepLog(
                    module="triage_agent.extract_questions",
                    prompt={"email_count": len(candidates)},
                    response={
                        "sources": sources,
                        "question_count": sum(len(r.questions) for r in updated),
                    },
                )
            ],
        }

    def _questions_for(self, user_id: str, record: EmailRecord) -> tuple[list[str], str]:
        cfg = self._config
        cache_key = f"{user_id}:{record.thread_id}:{record.sort_timestamp}"
        cached = self._questions_cache.get(cache_key)
        if cached is not None:
            return list(cached), "memory"

        stored = self._store.get_analysis(user_id, record.thread_id)
        if stored is not None and is_fresh(
            parse_iso(stored.saved_at),
            max_age=timedelta(days=cfg.analysis_cache_days),
        ):
            questions = _questions_from_analysis(stored.analysis, cfg.max_questions_per_email)
            self._questions_cache.set(cache_key, questions)
            return questions, "stored_analysis"

        if self._chat.is_available:
            system, user = _analysis_prompts(record)
            try:
                result = self._chat.generate_json(system_prompt=system, user_prompt=user)
            except Exception as exc:
                logger.warning("Email analysis failed for thread %s: %s", record.thread_id, exc)
                self._log_usage(user_id, "analyze_email", error=f"{type(exc).__name__}: {exc}")
            else:
                self._log_usage(user_id, "analyze_email", usage=result.usage)
                analysis = _normalize_analysis(result.data)
                try:
                    self._store.save_analysis(
                        EmailAnalysisRecord(
                            user_id=user_id,
                            thread_id=record.thread_id,
                            saved_at=utc_now_iso(),
                            analysis=analysis,
                        )
                    )
                except Exception as exc:
                    logger.warning("Saving analysis for thread %s failed: %s", record.thread_id, exc)
                questions = _questions_from_analysis(analysis, cfg.max_questions_per_email)
                self._questions_cache.set(cache_key, questions)
                return questions, "llm"

        return heuristic_questions(record.content, cfg.max_questions_per_email), "heuristic"

    def _answered_faqs(self, user_id: str) -> list[FAQRecord]:
        cached = self._answered_faqs_cache.get(user_id)
        if cached is not None:
            return cached
        faqs = [f for f in self._store.list_faqs(user_id) if f.is_answered]
        self._answered_faqs_cache.set(user_id, faqs)
        return faqs

    def _match_faqs_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        user_id = state["user_id"]
        cfg = self._config
        candidates: list[EmailRecord] = state.get("candidates") or []
        faqs = self._answered_faqs(user_id)
        statuses: dict[str, AnsweredStatus] = {}
        updated: list[EmailRecord] = []
        for record in candidates:
            status = check_answered_status(record.questions, faqs, threshold=cfg.similarity_threshold)
            statuses[record.id] = status
            best = status.best_match if status.is_answered else None
            updated.append(
                replace(
                    record,
                    matched_faq_id=best.faq.id if best else None,
                    match_confidence=round(best.confidence, 3) if best else None,
                    suggested_reply=record.suggested_reply if best and best.faq.id == record.matched_faq_id else None,
                )
            )
        return {
            "candidates": updated,
            "answered_statuses": statuses,
            "steps": [
                StepLog(
                    module="triage_agent.match_faqs",
                    prompt={
                        "email_count": len(candidates),
                        "answered_faq_count": len(faqs),
                        "threshold": cfg.similarity_threshold,
                    },
                    response={
                        "answered_count": sum(1 for s in statuses.values() if s.is_answered),
                        "unanswered_count": sum(1 for s in statuses.values() if not s.is_answered),
                    },
                )
            ],
        }

    def _draft_replies_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        user_id = state["user_id"]
        formatting: ReplyFormatting = state.get("formatting") or ReplyFormatting()
        candidates: list[EmailRecord] = state.get("candidates") or []
        statuses: dict[str, AnsweredStatus] = state.get("answered_statuses") or {}
        updated: list[EmailRecord] = []
        drafted = 0
        llm_drafts = 0
        for record in candidates:
            status = statuses.get(record.id)
            if not record.matched_faq_id or status is None:
                updated.append(record)
                continue
            if record.suggested_reply:
                updated.append(record)
                continue
            fallback = _template_reply(record, [m.faq for m in status.matches], formatting)
            system, user = _reply_prompts(record, status, formatting)
            reply, used_llm = self._try_generate(user_id, "generate_reply", system, user, fallback)
            drafted += 1
            llm_drafts += int(used_llm)
            updated.append(replace(record, suggested_reply=reply))
        return {
            "candidates": updated,
            "steps": [
                StepLog(
                    module="triage_agent.draft_replies",
                    prompt={"matched_count": sum(1 for r in candidates if r.matched_faq_id)},
                    response={"drafted_count": drafted, "llm_drafts": llm_drafts},
                )
            ],
        }

    def _bucket_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        user_id = state["user_id"]
        existing: dict[str, EmailRecord] | None = state.get("existing")
        if existing is None:
            existing = {e.id: e for e in self._store.list_emails(user_id)}
        candidates: list[EmailRecord] = state.get("candidates") or []
        carried: list[EmailRecord] = state.get("carried") or []

        processed: list[EmailRecord] = []
        for record in candidates:
            target = STATUS_PROCESSED if record.matched_faq_id and record.suggested_reply else STATUS_PENDING
            processed.append(transition(record, target))

        if processed:
            try:
                self._store.save_emails(user_id, processed)
            except Exception as exc:
                logger.warning("Saving triaged emails failed: %s", exc)

        emails = merge_emails(list(existing.values()), [*carried, *processed])
        counts = bucket_counts(emails)
        return {
            "processed": processed,
            "emails": emails,
            "counts": counts,
            "steps": [
                StepLog(
                    module="triage_agent.bucket",
                    prompt={"processed_count": len(processed), "carried_count": len(carried)},
                    response={"counts": counts},
                )
            ],
        }

    # -- LLM helpers ---------------------------------------------------------------

    def _log_usage(
        self,
        user_id: str,
        function_name: str,
        *,
        usage: TokenUsage | None = None,
        error: str | None = None,
    ) -> None:
        if self._usage is None:
            return
        self._usage.log(
            user_id=user_id,
            function_name=function_name,
            model=self._chat.model,
            usage=usage,
            error=error,
        )

    def _try_generate(
        self,
        user_id: str,
        function_name: str,
        system_prompt: str,
        user_prompt: str,
        fallback: str,
    ) -> tuple[str, bool]:
        if not self._chat.is_available:
            return fallback, False
        try:
            result = self._chat.complete(system_prompt=system_prompt, user_prompt=user_prompt)
        except Exception as exc:
            logger.warning("%s failed, using template fallback: %s", function_name, exc)
            self._log_usage(user_id, function_name, error=f"{type(exc).__name__}: {exc}")
            return fallback, False
        self._log_usage(user_id, function_name, usage=result.usage)
        return (result.text or fallback), bool(result.text)

    # -- Answer builder ------------------------------------------------------------

    def _build_answer_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        processed: list[EmailRecord] = state.get("processed") or []
        counts: dict[str, int] = state.get("counts") or {}
        note = state.get("fetch_note")

        lines: list[str] = []
        if note:
            lines.append(note)
        if not processed:
            lines.append(NO_MAIL_RESPONSE)
        else:
            lines.append(f"Triaged {len(processed)} support thread(s):")
            for idx, record in enumerate(processed, start=1):
                tab = bucket_for(record) or "hidden"
                line = f"{idx}. [{tab}] {record.subject}"
                if record.questions:
                    line += f"\n   Questions: {'; '.join(record.questions)}"
                if record.suggested_reply:
                    preview = record.suggested_reply[:100]
                    line += f"\n   Draft: {preview}{'...' if len(record.suggested_reply) > 100 else ''}"
                lines.append(line)
        lines.append(
            "Tabs: " + ", ".join(f"{tab}={count}" for tab, count in counts.items())
        )
        answer = _cap_words("\n\n".join(lines), self._config.max_answer_words)
        return {
            "answer": answer,
            "steps": [
                StepLog(
                    module="triage_agent.answer_generation",
                    prompt={"processed_count": len(processed)},
                    response={"text": answer},
                )
            ],
        }


# ---------------------------------------------------------------------------
# TriageAgent -- thin wrapper delegating to TriagePipeline
# ---------------------------------------------------------------------------


class TriageAgent(Agent):
    """Agent that triages the support inbox into the unanswered / ready / replied / not-relevant tabs."""

    name = "triage_agent"

    def __init__(
        self,
        *,
        gmail_service: GmailService,
        chat_service: ChatService,
        store: TriageStore,
        usage_logger: AIUsageLogger | None = None,
        config: TriageAgentConfig | None = None,
    ) -> None:
        self.gmail_service = gmail_service
        self.chat_service = chat_service
        self.store = store
        self.config = config or TriageAgentConfig()
        self._pipeline = TriagePipeline(
            gmail_service=gmail_service,
            chat_service=chat_service,
            store=store,
            config=self.config,
            usage_logger=usage_logger,
        )

    def _initial_state(self, prompt: str, context: dict[str, object] | None) -> dict[str, Any]:
        context = dict(context or {})
        user_id = str(context.get("user_id") or "")
        if not user_id:
            raise ValueError("triage_agent requires context['user_id']")
        formatting = context.get("reply_formatting")
        if not isinstance(formatting, ReplyFormatting):
            try:
                formatting = ReplyFormatting.from_settings(self.store.get_user_settings(user_id))
            except Exception as exc:
                logger.warning("Loading reply formatting failed, using defaults: %s", exc)
                formatting = ReplyFormatting()
        return {
            "prompt": prompt,
            "context": context,
            "user_id": user_id,
            "formatting": formatting,
            "steps": [],
        }

    @staticmethod
    def _result(state: dict[str, Any]) -> AgentResult:
        return AgentResult(
            response=state.get("answer", NO_MAIL_RESPONSE),
            steps=state.get("steps", []),
            payload={
                "emails": state.get("emails", []),
                "counts": state.get("counts", {}),
                "demo_mode": state.get("demo_mode", False),
            },
        )

    def run(self, prompt: str, context: dict[str, object] | None = None) -> AgentResult:
        """Fetch the inbox, triage it, and return every thread with its tab counts."""
        state = self._initial_state(prompt, context)
        state["demo_mode"] = self.gmail_service.is_demo_mode
        return self._result(self._pipeline.invoke(state))

    def run_on_messages(
        self,
        messages: list[EmailMessage],
        prompt: str = "Triage provided mail.",
        context: dict[str, object] | None = None,
    ) -> AgentResult:
        """Triage a pre-fetched list of messages. No fetch step."""
        state = self._initial_state(prompt, context)
        return self._result(self._pipeline.invoke_with_messages(state, messages))

    def refresh_matches(self, context: dict[str, object] | None = None) -> AgentResult:
        """Re-match stored open emails after the knowledge base changed."""
        state = self._initial_state("Re-match stored emails.", context)
        self._pipeline.invalidate_faqs(state["user_id"])
        return self._result(self._pipeline.invoke_rematch(state))

    def invalidate_faq_cache(self, user_id: str) -> None:
        self._pipeline.invalidate_faqs(user_id)
