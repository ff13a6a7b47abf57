"""FastAPI entrypoint for the support inbox, FAQ knowledge base and dispute tools."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, replace
from typing import Any, Literal

from dotenv import load_dotenv
from fastapi import Body, FastAPI, Header, HTTPException, Query

from supportdesk.agents.knowledge_agent import KnowledgeAgent
from supportdesk.agents.relevance_agent import RelevanceAgent
from supportdesk.agents.triage_agent import TriageAgent, TriageAgentConfig
from supportdesk.config import load_settings
from supportdesk.schemas import (
    AILogResponse,
    AILogsResponse,
    CommonQuestionResponse,
    CustomerSentimentResponse,
    DisputeMetricsResponse,
    DisputeResponse,
    DisputesResponse,
    EmailActionResponse,
    EmailItemResponse,
    EmailTemplatePayload,
    EmailTemplatesResponse,
    EmailTemplatesUpdateRequest,
    EmailThreadResponse,
    FAQListResponse,
    FAQResponse,
    FAQUpsertRequest,
    FAQUpsertResponse,
    InboxResponse,
    KnowledgeReportRequest,
    KnowledgeReportResponse,
    NotRelevantRequest,
    PatternGroupResponse,
    PatternGroupsResponse,
    ReplyRequest,
    SimulateRequest,
    SimulationMatchResponse,
    SimulationResponse,
    StripeKeyRequest,
    StripeKeyResponse,
    SubscriptionResponse,
    ThreadMessageResponse,
    UserSettingsResponse,
    UserSettingsUpdateRequest,
)
from supportdesk.services.ai_usage_log import AIUsageLogger
from supportdesk.services.cache import EMAIL_LIST_TTL_SECONDS, TTLCache
from supportdesk.services.chat_service import ChatService
from supportdesk.services.email_templates import ReplyFormatting, resolve_templates
from supportdesk.services.faq_matching import PatternGroup, find_matching_faq, group_similar_patterns
from supportdesk.services.firebase_auth import (
    AuthenticatedUser,
    AuthError,
    FirebaseAuthService,
    create_firestore_client,
    initialize_firebase,
)
from supportdesk.services.gmail_service import GmailService, reply_subject
from supportdesk.services.inbox_state import (
    STATUS_REMOVED_FROM_READY,
    STATUS_REPLIED,
    TAB_UNANSWERED,
    InboxTab,
    InvalidTransitionError,
    bucket_counts,
    bucket_for,
    filter_by_tab,
    transition,
)
from supportdesk.services.rate_limiter import (
    RATE_LIMIT_MESSAGE,
    FetchThrottle,
    FixedWindowRateLimiter,
    client_key_from_forwarded,
)
from supportdesk.services.stripe_service import StripeService
from supportdesk.services.triage_store import EmailRecord, FAQRecord, create_triage_store


load_dotenv()
settings = load_settings()
app = FastAPI(title=settings.app_name, version="0.1.0")
logger = logging.getLogger(__name__)


# Shared services are initialized once and reused by all agents.
firebase_app = None
firestore_client = None
if settings.firebase_enabled:
    try:
        firebase_app = initialize_firebase(
            credentials_path=settings.firebase_credentials_path,
            project_id=settings.firebase_project_id,
        )
        firestore_client = create_firestore_client(firebase_app)
    except Exception as exc:
        logger.error("Firebase init failed, using sqlite store: %s: %s", type(exc).__name__, exc)

try:
    store = create_triage_store(firestore_client=firestore_client, sqlite_path=settings.sqlite_path)
except Exception as exc:
    # Keep the API bootable even if storage wiring is temporarily broken in deployment env.
    logger.warning(
        "triage_store init failed, falling back to /tmp sqlite: %s: %s",
        type(exc).__name__,
        exc,
    )
    store = create_triage_store(firestore_client=None, sqlite_path="/tmp/supportdesk.db")

auth_service = FirebaseAuthService(
    enabled=settings.firebase_enabled,
    app=firebase_app,
    dev_user=settings.dev_user,
)
gmail_service = GmailService(
    enabled=settings.gmail_enabled,
    gmail_client_id=settings.gmail_client_id,
    gmail_client_secret=settings.gmail_client_secret,
    gmail_refresh_token=settings.gmail_refresh_token,
)
chat_service = ChatService(
    api_key=settings.openai_api_key,
    base_url=settings.openai_base_url,
    model=settings.chat_model,
    max_output_tokens=settings.chat_max_output_tokens,
)
usage_logger = AIUsageLogger(store=store)
stripe_service = StripeService(platform_api_key=settings.stripe_secret_key)

triage_agent = TriageAgent(
    gmail_service=gmail_service,
    chat_service=chat_service,
    store=store,
    usage_logger=usage_logger,
    config=TriageAgentConfig(
        max_inbox_fetch=settings.inbox_max_fetch,
        similarity_threshold=settings.faq_similarity_threshold,
        analysis_cache_days=settings.email_analysis_cache_days,
    ),
)
relevance_agent = RelevanceAgent(chat_service=chat_service, store=store, usage_logger=usage_logger)
knowledge_agent = KnowledgeAgent(
    chat_service=chat_service,
    usage_logger=usage_logger,
    similarity_threshold=settings.faq_similarity_threshold,
)

inbox_cache = TTLCache(ttl_seconds=EMAIL_LIST_TTL_SECONDS)
rate_limiter = FixedWindowRateLimiter(
    limit=settings.rate_limit_requests,
    window_seconds=settings.rate_limit_window_seconds,
)
fetch_throttle = FetchThrottle(min_interval_seconds=settings.inbox_min_fetch_interval_seconds)


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def _require_user(authorization: str | None) -> AuthenticatedUser:
    """Resolve the caller from the Firebase ID token, or fail with 401."""

    try:
        return auth_service.verify_bearer(authorization)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def _enforce_rate_limit(x_forwarded_for: str | None) -> None:
    decision = rate_limiter.hit(client_key_from_forwarded(x_forwarded_for))
    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail=RATE_LIMIT_MESSAGE,
            headers={"Retry-After": str(math.ceil(decision.retry_after_seconds))},
        )


def _serialize_email(record: EmailRecord) -> EmailItemResponse:
    return EmailItemResponse(
        id=record.id,
        thread_id=record.thread_id,
        subject=record.subject,
        sender=record.sender,
        received_at=record.received_at,
        snippet=record.content[:200],
        status=record.status,
        tab=bucket_for(record),
        questions=record.questions,
        matched_faq_id=record.matched_faq_id,
        match_confidence=record.match_confidence,
        suggested_reply=record.suggested_reply,
        irrelevance_reason=record.irrelevance_reason,
        irrelevance_category=record.irrelevance_category,
    )


def _serialize_faq(record: FAQRecord) -> FAQResponse:
    data = asdict(record)
    data.pop("user_id", None)
    return FAQResponse(**data)


def _serialize_group(group: PatternGroup) -> PatternGroupResponse:
    return PatternGroupResponse(
        representative=group.representative,
        variants=group.variants,
        source_ids=group.source_ids,
        size=group.size,
    )


def _user_settings(user_id: str) -> dict[str, Any]:
    stored = store.get_user_settings(user_id)
    return {
        "confidence_threshold": settings.default_confidence_threshold,
        **stored,
        "reply_formatting": asdict(ReplyFormatting.from_settings(stored)),
    }


def _update_cached_email(user_id: str, email: EmailRecord) -> None:
    """Swap one email into the cached inbox so the next list shows the change."""

    cached = inbox_cache.get(user_id)
    if cached is None:
        return
    inbox_cache.set(user_id, [email if e.id == email.id else e for e in cached])


def _load_email(user_id: str, email_id: str) -> EmailRecord:
    email = store.get_email(user_id, email_id)
    if email is None:
        raise KeyError(f"Email not found: {email_id}")
    return email


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------


@app.get("/api/inbox", response_model=InboxResponse)
def inbox(
    tab: InboxTab = Query(default=TAB_UNANSWERED),
    force_refresh: bool = Query(default=False),
    authorization: str | None = Header(default=None),
) -> InboxResponse:
    """Return one inbox tab, triaging fresh mail when the cached list has expired."""

    user = _require_user(authorization)
    if force_refresh:
        decision = fetch_throttle.try_acquire(user.user_id)
        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail={
                    "message": RATE_LIMIT_MESSAGE,
                    "retry_after": math.ceil(decision.retry_after_seconds),
                },
            )
        inbox_cache.invalidate(user.user_id)

    try:
        emails = inbox_cache.get(user.user_id)
        cached = emails is not None
        steps = []
        if emails is None:
            result = triage_agent.run("Triage the support inbox.", context={"user_id": user.user_id})
            emails = result.payload.get("emails", [])
            steps = result.steps
            inbox_cache.set(user.user_id, emails)
        return InboxResponse(
            status="ok",
            error=None,
            tab=tab,
            items=[_serialize_email(e) for e in filter_by_tab(emails, tab)],
            counts=bucket_counts(emails),
            demo_mode=gmail_service.is_demo_mode,
            cached=cached,
            steps=steps,
        )
    except Exception as exc:
        logger.error("Inbox triage failed: %s: %s", type(exc).__name__, exc)
        return InboxResponse(
            status="error",
            error=f"{type(exc).__name__}: {exc}",
            tab=tab,
            items=[],
            demo_mode=gmail_service.is_demo_mode,
        )


# ---------------------------------------------------------------------------
# Email actions
# ---------------------------------------------------------------------------


@app.post("/api/emails/{email_id}/reply", response_model=EmailActionResponse)
def reply_to_email(
    email_id: str,
    payload: ReplyRequest,
    authorization: str | None = Header(default=None),
    x_forwarded_for: str | None = Header(default=None),
) -> EmailActionResponse:
    """Send the human-approved reply in the customer's thread and mark it replied."""

    user = _require_user(authorization)
    _enforce_rate_limit(x_forwarded_for)
    try:
        email = _load_email(user.user_id, email_id)
        if email.status == STATUS_REPLIED:
            return EmailActionResponse(status="error", error="Email has already been replied to.")
        try:
            replied = transition(email, STATUS_REPLIED)
        except InvalidTransitionError as exc:
            logger.info("reply rejected for %s: %s", email_id, exc)
            return EmailActionResponse(status="error", error=f"{type(exc).__name__}: {exc}")
        sent = gmail_service.send_reply(
            thread_id=email.thread_id,
            to=email.sender,
            subject=payload.subject or reply_subject(email.subject),
            body=payload.body,
            in_reply_to=email.message_id_header,
            references=email.references or email.message_id_header,
        )
        if not sent:
            return EmailActionResponse(status="error", error="Gmail did not accept the reply.")
        updated = replace(replied, suggested_reply=payload.body)
        store.update_email(updated)
        if email.matched_faq_id:
            store.increment_faq_use(user.user_id, email.matched_faq_id)
        _update_cached_email(user.user_id, updated)
        return EmailActionResponse(
            status="ok",
            error=None,
            response="Reply sent.",
            email=_serialize_email(updated),
        )
    except Exception as exc:
        return EmailActionResponse(status="error", error=f"{type(exc).__name__}: {exc}")


@app.post("/api/emails/{email_id}/not-relevant", response_model=EmailActionResponse)
def mark_not_relevant(
    email_id: str,
    payload: NotRelevantRequest | None = Body(default=None),
    authorization: str | None = Header(default=None),
    x_forwarded_for: str | None = Header(default=None),
) -> EmailActionResponse:
    user = _require_user(authorization)
    payload = payload or NotRelevantRequest()
    if payload.analyze and not payload.reason:
        _enforce_rate_limit(x_forwarded_for)
    try:
        updated, _steps = relevance_agent.mark_not_relevant(
            user_id=user.user_id,
            email_id=email_id,
            reason=payload.reason,
            analyze=payload.analyze,
        )
        _update_cached_email(user.user_id, updated)
        return EmailActionResponse(
            status="ok",
            error=None,
            response=updated.irrelevance_reason,
            email=_serialize_email(updated),
        )
    except Exception as exc:
        return EmailActionResponse(status="error", error=f"{type(exc).__name__}: {exc}")


@app.post("/api/emails/{email_id}/restore", response_model=EmailActionResponse)
def restore_email(
    email_id: str,
    authorization: str | None = Header(default=None),
) -> EmailActionResponse:
    user = _require_user(authorization)
    try:
        updated = relevance_agent.restore(user_id=user.user_id, email_id=email_id)
        _update_cached_email(user.user_id, updated)
        return EmailActionResponse(
            status="ok",
            error=None,
            response="Email restored.",
            email=_serialize_email(updated),
        )
    except Exception as exc:
        return EmailActionResponse(status="error", error=f"{type(exc).__name__}: {exc}")


@app.post("/api/emails/{email_id}/remove-from-ready", response_model=EmailActionResponse)
def remove_from_ready(
    email_id: str,
    authorization: str | None = Header(default=None),
) -> EmailActionResponse:
    """Hide a drafted email from the ready tab without replying."""

    user = _require_user(authorization)
    try:
        email = _load_email(user.user_id, email_id)
        updated = transition(email, STATUS_REMOVED_FROM_READY)
        store.update_email(updated)
        _update_cached_email(user.user_id, updated)
        return EmailActionResponse(
            status="ok",
            error=None,
            response="Removed from ready to reply.",
            email=_serialize_email(updated),
        )
    except (InvalidTransitionError, KeyError) as exc:
        logger.info("remove-from-ready rejected for %s: %s", email_id, exc)
        return EmailActionResponse(status="error", error=f"{type(exc).__name__}: {exc}")
    except Exception as exc:
        return EmailActionResponse(status="error", error=f"{type(exc).__name__}: {exc}")


@app.get("/api/emails/{email_id}/thread", response_model=EmailThreadResponse)
def email_thread(
    email_id: str,
    authorization: str | None = Header(default=None),
) -> EmailThreadResponse:
    """Full conversation behind one inbox email, oldest message first."""

    user = _require_user(authorization)
    try:
        email = _load_email(user.user_id, email_id)
        messages = gmail_service.get_thread(email.thread_id)
        return EmailThreadResponse(
            status="ok",
            error=None,
            thread_id=email.thread_id,
            messages=[
                ThreadMessageResponse(
                    id=m.id,
                    sender=m.sender,
                    recipient=m.recipient,
                    subject=m.subject,
                    date=m.date,
                    body=m.body,
                )
                for m in messages
            ],
        )
    except Exception as exc:
        return EmailThreadResponse(status="error", error=f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# FAQ knowledge base
# ---------------------------------------------------------------------------


@app.get("/api/faqs", response_model=FAQListResponse)
def list_faqs(authorization: str | None = Header(default=None)) -> FAQListResponse:
    user = _require_user(authorization)
    try:
        faqs = store.list_faqs(user.user_id)
        return FAQListResponse(status="ok", error=None, faqs=[_serialize_faq(f) for f in faqs])
    except Exception as exc:
        return FAQListResponse(status="error", error=f"{type(exc).__name__}: {exc}")


@app.post("/api/faqs", response_model=FAQUpsertResponse)
def upsert_faq(
    payload: FAQUpsertRequest,
    authorization: str | None = Header(default=None),
) -> FAQUpsertResponse:
    """Create or update an FAQ, then re-match open emails against the new answer."""

    user = _require_user(authorization)
    try:
        data = payload.model_dump()
        faq = store.upsert_faq(user.user_id, faq_id=data.pop("id"), **data)
        rematched = 0
        if faq.is_answered:
            result = triage_agent.refresh_matches(context={"user_id": user.user_id})
            emails = result.payload.get("emails", [])
            rematched = sum(1 for e in emails if e.matched_faq_id == faq.id)
            inbox_cache.set(user.user_id, emails)
        else:
            triage_agent.invalidate_faq_cache(user.user_id)
        return FAQUpsertResponse(
            status="ok",
            error=None,
            faq=_serialize_faq(faq),
            rematched_emails=rematched,
        )
    except Exception as exc:
        return FAQUpsertResponse(status="error", error=f"{type(exc).__name__}: {exc}")


@app.delete("/api/faqs/{faq_id}", response_model=FAQListResponse)
def delete_faq(
    faq_id: str,
    authorization: str | None = Header(default=None),
) -> FAQListResponse:
    user = _require_user(authorization)
    try:
        if not store.delete_faq(user.user_id, faq_id):
            return FAQListResponse(status="error", error=f"FAQ not found: {faq_id}")
        result = triage_agent.refresh_matches(context={"user_id": user.user_id})
        inbox_cache.set(user.user_id, result.payload.get("emails", []))
        faqs = store.list_faqs(user.user_id)
        return FAQListResponse(status="ok", error=None, faqs=[_serialize_faq(f) for f in faqs])
    except Exception as exc:
        return FAQListResponse(status="error", error=f"{type(exc).__name__}: {exc}")


@app.get("/api/faqs/patterns", response_model=PatternGroupsResponse)
def faq_patterns(
    threshold: float | None = Query(default=None, gt=0.0, lt=1.0),
    authorization: str | None = Header(default=None),
) -> PatternGroupsResponse:
    """Group the questions of unanswered emails into candidate FAQs."""

    user = _require_user(authorization)
    effective = threshold or settings.faq_similarity_threshold
    try:
        faqs = store.list_faqs(user.user_id)
        emails = filter_by_tab(store.list_emails(user.user_id), TAB_UNANSWERED)
        items = [
            (question, [email.id])
            for email in emails
            for question in email.questions
            if find_matching_faq(question, faqs, threshold=effective) is None
        ]
        groups = group_similar_patterns(items, threshold=effective)
        return PatternGroupsResponse(
            status="ok",
            error=None,
            threshold=effective,
            groups=[_serialize_group(g) for g in groups],
        )
    except Exception as exc:
        return PatternGroupsResponse(status="error", error=f"{type(exc).__name__}: {exc}", threshold=effective)


@app.post("/api/faqs/simulate", response_model=SimulationResponse)
def simulate_email(
    payload: SimulateRequest,
    authorization: str | None = Header(default=None),
) -> SimulationResponse:
    """Preview which FAQs would answer an email, without touching the inbox."""

    user = _require_user(authorization)
    try:
        user_settings = _user_settings(user.user_id)
        result = knowledge_agent.simulate_email(
            subject=payload.subject,
            body=payload.body,
            faqs=store.list_faqs(user.user_id),
            confidence_threshold=int(user_settings["confidence_threshold"]),
            formatting=ReplyFormatting.from_settings(user_settings),
        )
        return SimulationResponse(
            status="ok",
            error=None,
            matches=[
                SimulationMatchResponse(
                    faq_id=m.faq.id,
                    question=m.faq.question,
                    confidence=m.confidence,
                    suggested_reply=m.suggested_reply,
                )
                for m in result.matches
            ],
            requires_human_response=result.requires_human_response,
            reason=result.reason,
        )
    except Exception as exc:
        return SimulationResponse(status="error", error=f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# Knowledge report
# ---------------------------------------------------------------------------


@app.post("/api/knowledge/report", response_model=KnowledgeReportResponse)
def knowledge_report(
    payload: KnowledgeReportRequest | None = Body(default=None),
    authorization: str | None = Header(default=None),
    x_forwarded_for: str | None = Header(default=None),
) -> KnowledgeReportResponse:
    user = _require_user(authorization)
    _enforce_rate_limit(x_forwarded_for)
    payload = payload or KnowledgeReportRequest()
    try:
        emails = [e for e in store.list_emails(user.user_id) if not e.is_not_relevant]
        if payload.email_ids:
            wanted = set(payload.email_ids)
            emails = [e for e in emails if e.id in wanted]
        report, steps = knowledge_agent.generate_insights(
            emails[: payload.limit],
            user_id=user.user_id,
            faqs=store.list_faqs(user.user_id),
        )
        return KnowledgeReportResponse(
            status="ok",
            error=None,
            email_count=report.email_count,
            key_customer_points=report.key_customer_points,
            customer_sentiment=CustomerSentimentResponse(**asdict(report.customer_sentiment)),
            common_questions=[CommonQuestionResponse(**asdict(q)) for q in report.common_questions],
            recommended_actions=report.recommended_actions,
            faq_groups=[_serialize_group(g) for g in report.faq_groups],
            steps=steps,
        )
    except Exception as exc:
        return KnowledgeReportResponse(status="error", error=f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# AI usage logs
# ---------------------------------------------------------------------------


@app.get("/api/logs", response_model=AILogsResponse)
def ai_logs(
    sort_field: str = Query(default="timestamp"),
    direction: Literal["asc", "desc"] = Query(default="desc"),
    limit: int = Query(default=100, ge=1, le=500),
    authorization: str | None = Header(default=None),
) -> AILogsResponse:
    user = _require_user(authorization)
    try:
        records = usage_logger.list_logs(
            user_id=user.user_id,
            sort_field=sort_field,
            direction=direction,
            limit=limit,
        )
        logs = []
        for record in records:
            data = asdict(record)
            data.pop("user_id", None)
            logs.append(AILogResponse(**data))
        return AILogsResponse(status="ok", error=None, logs=logs)
    except Exception as exc:
        return AILogsResponse(status="error", error=f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# User settings and dispute templates
# ---------------------------------------------------------------------------


@app.get("/api/settings/user", response_model=UserSettingsResponse)
def get_user_settings(authorization: str | None = Header(default=None)) -> UserSettingsResponse:
    user = _require_user(authorization)
    try:
        return UserSettingsResponse(status="ok", error=None, settings=_user_settings(user.user_id))
    except Exception as exc:
        return UserSettingsResponse(status="error", error=f"{type(exc).__name__}: {exc}")


@app.post("/api/settings/user", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsUpdateRequest,
    authorization: str | None = Header(default=None),
) -> UserSettingsResponse:
    user = _require_user(authorization)
    try:
        updates: dict[str, object] = {}
        if payload.confidence_threshold is not None:
            updates["confidence_threshold"] = payload.confidence_threshold
        if payload.reply_formatting is not None:
            current = _user_settings(user.user_id)["reply_formatting"]
            updates["reply_formatting"] = {
                **current,
                **payload.reply_formatting.model_dump(exclude_none=True),
            }
        store.save_user_settings(user.user_id, updates)
        return UserSettingsResponse(status="ok", error=None, settings=_user_settings(user.user_id))
    except Exception as exc:
        return UserSettingsResponse(status="error", error=f"{type(exc).__name__}: {exc}")


@app.get("/api/settings/email-templates", response_model=EmailTemplatesResponse)
def get_email_templates(authorization: str | None = Header(default=None)) -> EmailTemplatesResponse:
    user = _require_user(authorization)
    try:
        templates = resolve_templates(store.get_email_templates(user.user_id))
        return EmailTemplatesResponse(
            status="ok",
            error=None,
            templates=[EmailTemplatePayload(**asdict(t)) for t in templates],
        )
    except Exception as exc:
        return EmailTemplatesResponse(status="error", error=f"{type(exc).__name__}: {exc}")


@app.post("/api/settings/email-templates", response_model=EmailTemplatesResponse)
def update_email_templates(
    payload: EmailTemplatesUpdateRequest,
    authorization: str | None = Header(default=None),
) -> EmailTemplatesResponse:
    user = _require_user(authorization)
    try:
        store.save_email_templates(user.user_id, [t.model_dump() for t in payload.templates])
        templates = resolve_templates(store.get_email_templates(user.user_id))
        return EmailTemplatesResponse(
            status="ok",
            error=None,
            templates=[EmailTemplatePayload(**asdict(t)) for t in templates],
        )
    except Exception as exc:
        return EmailTemplatesResponse(status="error", error=f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# Stripe disputes
# ---------------------------------------------------------------------------


@app.post("/api/stripe/key", response_model=StripeKeyResponse)
def save_stripe_key(
    payload: StripeKeyRequest,
    authorization: str | None = Header(default=None),
) -> StripeKeyResponse:
    user = _require_user(authorization)
    try:
        store.set_stripe_key(user.user_id, payload.api_key.strip())
        return StripeKeyResponse(status="ok", error=None, has_stripe_key=True)
    except Exception as exc:
        return StripeKeyResponse(status="error", error=f"{type(exc).__name__}: {exc}", has_stripe_key=False)


@app.delete("/api/stripe/key", response_model=StripeKeyResponse)
def delete_stripe_key(authorization: str | None = Header(default=None)) -> StripeKeyResponse:
    user = _require_user(authorization)
    try:
        store.delete_stripe_key(user.user_id)
        return StripeKeyResponse(status="ok", error=None, has_stripe_key=False)
    except Exception as exc:
        return StripeKeyResponse(status="error", error=f"{type(exc).__name__}: {exc}", has_stripe_key=True)


@app.get("/api/stripe/disputes", response_model=DisputesResponse)
def stripe_disputes(authorization: str | None = Header(default=None)) -> DisputesResponse:
    """Open disputes for the caller's Stripe account."""

    user = _require_user(authorization)
    try:
        api_key = store.get_stripe_key(user.user_id)
        if not api_key:
            return DisputesResponse(status="error", error="No Stripe API key configured.")
        disputes = stripe_service.list_open_disputes(api_key)
        return DisputesResponse(
            status="ok",
            error=None,
            disputes=[DisputeResponse(**asdict(d)) for d in disputes],
        )
    except Exception as exc:
        logger.warning("Stripe dispute listing failed: %s: %s", type(exc).__name__, exc)
        return DisputesResponse(status="error", error=f"{type(exc).__name__}: {exc}")


@app.get("/api/stripe/metrics", response_model=DisputeMetricsResponse)
def stripe_metrics(authorization: str | None = Header(default=None)) -> DisputeMetricsResponse:
    user = _require_user(authorization)
    try:
        metrics = stripe_service.dispute_metrics(store.get_stripe_key(user.user_id))
        return DisputeMetricsResponse(status="ok", error=None, **asdict(metrics))
    except Exception as exc:
        return DisputeMetricsResponse(status="error", error=f"{type(exc).__name__}: {exc}", has_stripe_key=True)


@app.get("/api/stripe/subscription", response_model=SubscriptionResponse)
def stripe_subscription(
    customer_id: str = Query(min_length=1),
    authorization: str | None = Header(default=None),
) -> SubscriptionResponse:
    _require_user(authorization)
    try:
        active, subscription = stripe_service.has_active_subscription(customer_id)
        return SubscriptionResponse(
            status="ok",
            error=None,
            has_active_subscription=active,
            subscription=subscription,
        )
    except Exception as exc:
        return SubscriptionResponse(status="error", error=f"{type(exc).__name__}: {exc}")
