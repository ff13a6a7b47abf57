"""Pydantic schemas for API request/response contracts."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class StepLog(BaseModel):
    """Standard execution step shape emitted by every pipeline stage."""

    module: str
    prompt: dict[str, Any]
    response: dict[str, Any]


# ---------------------------------------------------------------------------
# Inbox schemas
# ---------------------------------------------------------------------------


class EmailItemResponse(BaseModel):
    """One inbox thread with its triage state."""

    id: str
    thread_id: str
    subject: str
    sender: str
    received_at: str
    snippet: str
    status: str
    tab: str | None
    questions: list[str] = Field(default_factory=list)
    matched_faq_id: str | None = None
    match_confidence: float | None = None
    suggested_reply: str | None = None
    irrelevance_reason: str | None = None
    irrelevance_category: str | None = None


class InboxResponse(BaseModel):
    """Response schema for `GET /api/inbox`."""

    status: Literal["ok", "error"]
    error: str | None
    tab: str
    items: list[EmailItemResponse]
    counts: dict[str, int] = Field(default_factory=dict)
    demo_mode: bool = False
    cached: bool = False
    steps: list[StepLog] = Field(default_factory=list)


class ReplyRequest(BaseModel):
    """Human-approved (optionally edited) reply for one email."""

    body: str = Field(min_length=1, description="Final reply text to send")
    subject: str | None = Field(default=None, description="Override reply subject (defaults to Re: <subject>)")


class NotRelevantRequest(BaseModel):
    reason: str | None = Field(default=None, description="Agent-provided reason; skips LLM analysis when set")
    analyze: bool = Field(default=True, description="Ask the LLM to categorize why the email is not relevant")


class EmailActionResponse(BaseModel):
    """Response schema for per-email actions (reply, not relevant, restore, remove)."""

    status: Literal["ok", "error"]
    error: str | None
    response: str | None = None
    email: EmailItemResponse | None = None


class ThreadMessageResponse(BaseModel):
    id: str
    sender: str
    recipient: str
    subject: str
    date: str
    body: str


class EmailThreadResponse(BaseModel):
    """Response schema for `GET /api/emails/{email_id}/thread`."""

    status: Literal["ok", "error"]
    error: str | None
    thread_id: str | None = None
    messages: list[ThreadMessageResponse] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# FAQ schemas
# ---------------------------------------------------------------------------


class FAQUpsertRequest(BaseModel):
    id: str | None = Field(default=None, description="Existing FAQ id; falls back to matching by question")
    question: str = Field(min_length=1)
    answer: str = Field(default="", description="Reply template; empty keeps the question unanswered")
    category: str | None = None
    instructions: str | None = None
    email_ids: list[str] = Field(default_factory=list)
    similar_patterns: list[str] = Field(default_factory=list)
    requires_customer_specific_info: bool = False


class FAQResponse(BaseModel):
    id: str
    question: str
    answer: str
    category: str
    instructions: str | None
    email_ids: list[str]
    similar_patterns: list[str]
    confidence: float
    requires_customer_specific_info: bool
    use_count: int
    created_at: str
    updated_at: str


class FAQListResponse(BaseModel):
    status: Literal["ok", "error"]
    error: str | None
    faqs: list[FAQResponse] = Field(default_factory=list)


class FAQUpsertResponse(BaseModel):
    status: Literal["ok", "error"]
    error: str | None
    faq: FAQResponse | None = None
    rematched_emails: int = 0


class PatternGroupResponse(BaseModel):
    representative: str
    variants: list[str]
    source_ids: list[str]
    size: int


class PatternGroupsResponse(BaseModel):
    """Unanswered questions grouped into candidate FAQs."""

    status: Literal["ok", "error"]
    error: str | None
    threshold: float
    groups: list[PatternGroupResponse] = Field(default_factory=list)


class SimulateRequest(BaseModel):
    subject: str = ""
    body: str = Field(min_length=1)


class SimulationMatchResponse(BaseModel):
    faq_id: str
    question: str
    confidence: int
    suggested_reply: str


class SimulationResponse(BaseModel):
    status: Literal["ok", "error"]
    error: str | None
    matches: list[SimulationMatchResponse] = Field(default_factory=list)
    requires_human_response: bool = True
    reason: str | None = None


# ---------------------------------------------------------------------------
# Knowledge report schemas
# ---------------------------------------------------------------------------


class KnowledgeReportRequest(BaseModel):
    email_ids: list[str] | None = Field(default=None, description="Restrict the report to these emails")
    limit: int = Field(default=20, ge=1, le=100, description="Max emails to include")


class CommonQuestionResponse(BaseModel):
    question: str
    typical_answer: str
    frequency: int


class CustomerSentimentResponse(BaseModel):
    overall: str
    details: str


class KnowledgeReportResponse(BaseModel):
    status: Literal["ok", "error"]
    error: str | None
    email_count: int = 0
    key_customer_points: list[str] = Field(default_factory=list)
    customer_sentiment: CustomerSentimentResponse | None = None
    common_questions: list[CommonQuestionResponse] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)
    faq_groups: list[PatternGroupResponse] = Field(default_factory=list)
    steps: list[StepLog] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Logs and settings
# ---------------------------------------------------------------------------


class AILogResponse(BaseModel):
    id: str
    function_name: str
    timestamp: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: float
    status: str
    error: str | None


class AILogsResponse(BaseModel):
    status: Literal["ok", "error"]
    error: str | None
    logs: list[AILogResponse] = Field(default_factory=list)


class ReplyFormattingPayload(BaseModel):
    greeting: str | None = None
    signature: str | None = None
    custom_prompt: str | None = None


class UserSettingsUpdateRequest(BaseModel):
    confidence_threshold: int | None = Field(default=None, ge=0, le=100)
    reply_formatting: ReplyFormattingPayload | None = None


class UserSettingsResponse(BaseModel):
    status: Literal["ok", "error"]
    error: str | None
    settings: dict[str, Any] = Field(default_factory=dict)


class EmailTemplatePayload(BaseModel):
    id: str = Field(min_length=1)
    name: str
    subject: str
    body: str
    order: int = 0


class EmailTemplatesUpdateRequest(BaseModel):
    templates: list[EmailTemplatePayload]


class EmailTemplatesResponse(BaseModel):
    status: Literal["ok", "error"]
    error: str | None
    templates: list[EmailTemplatePayload] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Stripe schemas
# ---------------------------------------------------------------------------


class StripeKeyRequest(BaseModel):
    api_key: str = Field(min_length=1, pattern=r"^(sk|rk)_", description="Stripe secret or restricted key")


class StripeKeyResponse(BaseModel):
    status: Literal["ok", "error"]
    error: str | None
    has_stripe_key: bool


class DisputeResponse(BaseModel):
    id: str
    status: str
    reason: str | None
    amount: int
    currency: str
    created: int | None
    due_by: int | None
    charge_id: str | None
    customer_email: str | None
    customer_name: str | None


class DisputesResponse(BaseModel):
    status: Literal["ok", "error"]
    error: str | None
    disputes: list[DisputeResponse] = Field(default_factory=list)


class DisputeMetricsResponse(BaseModel):
    status: Literal["ok", "error"]
    error: str | None
    active_disputes: int = 0
    response_drafts: int = 0
    has_stripe_key: bool = False


class SubscriptionResponse(BaseModel):
    status: Literal["ok", "error"]
    error: str | None
    has_active_subscription: bool = False
    subscription: dict[str, Any] | None = None
