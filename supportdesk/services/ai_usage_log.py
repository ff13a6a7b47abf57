"""Best-effort logging of LLM token usage and cost per user."""

from __future__ import annotations

import logging
import uuid

from supportdesk.services.chat_service import TokenUsage
from supportdesk.services.triage_store import AILogRecord, TriageStore, utc_now_iso

logger = logging.getLogger(__name__)

# USD per 1K tokens.
MODEL_PRICING: dict[str, dict[str, float]] = {
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-3.5-turbo": {"input": 0.0015, "output": 0.002},
    "gpt-4-turbo-preview": {"input": 0.01, "output": 0.03},
    "gpt-4o-mini": {"input": 0.01, "output": 0.03},
}
DEFAULT_PRICING_MODEL = "gpt-4o-mini"


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    pricing = MODEL_PRICING.get(model.strip().lower(), MODEL_PRICING[DEFAULT_PRICING_MODEL])
    return (input_tokens / 1000) * pricing["input"] + (output_tokens / 1000) * pricing["output"]


class AIUsageLogger:
    """Writes AIUsage rows to the store; never raises into the calling request."""

    def __init__(self, *, store: TriageStore) -> None:
        self._store = store

    def log(
        self,
        *,
        user_id: str,
        function_name: str,
        model: str,
        usage: TokenUsage | None = None,
        error: str | None = None,
    ) -> AILogRecord | None:
        usage = usage or TokenUsage()
        record = AILogRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            function_name=function_name,
            timestamp=utc_now_iso(),
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            cost=round(calculate_cost(model, usage.input_tokens, usage.output_tokens), 6),
            status="failed" if error else "success",
            error=error,
        )
        try:
            self._store.insert_ai_log(record)
        except Exception as exc:
            logger.warning("AI usage log write failed for %s: %s", function_name, exc)
            return None
        return record

    def list_logs(
        self,
        *,
        user_id: str,
        sort_field: str = "timestamp",
        direction: str = "desc",
        limit: int = 100,
    ) -> list[AILogRecord]:
        return self._store.list_ai_logs(
            user_id,
            sort_field=sort_field,
            descending=direction.strip().lower() != "asc",
            limit=limit,
        )
