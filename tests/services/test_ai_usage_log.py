from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from supportdesk.services.ai_usage_log import AIUsageLogger, calculate_cost
from supportdesk.services.chat_service import TokenUsage
from supportdesk.services.triage_store import AILogRecord


@dataclass
class DummyLogStore:
    rows: list[AILogRecord] = field(default_factory=list)
    fail: bool = False
    list_calls: list[dict] = field(default_factory=list)

    def insert_ai_log(self, record: AILogRecord) -> None:
        if self.fail:
            raise RuntimeError("database is locked")
        self.rows.append(record)

    def list_ai_logs(self, user_id: str, **kwargs) -> list[AILogRecord]:
        self.list_calls.append({"user_id": user_id, **kwargs})
        return list(self.rows)


def test_calculate_cost_uses_per_thousand_pricing() -> None:
    assert calculate_cost("gpt-4", 1000, 1000) == pytest.approx(0.09)
    assert calculate_cost("GPT-3.5-Turbo ", 2000, 500) == pytest.approx(0.004)


def test_unknown_model_falls_back_to_default_pricing() -> None:
    assert calculate_cost("some-new-model", 1000, 0) == calculate_cost("gpt-4o-mini", 1000, 0)


def test_log_records_success_row() -> None:
    store = DummyLogStore()
    logger = AIUsageLogger(store=store)

    record = logger.log(
        user_id="agent@example.com",
        function_name="analyze_email",
        model="gpt-4",
        usage=TokenUsage(input_tokens=500, output_tokens=100, total_tokens=600),
    )

    assert record is not None
    assert store.rows == [record]
    assert record.status == "success"
    assert record.total_tokens == 600
    assert record.cost == pytest.approx(0.021)


def test_log_records_failures_with_zero_usage() -> None:
    store = DummyLogStore()

    record = AIUsageLogger(store=store).log(
        user_id="u",
        function_name="generate_reply",
        model="gpt-4o-mini",
        error="RuntimeError: timeout",
    )

    assert record is not None
    assert record.status == "failed"
    assert record.total_tokens == 0
    assert record.cost == 0


def test_log_write_failure_never_raises() -> None:
    logger = AIUsageLogger(store=DummyLogStore(fail=True))

    assert logger.log(user_id="u", function_name="analyze_email", model="gpt-4o-mini") is None


def test_list_logs_maps_direction() -> None:
    store = DummyLogStore()

    AIUsageLogger(store=store).list_logs(user_id="u", sort_field="cost", direction="ASC", limit=5)

    assert store.list_calls == [
        {"user_id": "u", "sort_field": "cost", "descending": False, "limit": 5}
    ]
