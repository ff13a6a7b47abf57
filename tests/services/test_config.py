from __future__ import annotations

import pytest

from supportdesk.config import load_settings

_ENV_KEYS = [
    "OPENAI_API_KEY",
    "CHAT_MODEL",
    "GMAIL_ENABLED",
    "FIREBASE_ENABLED",
    "FAQ_SIMILARITY_THRESHOLD",
    "EMAIL_ANALYSIS_CACHE_DAYS",
    "INBOX_MAX_FETCH",
    "RATE_LIMIT_REQUESTS",
    "RATE_LIMIT_WINDOW_SECONDS",
    "DEV_USER_EMAIL",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_for_local_development() -> None:
    settings = load_settings()

    assert settings.chat_model == "gpt-4o-mini"
    assert settings.gmail_enabled is True
    assert settings.firebase_enabled is False
    assert settings.faq_similarity_threshold == 0.6
    assert settings.email_analysis_cache_days == 30
    assert settings.default_confidence_threshold == 80
    assert settings.rate_limit_requests == 5
    assert settings.rate_limit_window_seconds == 30.0
    assert settings.dev_user.email == "agent@example.com"


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("GMAIL_ENABLED", "false")
    monkeypatch.setenv("FIREBASE_ENABLED", "yes")
    monkeypatch.setenv("FAQ_SIMILARITY_THRESHOLD", "0.75")
    monkeypatch.setenv("INBOX_MAX_FETCH", "10")
    monkeypatch.setenv("DEV_USER_EMAIL", "me@example.com")

    settings = load_settings()

    assert settings.gmail_enabled is False
    assert settings.firebase_enabled is True
    assert settings.faq_similarity_threshold == 0.75
    assert settings.inbox_max_fetch == 10
    assert settings.dev_user.email == "me@example.com"


@pytest.mark.parametrize("raw", ["0", "1", "1.5", "-0.2", "not-a-number"])
def test_out_of_range_similarity_threshold_falls_back(monkeypatch, raw: str) -> None:
    monkeypatch.setenv("FAQ_SIMILARITY_THRESHOLD", raw)

    assert load_settings().faq_similarity_threshold == 0.6


def test_invalid_numbers_fall_back(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_REQUESTS", "many")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_SECONDS", "")

    settings = load_settings()

    assert settings.rate_limit_requests == 5
    assert settings.rate_limit_window_seconds == 30.0
