"""Centralized runtime settings loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class DevUser:
    """Identity used for requests when Firebase auth is disabled (local development)."""

    uid: str
    email: str
    name: str | None


@dataclass
class Settings:
    """Application settings used across API, agents, and services."""

    app_name: str
    openai_api_key: str | None
    openai_base_url: str | None
    chat_model: str
    chat_max_output_tokens: int
    gmail_enabled: bool
    gmail_client_id: str | None
    gmail_client_secret: str | None
    gmail_refresh_token: str | None
    inbox_max_fetch: int
    firebase_enabled: bool
    firebase_credentials_path: str | None
    firebase_project_id: str | None
    sqlite_path: str
    stripe_secret_key: str | None
    faq_similarity_threshold: float
    email_analysis_cache_days: int
    default_confidence_threshold: int
    rate_limit_requests: int
    rate_limit_window_seconds: float
    inbox_min_fetch_interval_seconds: float
    dev_user: DevUser


def load_settings() -> Settings:
    """Load settings from environment with safe defaults for local development."""

    def parse_bool(value: str | None, default: bool) -> bool:
        if value is None:
            return default
        lowered = value.strip().lower()
        return lowered in {"1", "true", "yes", "on"}

    def parse_float(value: str | None, default: float) -> float:
        if value is None or value.strip() == "":
            return default
        try:
            return float(value)
        except ValueError:
            return default

    def parse_int(value: str | None, default: int) -> int:
        if value is None or value.strip() == "":
            return default
        try:
            return int(value)
        except ValueError:
            return default

    threshold = parse_float(os.getenv("FAQ_SIMILARITY_THRESHOLD"), 0.6)
    if not 0.0 < threshold < 1.0:
        threshold = 0.6

    return Settings(
        app_name=os.getenv("APP_NAME", "Support Desk"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        chat_model=os.getenv("CHAT_MODEL", "gpt-4o-mini"),
        chat_max_output_tokens=parse_int(os.getenv("CHAT_MAX_OUTPUT_TOKENS"), 800),
        gmail_enabled=parse_bool(os.getenv("GMAIL_ENABLED"), True),
        gmail_client_id=os.getenv("GMAIL_CLIENT_ID"),
        gmail_client_secret=os.getenv("GMAIL_CLIENT_SECRET"),
        gmail_refresh_token=os.getenv("GMAIL_REFRESH_TOKEN"),
        inbox_max_fetch=parse_int(os.getenv("INBOX_MAX_FETCH"), 25),
        firebase_enabled=parse_bool(os.getenv("FIREBASE_ENABLED"), False),
        firebase_credentials_path=os.getenv("FIREBASE_CREDENTIALS_PATH"),
        firebase_project_id=os.getenv("FIREBASE_PROJECT_ID"),
        sqlite_path=os.getenv("SQLITE_PATH", "data/supportdesk.db"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        faq_similarity_threshold=threshold,
        email_analysis_cache_days=parse_int(os.getenv("EMAIL_ANALYSIS_CACHE_DAYS"), 30),
        default_confidence_threshold=parse_int(os.getenv("DEFAULT_CONFIDENCE_THRESHOLD"), 80),
        rate_limit_requests=parse_int(os.getenv("RATE_LIMIT_REQUESTS"), 5),
        rate_limit_window_seconds=parse_float(os.getenv("RATE_LIMIT_WINDOW_SECONDS"), 30.0),
        inbox_min_fetch_interval_seconds=parse_float(
            os.getenv("INBOX_MIN_FETCH_INTERVAL_SECONDS"),
            30.0,
        ),
        dev_user=DevUser(
            uid=os.getenv("DEV_USER_UID", "dev-user"),
            email=os.getenv("DEV_USER_EMAIL", "agent@example.com"),
            name=os.getenv("DEV_USER_NAME", "Support Agent"),
        ),
    )
