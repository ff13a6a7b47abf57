"""Opportunistic in-process key/value cache with fixed expiry windows."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

EMAIL_LIST_TTL_SECONDS = 5 * 60
ANSWERED_FAQS_TTL_SECONDS = 30 * 60
QUESTIONS_TTL_SECONDS = 24 * 60 * 60


class TTLCache:
    """Entries expire a fixed number of seconds after they were written."""

    def __init__(self, *, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            written_at, value = entry
            if self._clock() - written_at >= self._ttl:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def is_fresh(saved_at: datetime | None, *, max_age: timedelta, now: datetime | None = None) -> bool:
    """True when a persisted timestamp is still inside its expiry window."""

    if saved_at is None:
        return False
    now = now or datetime.now(tz=UTC)
    return now - saved_at < max_age
