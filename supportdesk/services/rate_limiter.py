"""Fixed-window request limiter and per-user Gmail fetch throttle."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from cachetools import TTLCache

RATE_LIMIT_MESSAGE = "Too many requests, please try again later"

# Keys come from client headers, so tracking is bounded in size and age.
MAX_TRACKED_KEYS = 10_000


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: float = 0.0


class FixedWindowRateLimiter:
    """Allow ``limit`` hits per ``window_seconds`` per client key."""

    def __init__(
        self,
        *,
        limit: int = 5,
        window_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = MAX_TRACKED_KEYS,
    ) -> None:
        self._limit = max(1, int(limit))
        self._window = float(window_seconds)
        self._clock = clock
        # {key: (window_start, count)}, dropped once the window has passed
        self._windows: TTLCache[str, tuple[float, int]] = TTLCache(
            maxsize=max_keys, ttl=self._window, timer=clock
        )
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._windows.expire()
            return len(self._windows)

    def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self._window:
                started, count = now, 0
            if count >= self._limit:
                return RateLimitDecision(
                    allowed=False,
                    retry_after_seconds=max(0.0, self._window - (now - started)),
                )
            self._windows[key] = (started, count + 1)
            return RateLimitDecision(allowed=True)


class FetchThrottle:
    """At most one forced inbox refresh per ``min_interval_seconds`` per user."""

    def __init__(
        self,
        *,
        min_interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = MAX_TRACKED_KEYS,
    ) -> None:
        self._min_interval = float(min_interval_seconds)
        self._clock = clock
        self._last_fetch: TTLCache[str, float] = TTLCache(
            maxsize=max_keys, ttl=self._min_interval, timer=clock
        )
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._last_fetch.expire()
            return len(self._last_fetch)

    def try_acquire(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            last = self._last_fetch.get(key)
            if last is not None and now - last < self._min_interval:
                return RateLimitDecision(
                    allowed=False,
                    retry_after_seconds=self._min_interval - (now - last),
                )
            self._last_fetch[key] = now
            return RateLimitDecision(allowed=True)


def client_key_from_forwarded(forwarded_for: str | None, fallback: str | None = None) -> str:
    """First address in ``X-Forwarded-For``, else the socket peer, else 'unknown'."""

    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return fallback or "unknown"
