"""Per-key sliding-window admission control.

State is process-local and rebuilt from zero on restart, so the limits hold
for a single process only. Swap :class:`SlidingWindowRateLimiter` for a
shared store if several processes must share one budget.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from taskweave.config import settings

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch milliseconds

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "resetAt": self.reset_at,
        }


class SlidingWindowRateLimiter:
    def __init__(
        self,
        default_limit: int | None = None,
        default_window_ms: int | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.default_limit = (
            default_limit if default_limit is not None else settings.rate_limit_default
        )
        self.default_window_ms = (
            default_window_ms
            if default_window_ms is not None
            else settings.rate_limit_window_ms
        )
        self._clock = clock or (lambda: time.time() * 1000)
        self._lock = threading.Lock()
        self._entries: dict[str, deque[float]] = {}
        self._windows: dict[str, int] = {}

    def _resolve(self, limit: int | None, window_ms: int | None) -> tuple[int, int]:
        return (
            limit if limit is not None else self.default_limit,
            window_ms if window_ms is not None else self.default_window_ms,
        )

    def _prune(self, key: str, now: float, window_ms: int) -> deque[float]:
        stamps = self._entries.setdefault(key, deque())
        while stamps and stamps[0] <= now - window_ms:
            stamps.popleft()
        return stamps

    def check(
        self, key: str, limit: int | None = None, window_ms: int | None = None
    ) -> RateLimitResult:
        """Admit or deny one request for *key*.

        An admitted request is recorded before returning; a denied one is not.
        """
        limit, window_ms = self._resolve(limit, window_ms)
        with self._lock:
            now = self._clock()
            stamps = self._prune(key, now, window_ms)
            self._windows[key] = window_ms
            if len(stamps) >= limit:
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=(stamps[0] if stamps else now) + window_ms,
                )
            stamps.append(now)
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit - len(stamps),
                reset_at=stamps[0] + window_ms,
            )

    def remaining(
        self, key: str, limit: int | None = None, window_ms: int | None = None
    ) -> int:
        limit, window_ms = self._resolve(limit, window_ms)
        with self._lock:
            stamps = self._prune(key, self._clock(), window_ms)
            return max(0, limit - len(stamps))

    def clear(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._windows.pop(key, None)

    def cleanup(self) -> int:
        """Drop keys whose window holds no recent request. Returns the count removed."""
        removed = 0
        with self._lock:
            now = self._clock()
            for key in list(self._entries):
                window_ms = self._windows.get(key, self.default_window_ms)
                if not self._prune(key, now, window_ms):
                    del self._entries[key]
                    self._windows.pop(key, None)
                    removed += 1
        if removed:
            log.debug("Rate limiter cleanup removed %d idle keys", removed)
        return removed

    def __len__(self) -> int:
        return len(self._entries)

    async def run_cleanup(self, interval: float | None = None) -> None:
        interval = interval or settings.rate_limit_cleanup_interval
        while True:
            await asyncio.sleep(interval)
            self.cleanup()


default_limiter = SlidingWindowRateLimiter()


def check_rate_limit(
    key: str, limit: int | None = None, window_ms: int | None = None
) -> RateLimitResult:
    return default_limiter.check(key, limit, window_ms)


def get_remaining_requests(
    key: str, limit: int | None = None, window_ms: int | None = None
) -> int:
    return default_limiter.remaining(key, limit, window_ms)


def clear_rate_limit(key: str) -> None:
    default_limiter.clear(key)
