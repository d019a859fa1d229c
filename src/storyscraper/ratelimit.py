"""In-memory fixed window rate limiting for interactive callers."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from storyscraper.config import RateLimitConfig

__all__ = ["RateLimitDecision", "RateLimiter", "client_ip"]


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Return the originating client address, honouring common proxy headers."""

    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    for name in ("x-real-ip", "cf-connecting-ip"):
        value = headers.get(name)
        if value:
            return value.strip()
    return peer or "unknown"


class RateLimiter:
    """Count requests per key inside a fixed window.

    State lives in process memory, so limits are per worker process.
    """

    def __init__(self, config: RateLimitConfig, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self._clock = clock
        self._entries: Dict[str, list] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        window = self.config.window_seconds
        limit = self.config.max_requests

        with self._lock:
            self._prune(now)
            entry = self._entries.get(key)
            if entry is None or entry[1] < now:
                entry = [0, now + window]
                self._entries[key] = entry
            entry[0] += 1
            count, reset_at = entry

        if count > limit:
            return RateLimitDecision(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=reset_at,
                retry_after=max(1, math.ceil(reset_at - now)),
            )
        return RateLimitDecision(allowed=True, limit=limit, remaining=limit - count, reset_at=reset_at)

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._entries.items() if reset_at < now]
        for key in expired:
            del self._entries[key]
