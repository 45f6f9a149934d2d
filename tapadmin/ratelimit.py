"""Per-caller token bucket rate limiting for admin endpoints."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from tapadmin.security import token_fingerprint

Clock = Callable[[], float]

DEFAULT_TTL_SECONDS = 15 * 60.0
DEFAULT_MAX_ENTRIES = 10_000


class TokenBucket:
    """A token bucket that refills at ``rate`` tokens per second up to ``burst``."""

    def __init__(self, rate: float, burst: int, clock: Clock = time.monotonic) -> None:
        self.rate = max(float(rate), 0.0)
        self.burst = max(int(burst), 0)
        self._clock = clock
        self._tokens = float(self.burst)
        self._last = clock()
        self._lock = threading.Lock()

    def allow(self) -> bool:
        """Take one token if available; report whether it was taken."""
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False


@dataclass
class _Entry:
    bucket: TokenBucket
    last_seen: float


def rate_limiter_key(endpoint: str, scope: str, identity: str) -> str:
    """Build the bucket key for an endpoint, scope and caller identity."""
    parts = ((part or "").strip() or "unknown" for part in (endpoint, scope, identity))
    return "|".join(parts)


class RateLimiterRegistry:
    """Token buckets keyed by endpoint and caller, pruned by age and count."""

    def __init__(
        self,
        limit: float,
        burst: int,
        *,
        ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Clock = time.monotonic,
    ) -> None:
        self.limit = float(limit) if limit > 0 else 1.0
        self.burst = int(burst) if burst > 0 else 1
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def allow(self, endpoint: str, request_ip: str, token: str) -> tuple[bool, str]:
        """Check the caller's IP bucket, then its token bucket.

        Returns ``(True, "")`` when allowed, otherwise ``(False, scope)`` where
        scope is ``"ip"`` or ``"token"``.
        """
        ip_key = rate_limiter_key(endpoint, "ip", (request_ip or "").strip())
        if not self._allow_key(ip_key):
            return False, "ip"
        token = (token or "").strip()
        if not token:
            return True, ""
        token_key = rate_limiter_key(endpoint, "token", token_fingerprint(token))
        if not self._allow_key(token_key):
            return False, "token"
        return True, ""

    def _allow_key(self, key: str) -> bool:
        key = key.strip() or "unknown"
        now = self._clock()
        with self._lock:
            self._cleanup(now)
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry(TokenBucket(self.limit, self.burst, self._clock), now)
                self._entries[key] = entry
            entry.last_seen = now
            bucket = entry.bucket
        return bucket.allow()

    def _cleanup(self, now: float) -> None:
        cutoff = now - self.ttl
        for key in [key for key, entry in self._entries.items() if entry.last_seen < cutoff]:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            oldest = min(self._entries, key=lambda key: self._entries[key].last_seen)
            del self._entries[oldest]