from __future__ import annotations

import math
import threading
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Optional, Tuple

from studiogate.storage.cache import RateLimitDecision, SessionCache, rate_limit_key
from studiogate.storage.models import utcnow


class LocalCache(SessionCache):
    """In-process stand-in for Redis used under TEST_MODE or dev fallback.

    Entries expire lazily on access. ``clock`` returns an aware UTC datetime
    and is injectable so tests can move time forward.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or utcnow
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._windows: Dict[str, Deque[int]] = {}
        self._lock = threading.Lock()

    def _now(self) -> float:
        return self._clock().timestamp()

    def _live(self, key: str, now: float) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            self._entries.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._now())
            return entry[0] if entry else None

    async def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            self._entries[key] = (value, self._now() + ttl_seconds)
        return True

    async def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._now()) is not None

    async def ttl(self, key: str) -> int:
        """Seconds left, or -2 when the key is absent (Redis convention)."""
        with self._lock:
            now = self._now()
            entry = self._live(key, now)
            if entry is None:
                return -2
            return max(0, math.ceil(entry[1] - now))

    async def ping(self) -> bool:
        return True

    async def consume_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitDecision:
        now_ms = int(self._now() * 1000)
        window_ms = int(window_seconds) * 1000
        with self._lock:
            hits = self._windows.setdefault(rate_limit_key(key), deque())
            while hits and hits[0] <= now_ms - window_ms:
                hits.popleft()
            if len(hits) >= limit:
                reset_at = hits[0] + window_ms if hits else now_ms + window_ms
                return RateLimitDecision(allowed=False, remaining=0, reset_at_ms=reset_at)
            hits.append(now_ms)
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, limit - len(hits)),
                reset_at_ms=hits[0] + window_ms,
            )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._windows.clear()
