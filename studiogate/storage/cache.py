from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

SESSION_PREFIX = "session:"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one sliding-window consume.

    ``remaining`` counts the requests still allowed in the window after this
    one; ``reset_at_ms`` is the epoch millisecond when the oldest counted
    request leaves the window.
    """

    allowed: bool
    remaining: int
    reset_at_ms: int


def session_key(token: str) -> str:
    return f"{SESSION_PREFIX}{token}"


def rate_limit_key(key: str) -> str:
    """Hash the caller-supplied key so client input never shapes the Redis key."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    return f"rate:{digest}"


class SessionCache:
    """Session helpers shared by the Redis and in-process caches.

    Subclasses provide the key-value primitives (``get``, ``setex``,
    ``delete``, ``exists``, ``ttl``, ``ping``) and ``consume_rate_limit``.
    """

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        raise NotImplementedError

    async def delete(self, key: str) -> int:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def ttl(self, key: str) -> int:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    async def consume_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitDecision:
        raise NotImplementedError

    async def get_session(self, token: str) -> Optional[str]:
        return await self.get(session_key(token))

    async def set_session(self, token: str, payload: str, ttl_seconds: int) -> bool:
        return await self.setex(session_key(token), max(1, int(ttl_seconds)), payload)

    async def delete_session(self, token: str) -> int:
        return await self.delete(session_key(token))

    async def session_exists(self, token: str) -> bool:
        return await self.exists(session_key(token))

    async def session_ttl(self, token: str) -> int:
        return await self.ttl(session_key(token))

    def verify_connection(self) -> None:
        """Raise if the backing store is unreachable."""

    async def close(self) -> None:
        return None
