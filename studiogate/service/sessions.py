from __future__ import annotations

import math
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol

from studiogate.config import Settings
from studiogate.logging import get_logger
from studiogate.service.errors import AuthenticationError, StorageFailureError
from studiogate.service.transport import ClientInfo
from studiogate.storage.cache import SessionCache
from studiogate.storage.errors import SessionStoreError
from studiogate.storage.models import (
    SESSION_FIELDS,
    UNKNOWN,
    Account,
    SessionSnapshot,
    SnapshotDecodeError,
    isoformat,
    utcnow,
)

logger = get_logger(__name__)

SESSION_TOKEN_BYTES = 32


class AccountStore(Protocol):
    def get_account(self) -> Optional[Account]: ...

    def get_account_by_id(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_otp(self, otp: str) -> Optional[Account]: ...

    def get_account_by_session_token(self, token: str) -> Optional[Account]: ...

    def update_account(
        self,
        match: Mapping[str, Any],
        *,
        set_fields: Optional[Mapping[str, Any]] = None,
        unset_fields: Iterable[str] = (),
    ) -> Optional[Account]: ...


@dataclass(frozen=True)
class MintedSession:
    token: str
    expires_at: datetime
    snapshot: SessionSnapshot


@dataclass(frozen=True)
class SessionCheckResult:
    authenticated: bool
    message: str
    email: Optional[str] = None
    session_token: Optional[str] = None
    expires_in_seconds: Optional[int] = None
    account_id: Optional[str] = None
    # "cache" or "store": which tier answered
    source: Optional[str] = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class SessionContext:
    """Authenticated caller, as resolved by the request dependency."""

    session_token: str
    account_id: str
    email: str


@dataclass(frozen=True)
class RevokeResult:
    success: bool
    message: str
    error_code: Optional[str] = None


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionManager:
    """Mints, checks and revokes session tokens across cache and durable store.

    The cache is consulted first and is sufficient to authenticate; on a miss
    the durable record decides and the cache entry is rebuilt from it. The
    payload's ``sessionExpires`` is authoritative over the sliding cache TTL.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: SessionCache,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @property
    def ttl_seconds(self) -> int:
        return self.settings.session_ttl_seconds

    async def mint_session(self, account: Account, client: ClientInfo) -> MintedSession:
        """Create a token and its cache entry.

        Raises:
            SessionStoreError: the cache did not confirm the write; the
                session must not be persisted or returned.
        """
        now = self._now()
        token = secrets.token_hex(SESSION_TOKEN_BYTES)
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        snapshot = SessionSnapshot.for_account(
            account,
            expires_at=expires_at,
            now=now,
            ip=client.ip,
            user_agent=client.user_agent,
        )
        stored = await self.cache.set_session(token, snapshot.to_json(), self.ttl_seconds)
        if not stored:
            raise SessionStoreError("session cache write not confirmed", key="session")
        self.logger.info("session_minted", account_id=account.id, ip=client.ip)
        return MintedSession(token=token, expires_at=expires_at, snapshot=snapshot)

    async def check_session(self, token: Optional[str]) -> SessionCheckResult:
        if not token:
            return SessionCheckResult(authenticated=False, message="No session token found")
        try:
            return await self._check(token)
        except Exception as exc:
            self.logger.error(
                "session_check_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return SessionCheckResult(
                authenticated=False,
                message="Authentication error",
                error_code=AuthenticationError.error_code,
            )

    async def _check(self, token: str) -> SessionCheckResult:
        now = self._now()
        raw = await self.cache.get_session(token)
        if raw is not None:
            try:
                snapshot: Optional[SessionSnapshot] = SessionSnapshot.from_json(raw)
            except SnapshotDecodeError as exc:
                self.logger.warning("session_cache_entry_unreadable", error=str(exc))
                snapshot = None
            if snapshot is not None and not snapshot.is_expired(now):
                refreshed = replace(snapshot, last_accessed=isoformat(now))
                await self.cache.set_session(token, refreshed.to_json(), self.ttl_seconds)
                remaining_ms = math.floor((snapshot.expires_at - now).total_seconds() * 1000)
                return SessionCheckResult(
                    authenticated=True,
                    message="Authenticated",
                    email=snapshot.email,
                    session_token=token,
                    expires_in_seconds=remaining_ms // 1000,
                    account_id=snapshot.account_id,
                    source="cache",
                )
            if snapshot is not None:
                await self.cache.delete_session(token)
                self.logger.info("session_cache_entry_expired", account_id=snapshot.account_id)

        account = self.store.get_account_by_session_token(token)
        if (
            account is None
            or account.session_expires is None
            or _aware(account.session_expires) <= now
        ):
            if account is not None:
                self.store.update_account(
                    {"id": account.id, "session_token": token},
                    unset_fields=SESSION_FIELDS,
                )
                self.logger.info("session_expired_cleared", account_id=account.id)
            return SessionCheckResult(authenticated=False, message="Session expired")

        snapshot = SessionSnapshot.for_account(
            account,
            expires_at=_aware(account.session_expires),
            now=now,
            created_at=UNKNOWN,
            refreshed_at=isoformat(now),
        )
        if not await self.cache.set_session(token, snapshot.to_json(), self.ttl_seconds):
            self.logger.warning("session_cache_repopulate_unconfirmed", account_id=account.id)
        else:
            self.logger.info("session_cache_repopulated", account_id=account.id)
        return SessionCheckResult(
            authenticated=True,
            message="Authenticated",
            email=account.email,
            session_token=token,
            account_id=account.id,
            source="store",
        )

    async def revoke_session(self, token: Optional[str]) -> RevokeResult:
        """Remove a session from both tiers; repeating it is harmless."""
        if not token:
            return RevokeResult(success=True, message="Session revoked")
        try:
            await self.cache.delete_session(token)
            previous = self.store.update_account(
                {"session_token": token}, unset_fields=SESSION_FIELDS
            )
        except Exception as exc:
            self.logger.error(
                "session_revoke_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return RevokeResult(
                success=False,
                message="Failed to revoke session",
                error_code=StorageFailureError.error_code,
            )
        self.logger.info(
            "session_revoked", account_id=previous.id if previous else None
        )
        return RevokeResult(success=True, message="Session revoked")

    async def sign_out(self, token: Optional[str]) -> RevokeResult:
        result = await self.revoke_session(token)
        if result.success:
            return RevokeResult(success=True, message="Signed out successfully")
        return RevokeResult(success=False, message="Sign out failed", error_code=result.error_code)

    async def discard_cached_session(self, token: Optional[str]) -> None:
        """Best-effort removal of a cache entry that must stop authenticating."""
        if not token:
            return
        try:
            await self.cache.delete_session(token)
        except Exception as exc:
            self.logger.warning(
                "session_cache_discard_failed", error_type=type(exc).__name__, error=str(exc)
            )

    async def get_session_snapshot(self, token: Optional[str]) -> Optional[SessionSnapshot]:
        """Read the cache entry for display; never refreshes or mutates it."""
        if not token:
            return None
        try:
            raw = await self.cache.get_session(token)
            if raw is None:
                return None
            return SessionSnapshot.from_json(raw)
        except SnapshotDecodeError:
            return None
        except Exception as exc:
            self.logger.warning("session_snapshot_failed", error=str(exc))
            return None

    async def verify_storage_presence(self, token: Optional[str]) -> bool:
        """True iff the cache holds an entry for the token with a positive TTL."""
        if not token:
            return False
        try:
            exists = await self.cache.session_exists(token)
            ttl = await self.cache.session_ttl(token)
        except Exception as exc:
            self.logger.warning("session_storage_check_failed", error=str(exc))
            return False
        return bool(exists) and ttl > 0

    async def test_cache_connection(self) -> bool:
        try:
            return bool(await self.cache.ping())
        except Exception as exc:
            self.logger.warning("session_cache_ping_failed", error=str(exc))
            return False
