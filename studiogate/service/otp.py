from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from studiogate.config import Settings
from studiogate.logging import get_logger, mask_email
from studiogate.service.email import EmailService
from studiogate.service.errors import (
    CodeExpiredError,
    EmailDeliveryError,
    InvalidCodeError,
    NoAccountError,
    NoEmailConfiguredError,
    RateLimitedError,
    ServiceError,
    StorageFailureError,
    VerificationFailedError,
)
from studiogate.service.sessions import AccountStore, SessionManager
from studiogate.service.transport import ClientInfo
from studiogate.storage.cache import SessionCache
from studiogate.storage.models import OTP_FIELDS, SESSION_FIELDS, UNKNOWN, isoformat, utcnow

logger = get_logger(__name__)

# Uppercase letters and digits without the look-alikes I, O, 0 and 1
OTP_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
OTP_LENGTH = 6


def generate_code(length: int = OTP_LENGTH, alphabet: str = OTP_ALPHABET) -> str:
    """Map each secure random byte onto the alphabet by modulo.

    256 is not a multiple of the alphabet size, so the mapping is slightly
    biased; switch to rejection sampling here if uniformity is ever required.
    """
    raw = secrets.token_bytes(length)
    return "".join(alphabet[byte % len(alphabet)] for byte in raw)


def normalize_code(code: Optional[str]) -> str:
    """Uppercase and drop whitespace and hyphen separators."""
    if not code:
        return ""
    return "".join(str(code).split()).replace("-", "").upper()


@dataclass(frozen=True)
class IssueResult:
    success: bool
    message: str
    remaining_attempts: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    reset_at: Optional[datetime] = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class VerifyResult:
    success: bool
    message: str
    session_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    error_code: Optional[str] = None


class OTPService:
    """Issues one-time access codes and exchanges them for sessions."""

    def __init__(
        self,
        store: AccountStore,
        cache: SessionCache,
        sessions: SessionManager,
        email: EmailService,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.sessions = sessions
        self.email = email
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def issue_code(self, client_address: Optional[str]) -> IssueResult:
        address = (client_address or "").strip() or UNKNOWN
        try:
            return await self._issue(address)
        except RateLimitedError as exc:
            logger.info("otp_rate_limited", ip=address, retry_after=exc.retry_after_seconds)
            return IssueResult(
                success=False,
                message=exc.message,
                retry_after_seconds=exc.retry_after_seconds,
                reset_at=exc.detail.get("reset_at"),
                error_code=exc.error_code,
            )
        except ServiceError as exc:
            logger.warning("otp_issue_rejected", ip=address, error_code=exc.error_code)
            return IssueResult(success=False, message=exc.message, error_code=exc.error_code)
        except Exception as exc:
            logger.error(
                "otp_issue_failed", ip=address, error_type=type(exc).__name__, error=str(exc)
            )
            return IssueResult(
                success=False,
                message="Failed to send OTP",
                error_code=StorageFailureError.error_code,
            )

    async def _issue(self, address: str) -> IssueResult:
        limit = self.settings.otp_rate_limit
        decision = await self.cache.consume_rate_limit(
            f"otp:{address}", limit, self.settings.otp_rate_window_seconds
        )
        if not decision.allowed:
            now_ms = int(self._now().timestamp() * 1000)
            retry_after = max(1, (decision.reset_at_ms - now_ms) // 1000)
            reset_at = datetime.fromtimestamp(decision.reset_at_ms / 1000, tz=timezone.utc)
            raise RateLimitedError(
                f"Too many attempts. Try again after {reset_at:%H:%M:%S}.",
                retry_after_seconds=retry_after,
                detail={"reset_at": reset_at},
            )

        account = self.store.get_account()
        if account is None:
            raise NoAccountError("No user found")
        if not account.email:
            raise NoEmailConfiguredError("No email associated with user")

        code = generate_code()
        expires_at = self._now() + timedelta(minutes=self.settings.otp_expiry_minutes)
        # A pending code and a live session never coexist on the record
        await self.sessions.discard_cached_session(account.session_token)
        previous = self.store.update_account(
            {"id": account.id},
            set_fields={"otp": code, "otp_expires": expires_at},
            unset_fields=SESSION_FIELDS,
        )
        if previous is None:
            raise NoAccountError("No user found")
        if previous.session_token and previous.session_token != account.session_token:
            await self.sessions.discard_cached_session(previous.session_token)

        delivery = await asyncio.to_thread(
            self.email.send_access_code,
            account.email,
            code,
            expiry_minutes=self.settings.otp_expiry_minutes,
            remaining_attempts=decision.remaining,
            attempt_limit=limit,
        )
        if not delivery.success:
            raise EmailDeliveryError("Failed to send OTP", detail={"reason": delivery.error})

        logger.info(
            "otp_issued",
            account_id=account.id,
            to=mask_email(account.email),
            remaining_attempts=decision.remaining,
        )
        return IssueResult(
            success=True,
            message="OTP sent successfully",
            remaining_attempts=decision.remaining,
        )

    async def verify_code(
        self, code: Optional[str], client: Optional[ClientInfo] = None
    ) -> VerifyResult:
        normalized = normalize_code(code)
        try:
            return await self._verify(normalized, client or ClientInfo())
        except ServiceError as exc:
            logger.info("otp_verify_rejected", error_code=exc.error_code)
            return VerifyResult(success=False, message=exc.message, error_code=exc.error_code)
        except Exception as exc:
            logger.error(
                "otp_verify_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return VerifyResult(
                success=False,
                message="Verification failed",
                error_code=VerificationFailedError.error_code,
            )

    async def _verify(self, code: str, client: ClientInfo) -> VerifyResult:
        if not code:
            raise InvalidCodeError("Invalid OTP")
        account = self.store.get_account_by_otp(code)
        if account is None:
            raise InvalidCodeError("Invalid OTP")

        now = self._now()
        otp_expires = account.otp_expires
        if otp_expires is not None and otp_expires.tzinfo is None:
            otp_expires = otp_expires.replace(tzinfo=timezone.utc)
        if otp_expires is None or otp_expires <= now:
            self.store.update_account(
                {"id": account.id, "otp": code}, unset_fields=OTP_FIELDS
            )
            raise CodeExpiredError("OTP expired")

        minted = await self.sessions.mint_session(account, client)
        try:
            # Matching on the code makes this a compare-and-set: a concurrent
            # verification that already consumed it leaves nothing to match.
            previous = self.store.update_account(
                {"id": account.id, "otp": code},
                set_fields={
                    "session_token": minted.token,
                    "session_expires": minted.expires_at,
                    "last_login": now,
                    "login_ip": client.ip,
                },
                unset_fields=OTP_FIELDS,
            )
        except Exception:
            await self.sessions.discard_cached_session(minted.token)
            raise
        if previous is None:
            await self.sessions.discard_cached_session(minted.token)
            logger.warning("otp_already_consumed", account_id=account.id)
            raise InvalidCodeError("Invalid OTP")
        if previous.session_token and previous.session_token != minted.token:
            await self.sessions.discard_cached_session(previous.session_token)

        logger.info(
            "otp_verified",
            account_id=account.id,
            ip=client.ip,
            session_expires=isoformat(minted.expires_at),
        )
        return VerifyResult(
            success=True,
            message="OTP verified successfully",
            session_token=minted.token,
            expires_at=minted.expires_at,
        )
