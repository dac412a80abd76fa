"""Unit tests for access-code issuance and verification.

Every test drives OTPService against the in-memory store and the in-process
cache with a fake clock, so expiry and rate-limit windows are exact.
"""

import asyncio
import re
from unittest.mock import patch

from studiogate.service.email import EmailService
from studiogate.service.otp import OTP_ALPHABET, OTP_LENGTH, generate_code, normalize_code
from studiogate.service.transport import ClientInfo

TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


class TestCodeFormat:
    def test_generated_code_uses_unambiguous_alphabet(self):
        """Codes are six characters drawn from the look-alike-free alphabet."""
        for _ in range(200):
            code = generate_code()
            assert len(code) == OTP_LENGTH
            assert set(code) <= set(OTP_ALPHABET)
        for ambiguous in "IO01":
            assert ambiguous not in OTP_ALPHABET

    def test_normalize_strips_separators_and_uppercases(self):
        assert normalize_code(" ab3 d-ef ") == "AB3DEF"
        assert normalize_code("abc\tdef\n") == "ABCDEF"
        assert normalize_code(None) == ""
        assert normalize_code("   ") == ""


class TestIssueCode:
    async def test_issue_stores_code_and_emails_it(self, harness):
        """The code is stored with a five minute expiry and sent to the owner."""
        result = await harness.otp.issue_code("198.51.100.4")

        assert result.success is True
        assert result.message == "OTP sent successfully"
        assert result.remaining_attempts == 4

        account = harness.store.get_account()
        assert account.otp == harness.email.last_code
        assert (account.otp_expires - harness.clock.now).total_seconds() == 300
        sent = harness.email.sent[-1]
        assert sent["to"] == "owner@example.com"
        assert sent["remaining_attempts"] == 4
        assert sent["attempt_limit"] == 5

    async def test_remaining_attempts_count_down_then_limit(self, harness):
        """Five requests per window are allowed; the sixth is refused."""
        remaining = []
        for _ in range(5):
            result = await harness.otp.issue_code("198.51.100.4")
            assert result.success is True
            remaining.append(result.remaining_attempts)
        assert remaining == [4, 3, 2, 1, 0]

        blocked = await harness.otp.issue_code("198.51.100.4")
        assert blocked.success is False
        assert blocked.error_code == "rate_limited"
        assert blocked.retry_after_seconds == 300
        assert blocked.message == "Too many attempts. Try again after 12:05:00."
        assert len(harness.email.sent) == 5

    async def test_rate_limit_is_per_address(self, harness):
        for _ in range(5):
            await harness.otp.issue_code("198.51.100.4")

        other = await harness.otp.issue_code("198.51.100.5")
        assert other.success is True
        assert other.remaining_attempts == 4

    async def test_window_slides(self, harness):
        """Once the oldest request leaves the window a new one is allowed."""
        for _ in range(5):
            await harness.otp.issue_code("198.51.100.4")
            harness.clock.advance(10)

        blocked = await harness.otp.issue_code("198.51.100.4")
        assert blocked.success is False
        assert blocked.retry_after_seconds == 250

        harness.clock.advance(250)
        allowed = await harness.otp.issue_code("198.51.100.4")
        assert allowed.success is True

    async def test_no_account(self, make_harness):
        harness = make_harness(with_owner=False)

        result = await harness.otp.issue_code("198.51.100.4")

        assert result.success is False
        assert result.message == "No user found"
        assert result.error_code == "no_account"
        assert harness.email.sent == []

    async def test_account_without_email(self, harness):
        harness.store.accounts[harness.owner_id].email = ""

        result = await harness.otp.issue_code("198.51.100.4")

        assert result.success is False
        assert result.message == "No email associated with user"
        assert result.error_code == "no_email_configured"

    async def test_email_failure_reports_send_failure(self, harness):
        harness.email.fail = True

        result = await harness.otp.issue_code("198.51.100.4")

        assert result.success is False
        assert result.message == "Failed to send OTP"
        assert result.error_code == "email_delivery_failed"

    async def test_unconfigured_production_email_fails_without_logging_code(self, harness):
        """Without SMTP outside dev mode the send fails and the code never hits the log."""
        harness.otp.email = EmailService(dev_mode=False)

        with patch("studiogate.service.email.logger") as email_log, patch(
            "studiogate.service.otp.logger"
        ) as otp_log:
            result = await harness.otp.issue_code("198.51.100.4")

        assert result.success is False
        assert result.message == "Failed to send OTP"
        assert result.error_code == "email_delivery_failed"
        code = harness.store.get_account().otp
        assert code
        assert code not in str(email_log.mock_calls)
        assert code not in str(otp_log.mock_calls)

    async def test_store_failure_reports_send_failure(self, harness, monkeypatch):
        def boom():
            raise ConnectionError("store down")

        monkeypatch.setattr(harness.store, "get_account", boom)

        result = await harness.otp.issue_code("198.51.100.4")

        assert result.success is False
        assert result.message == "Failed to send OTP"
        assert result.error_code == "storage_failure"

    async def test_missing_address_is_bucketed_as_unknown(self, harness):
        for _ in range(5):
            await harness.otp.issue_code(None)

        blocked = await harness.otp.issue_code("")
        assert blocked.error_code == "rate_limited"


class TestVerifyCode:
    async def test_lowercase_spaced_code_mints_session(self, harness):
        """Entry is forgiving: lowercase with spaces verifies and returns a 64-hex token."""
        await harness.otp.issue_code("198.51.100.4")
        code = harness.email.last_code
        typed = f" {code[:3].lower()} {code[3:].lower()} "

        result = await harness.otp.verify_code(
            typed, ClientInfo(ip="198.51.100.4", user_agent="pytest")
        )

        assert result.success is True
        assert result.message == "OTP verified successfully"
        assert TOKEN_RE.match(result.session_token)
        assert (result.expires_at - harness.clock.now).total_seconds() == 604800

        account = harness.store.get_account()
        assert account.otp is None
        assert account.otp_expires is None
        assert account.session_token == result.session_token
        assert account.login_ip == "198.51.100.4"
        assert account.last_login == harness.clock.now

        check = await harness.sessions.check_session(result.session_token)
        assert check.authenticated is True
        assert check.email == "owner@example.com"

    async def test_code_is_single_use(self, harness):
        await harness.otp.issue_code("198.51.100.4")
        code = harness.email.last_code

        first = await harness.otp.verify_code(code)
        second = await harness.otp.verify_code(code)

        assert first.success is True
        assert second.success is False
        assert second.message == "Invalid OTP"
        assert second.error_code == "invalid_code"

    async def test_unknown_and_blank_codes(self, harness):
        await harness.otp.issue_code("198.51.100.4")

        assert (await harness.otp.verify_code("ZZZZZZ")).message == "Invalid OTP"
        blank = await harness.otp.verify_code("  ")
        assert blank.success is False
        assert blank.error_code == "invalid_code"
        assert harness.store.get_account().otp is not None

    async def test_code_valid_just_before_expiry(self, harness):
        await harness.otp.issue_code("198.51.100.4")
        harness.clock.advance(299)

        result = await harness.otp.verify_code(harness.email.last_code)

        assert result.success is True

    async def test_code_expires_at_exact_boundary(self, harness):
        """A code presented at exactly issue time + five minutes is expired."""
        await harness.otp.issue_code("198.51.100.4")
        code = harness.email.last_code
        harness.clock.advance(300)

        result = await harness.otp.verify_code(code)

        assert result.success is False
        assert result.message == "OTP expired"
        assert result.error_code == "code_expired"
        account = harness.store.get_account()
        assert account.otp is None
        assert account.session_token is None

        retry = await harness.otp.verify_code(code)
        assert retry.message == "Invalid OTP"

    async def test_code_expired_after_boundary(self, harness):
        await harness.otp.issue_code("198.51.100.4")
        harness.clock.advance(301)

        result = await harness.otp.verify_code(harness.email.last_code)

        assert result.error_code == "code_expired"

    async def test_reissue_replaces_pending_code(self, harness):
        await harness.otp.issue_code("198.51.100.4")
        first = harness.email.last_code
        await harness.otp.issue_code("198.51.100.4")
        second = harness.email.last_code

        if first != second:
            assert (await harness.otp.verify_code(first)).success is False
        assert (await harness.otp.verify_code(second)).success is True


class TestCodeAndSessionExclusion:
    async def test_issuing_a_code_ends_the_active_session(self, harness):
        """A pending code and a live session are never held at the same time."""
        await harness.otp.issue_code("198.51.100.4")
        verified = await harness.otp.verify_code(harness.email.last_code)
        token = verified.session_token

        await harness.otp.issue_code("198.51.100.4")

        account = harness.store.get_account()
        assert account.otp is not None
        assert account.session_token is None
        assert account.session_expires is None
        assert await harness.cache.get_session(token) is None
        check = await harness.sessions.check_session(token)
        assert check.authenticated is False

    async def test_new_session_replaces_the_old_one(self, harness):
        await harness.otp.issue_code("198.51.100.4")
        old = (await harness.otp.verify_code(harness.email.last_code)).session_token
        await harness.otp.issue_code("198.51.100.4")
        new = (await harness.otp.verify_code(harness.email.last_code)).session_token

        assert old != new
        assert (await harness.sessions.check_session(old)).authenticated is False
        assert (await harness.sessions.check_session(new)).authenticated is True


class TestConcurrentVerification:
    async def test_only_one_of_two_concurrent_verifications_wins(self, harness):
        await harness.otp.issue_code("198.51.100.4")
        code = harness.email.last_code

        results = await asyncio.gather(
            harness.otp.verify_code(code), harness.otp.verify_code(code)
        )

        winners = [r for r in results if r.success]
        losers = [r for r in results if not r.success]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].session_token is None
        assert harness.store.get_account().session_token == winners[0].session_token

    async def test_losing_compare_and_set_discards_its_cache_entry(
        self, harness, monkeypatch
    ):
        """A verifier holding a stale read cannot install a second session."""
        await harness.otp.issue_code("198.51.100.4")
        code = harness.email.last_code
        stale = harness.store.get_account_by_otp(code)
        winner = await harness.otp.verify_code(code)

        monkeypatch.setattr(harness.store, "get_account_by_otp", lambda otp: stale)
        loser = await harness.otp.verify_code(code)

        assert loser.success is False
        assert loser.message == "Invalid OTP"
        session_keys = [k for k in harness.cache._entries if k.startswith("session:")]
        assert session_keys == [f"session:{winner.session_token}"]
        assert (await harness.sessions.check_session(winner.session_token)).authenticated


class TestVerifyFailures:
    async def test_unconfirmed_cache_write_fails_verification(self, make_harness):
        """If the cache does not confirm the session, no token is issued or stored."""
        from studiogate.storage.local_cache import LocalCache

        class RefusingCache(LocalCache):
            async def setex(self, key, ttl_seconds, value):
                return False

        harness = make_harness(RefusingCache)
        await harness.otp.issue_code("198.51.100.4")
        code = harness.email.last_code

        result = await harness.otp.verify_code(code)

        assert result.success is False
        assert result.message == "Verification failed"
        assert result.error_code == "verification_failed"
        assert result.session_token is None
        account = harness.store.get_account()
        assert account.session_token is None
        assert account.otp == code

    async def test_store_failure_during_verify(self, harness, monkeypatch):
        await harness.otp.issue_code("198.51.100.4")
        code = harness.email.last_code

        def boom(*args, **kwargs):
            raise ConnectionError("store down")

        monkeypatch.setattr(harness.store, "update_account", boom)
        result = await harness.otp.verify_code(code)

        assert result.success is False
        assert result.message == "Verification failed"
        assert [k for k in harness.cache._entries if k.startswith("session:")] == []
