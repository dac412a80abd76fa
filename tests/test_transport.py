import json

from fastapi import Response

from studiogate.config import Settings
from studiogate.service.transport import (
    apply_session_cookie,
    build_cookie_value,
    clear_session_cookie,
    client_info,
    extract_bearer,
    is_trusted_proxy,
    parse_cookie_value,
    resolve_token,
)

TOKEN = "ab" * 32


class TestBearer:
    def test_extracts_bearer_token(self):
        assert extract_bearer(f"Bearer {TOKEN}") == TOKEN
        assert extract_bearer(f"bearer   {TOKEN}  ") == TOKEN

    def test_rejects_other_schemes(self):
        assert extract_bearer(None) is None
        assert extract_bearer("Basic dXNlcjpwYXNz") is None
        assert extract_bearer("Bearer ") is None
        assert extract_bearer(TOKEN) is None


class TestCookieValue:
    def test_plain_cookie_carries_json_token(self):
        raw = build_cookie_value(TOKEN)

        assert json.loads(raw) == {"token": TOKEN}
        assert parse_cookie_value(raw) == TOKEN

    def test_sealed_cookie_round_trip(self):
        raw = build_cookie_value(TOKEN, secret="cookie-secret")

        assert TOKEN not in raw
        assert parse_cookie_value(raw, secret="cookie-secret") == TOKEN

    def test_sealed_cookie_with_wrong_secret_reads_as_absent(self):
        raw = build_cookie_value(TOKEN, secret="cookie-secret")

        assert parse_cookie_value(raw, secret="other-secret") is None
        assert parse_cookie_value(raw) is None

    def test_malformed_cookies_read_as_absent(self):
        assert parse_cookie_value(None) is None
        assert parse_cookie_value("") is None
        assert parse_cookie_value("not-json") is None
        assert parse_cookie_value("[1, 2]") is None
        assert parse_cookie_value('{"token": ""}') is None
        assert parse_cookie_value('{"token": 42}') is None
        assert parse_cookie_value('{"other": "x"}') is None


class TestResolveToken:
    def test_bearer_wins_over_cookie(self):
        cookie = build_cookie_value("cookie-token")

        assert resolve_token("Bearer header-token", cookie) == "header-token"

    def test_cookie_used_without_bearer(self):
        cookie = build_cookie_value("cookie-token")

        assert resolve_token(None, cookie) == "cookie-token"
        assert resolve_token("Basic abc", cookie) == "cookie-token"

    def test_nothing_presented(self):
        assert resolve_token(None, None) is None
        assert resolve_token(None, "garbage") is None


class TestCookieFlags:
    def test_session_cookie_flags_outside_production(self):
        response = Response()
        settings = Settings(app_env="development")

        apply_session_cookie(response, TOKEN, settings)

        header = response.headers["set-cookie"].lower()
        assert header.startswith("session=")
        assert "httponly" in header
        assert "samesite=lax" in header
        assert "path=/" in header
        assert "max-age=604800" in header
        assert "secure" not in header

    def test_session_cookie_is_secure_in_production(self):
        response = Response()

        apply_session_cookie(response, TOKEN, Settings(app_env="production"))

        assert "secure" in response.headers["set-cookie"].lower()

    def test_clear_cookie_expires_it(self):
        response = Response()

        clear_session_cookie(response, Settings())

        header = response.headers["set-cookie"].lower()
        assert header.startswith("session=")
        assert "max-age=0" in header


class TestClientInfo:
    FORWARDED = {
        "x-forwarded-for": "203.0.113.7, 10.0.0.1",
        "x-real-ip": "198.51.100.1",
        "user-agent": "Mozilla/5.0",
    }

    def test_first_forwarded_hop_wins_behind_trusted_proxy(self):
        info = client_info(self.FORWARDED, "10.0.0.2", ["10.0.0.0/8"])

        assert info.ip == "203.0.113.7"
        assert info.user_agent == "Mozilla/5.0"

    def test_real_ip_then_peer_behind_trusted_proxy(self):
        trusted = ["127.0.0.1"]

        assert client_info({"x-real-ip": "198.51.100.1"}, "127.0.0.1", trusted).ip == "198.51.100.1"
        assert client_info({}, "127.0.0.1", trusted).ip == "127.0.0.1"

    def test_forwarding_headers_ignored_from_untrusted_peer(self):
        """A direct caller cannot choose its own rate-limit address."""
        assert client_info(self.FORWARDED, "192.0.2.50").ip == "192.0.2.50"
        assert client_info(self.FORWARDED, "192.0.2.50", ["10.0.0.0/8"]).ip == "192.0.2.50"
        assert client_info(self.FORWARDED, "testclient", ["10.0.0.0/8"]).ip == "testclient"

    def test_trusted_proxy_matching(self):
        assert is_trusted_proxy("10.1.2.3", ["10.0.0.0/8"]) is True
        assert is_trusted_proxy("::1", ["::1"]) is True
        assert is_trusted_proxy("11.0.0.1", ["10.0.0.0/8"]) is False
        assert is_trusted_proxy("not-an-ip", ["10.0.0.0/8"]) is False
        assert is_trusted_proxy(None, ["10.0.0.0/8"]) is False

    def test_unknown_when_nothing_available(self):
        info = client_info({}, None)

        assert info.ip == "unknown"
        assert info.user_agent == "unknown"
