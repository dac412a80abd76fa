"""How a session token travels between client and server.

Outbound, the token is set as the ``session`` cookie holding JSON
``{"token": ...}``, sealed with Fernet when a cookie secret is configured.
Inbound, an ``Authorization: Bearer`` header wins over the cookie. A cookie
that fails to decrypt or parse reads as "no token", never as an error.
"""

from __future__ import annotations

import base64
import hashlib
import ipaddress
import json
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken
from fastapi import Response

from studiogate.config import Settings
from studiogate.logging import get_logger
from studiogate.storage.models import UNKNOWN

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClientInfo:
    ip: str = UNKNOWN
    user_agent: str = UNKNOWN


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def _cipher(secret: Optional[str]) -> Optional[Fernet]:
    if not secret:
        return None
    return Fernet(_derive_cipher_key(secret))


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


def build_cookie_value(token: str, *, secret: Optional[str] = None) -> str:
    payload = json.dumps({"token": token}, separators=(",", ":"))
    cipher = _cipher(secret)
    if cipher is None:
        return payload
    return cipher.encrypt(payload.encode()).decode()


def parse_cookie_value(raw: Optional[str], *, secret: Optional[str] = None) -> Optional[str]:
    """Return the token carried by a session cookie, or ``None``."""
    if not raw:
        return None
    cipher = _cipher(secret)
    if cipher is not None:
        try:
            raw = cipher.decrypt(raw.encode()).decode()
        except (InvalidToken, ValueError):
            logger.info("session_cookie_undecryptable")
            return None
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        logger.info("session_cookie_malformed")
        return None
    if not isinstance(payload, dict):
        return None
    token = payload.get("token")
    if not isinstance(token, str) or not token:
        return None
    return token


def resolve_token(
    authorization: Optional[str],
    cookie_value: Optional[str],
    *,
    secret: Optional[str] = None,
) -> Optional[str]:
    return extract_bearer(authorization) or parse_cookie_value(cookie_value, secret=secret)


def apply_session_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        build_cookie_value(token, secret=settings.session_cookie_secret),
        max_age=settings.session_ttl_seconds,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


def is_trusted_proxy(peer_host: Optional[str], trusted_proxies: Iterable[str] = ()) -> bool:
    if not peer_host:
        return False
    try:
        peer = ipaddress.ip_address(peer_host)
    except ValueError:
        return False
    return any(
        peer in ipaddress.ip_network(entry, strict=False) for entry in trusted_proxies
    )


def client_info(
    headers: Mapping[str, str],
    peer_host: Optional[str] = None,
    trusted_proxies: Iterable[str] = (),
) -> ClientInfo:
    """Resolve the caller's address and user agent from request headers.

    Forwarding headers are client-controlled, so they are only read when the
    socket peer is a trusted proxy. Order then: first ``X-Forwarded-For`` hop,
    ``X-Real-IP``, the socket peer, then ``"unknown"``.
    """
    peer = (peer_host or "").strip()
    ip = peer
    if is_trusted_proxy(peer, trusted_proxies):
        forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
        real_ip = (headers.get("x-real-ip") or "").strip()
        ip = forwarded or real_ip or peer
    ip = ip or UNKNOWN
    user_agent = (headers.get("user-agent") or "").strip() or UNKNOWN
    return ClientInfo(ip=ip, user_agent=user_agent)
