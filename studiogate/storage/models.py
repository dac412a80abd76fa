from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Mutable account columns the auth core may $set / $unset
OTP_FIELDS = ("otp", "otp_expires")
SESSION_FIELDS = ("session_token", "session_expires")
UPDATABLE_FIELDS = frozenset(OTP_FIELDS + SESSION_FIELDS + ("last_login", "login_ip"))

UNKNOWN = "unknown"
SNAPSHOT_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        raw = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Account:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    bio: Optional[str] = None
    avatar: Optional[str] = None
    otp: Optional[str] = None
    otp_expires: Optional[datetime] = None
    session_token: Optional[str] = None
    session_expires: Optional[datetime] = None
    last_login: Optional[datetime] = None
    login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            first_name=first_name,
            last_name=last_name,
            bio=bio,
            avatar=avatar,
        )

    @property
    def has_pending_code(self) -> bool:
        return self.otp is not None

    @property
    def has_session(self) -> bool:
        return self.session_token is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = isoformat(value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in ("otp_expires", "session_expires", "last_login", "created_at"):
            if key in values:
                values[key] = parse_timestamp(values[key])
        if values.get("created_at") is None:
            values.pop("created_at", None)
        return cls(**values)


# Snapshot attribute -> JSON key in the cache entry
_SNAPSHOT_KEYS = {
    "version": "version",
    "account_id": "userId",
    "email": "email",
    "first_name": "firstName",
    "last_name": "lastName",
    "bio": "bio",
    "avatar": "avatar",
    "session_expires": "sessionExpires",
    "ip": "ip",
    "user_agent": "userAgent",
    "created_at": "createdAt",
    "last_accessed": "lastAccessed",
    "refreshed_at": "refreshedAt",
}
_REQUIRED_SNAPSHOT_KEYS = ("userId", "email", "sessionExpires")


class SnapshotDecodeError(ValueError):
    """Cache entry payload is not a valid session snapshot."""


@dataclass
class SessionSnapshot:
    """Cache entry for one session token.

    ``session_expires`` is the absolute logical expiry and is authoritative
    over the sliding cache TTL. ``ip``, ``user_agent`` and ``created_at`` hold
    ``"unknown"`` when the entry was rebuilt from the durable record.
    """

    account_id: str
    email: str
    session_expires: str
    first_name: str = ""
    last_name: str = ""
    bio: str = ""
    avatar: Optional[str] = None
    ip: str = UNKNOWN
    user_agent: str = UNKNOWN
    created_at: str = UNKNOWN
    last_accessed: str = ""
    refreshed_at: Optional[str] = None
    version: int = SNAPSHOT_VERSION

    @classmethod
    def for_account(
        cls,
        account: Account,
        *,
        expires_at: datetime,
        now: datetime,
        ip: str = UNKNOWN,
        user_agent: str = UNKNOWN,
        created_at: Optional[str] = None,
        refreshed_at: Optional[str] = None,
    ) -> "SessionSnapshot":
        return cls(
            account_id=account.id,
            email=account.email,
            first_name=account.first_name or "",
            last_name=account.last_name or "",
            bio=account.bio or "",
            avatar=account.avatar,
            session_expires=isoformat(expires_at),
            ip=ip,
            user_agent=user_agent,
            created_at=created_at if created_at is not None else isoformat(now),
            last_accessed=isoformat(now),
            refreshed_at=refreshed_at,
        )

    @property
    def expires_at(self) -> Optional[datetime]:
        return parse_timestamp(self.session_expires)

    def is_expired(self, now: datetime) -> bool:
        expires_at = self.expires_at
        return expires_at is None or expires_at <= now

    def to_json(self) -> str:
        payload = {}
        for attr, key in _SNAPSHOT_KEYS.items():
            value = getattr(self, attr)
            if attr == "refreshed_at" and value is None:
                continue
            payload[key] = value
        return json.dumps(payload)

    @classmethod
    def from_json(cls, raw: Any) -> "SessionSnapshot":
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise SnapshotDecodeError("session entry is not JSON") from exc
        if not isinstance(payload, dict):
            raise SnapshotDecodeError("session entry is not an object")
        missing = [key for key in _REQUIRED_SNAPSHOT_KEYS if not payload.get(key)]
        if missing:
            raise SnapshotDecodeError(f"session entry missing {', '.join(missing)}")
        version = payload.get("version", SNAPSHOT_VERSION)
        if not isinstance(version, int) or version > SNAPSHOT_VERSION:
            raise SnapshotDecodeError(f"unsupported session entry version {version!r}")
        values: Dict[str, Any] = {}
        for attr, key in _SNAPSHOT_KEYS.items():
            if key in payload and payload[key] is not None:
                values[attr] = payload[key]
        for attr in ("account_id", "email", "session_expires", "first_name", "last_name", "bio"):
            if attr in values:
                values[attr] = str(values[attr])
        return cls(**values)
