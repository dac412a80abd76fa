from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from studiogate.service.errors import _BY_CODE, RateLimitedError

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "validation_error",
        "server_error",
    }
    | set(_BY_CODE)
    | {RateLimitedError.error_code}
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class VerifyCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("code must not be blank")
        return stripped


class RevokeSessionRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class IssueCodeResponse(BaseModel):
    message: str
    remaining_attempts: int


class VerifyCodeResponse(BaseModel):
    message: str
    session_token: str
    expires_at: datetime


class SessionStatusResponse(BaseModel):
    authenticated: bool
    message: str
    email: Optional[str] = None
    session_token: Optional[str] = None
    expires_in_seconds: Optional[int] = None


class MessageResponse(BaseModel):
    message: str


class SessionSnapshotResponse(BaseModel):
    account_id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    bio: str = ""
    avatar: Optional[str] = None
    session_expires: str
    ip: str
    user_agent: str
    created_at: str
    last_accessed: str
    refreshed_at: Optional[str] = None


class StoragePresenceResponse(BaseModel):
    present: bool
    cache_reachable: bool
