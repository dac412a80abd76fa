from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer failures with a stable error code.

    The OTP and session services raise these internally and convert them to
    result objects at their public boundary; the API layer raises them again
    so the registered exception handlers can render the error envelope.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class NoAccountError(ServiceError):
    """No owner account exists to send a code to (404)."""
    status_code = 404
    error_code = "no_account"


class NoEmailConfiguredError(ServiceError):
    """The owner account has no email address on file (409)."""
    status_code = 409
    error_code = "no_email_configured"


class InvalidCodeError(ServiceError):
    """Submitted passcode matches no pending code (400)."""
    status_code = 400
    error_code = "invalid_code"


class CodeExpiredError(ServiceError):
    """Submitted passcode matched but is past its expiry (410)."""
    status_code = 410
    error_code = "code_expired"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_seconds: int, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("retry_after_seconds", retry_after_seconds)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class EmailDeliveryError(ServiceError):
    """The passcode email could not be sent (502)."""
    status_code = 502
    error_code = "email_delivery_failed"


class StorageFailureError(ServiceError):
    """Cache or durable store raised (503)."""
    status_code = 503
    error_code = "storage_failure"


class VerificationFailedError(ServiceError):
    """Unexpected failure while verifying a passcode (500)."""
    status_code = 500
    error_code = "verification_failed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


_BY_CODE = {
    cls.error_code: cls
    for cls in (
        ValidationError,
        AuthenticationError,
        NotFoundError,
        NoAccountError,
        NoEmailConfiguredError,
        InvalidCodeError,
        CodeExpiredError,
        EmailDeliveryError,
        StorageFailureError,
        VerificationFailedError,
        ServerError,
    )
}


def error_for_code(
    error_code: Optional[str], message: str, *, detail: Optional[dict] = None
) -> ServiceError:
    """Rebuild the exception for a result's ``error_code``."""
    cls = _BY_CODE.get(error_code or "", ServerError)
    return cls(message, detail=detail)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "NoAccountError",
    "NoEmailConfiguredError",
    "InvalidCodeError",
    "CodeExpiredError",
    "RateLimitedError",
    "EmailDeliveryError",
    "StorageFailureError",
    "VerificationFailedError",
    "ServerError",
    "error_for_code",
]
