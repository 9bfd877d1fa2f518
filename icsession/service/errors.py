from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure categories callers switch on."""

    INPUT_VALIDATION = "input_validation"
    AUTHENTICATION = "authentication"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    """Stable machine-readable codes carried in error envelopes."""

    VALIDATION_ERROR = "validation_error"
    INVALID_CREDENTIAL = "invalid_credential"
    LOCKED_OUT = "locked_out"
    UNAUTHORIZED = "unauthorized"
    TOKEN_EXPIRED = "token_expired"
    SIGNATURE_INVALID = "signature_invalid"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    SESSION_EXPIRED = "session_expired"
    SESSION_REVOKED = "session_revoked"
    SESSION_NOT_FOUND = "session_not_found"
    REFRESH_REUSED = "refresh_reused"
    STEP_UP_REQUIRED = "step_up_required"
    CHALLENGE_NOT_FOUND = "challenge_not_found"
    CODE_EXPIRED = "code_expired"
    CODE_MISMATCH = "code_mismatch"
    MFA_NOT_ENROLLED = "mfa_not_enrolled"
    APPLICATION_NOT_TRUSTED = "application_not_trusted"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    STORE_TIMEOUT = "store_timeout"
    SERVER_ERROR = "server_error"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass fixes an ``ErrorKind`` and an HTTP ``status_code``. The
    ``error_code`` narrows the kind to a specific condition and may be set
    per instance:

    - input_validation (400)
    - authentication (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - internal (500)
    """

    kind: ErrorKind = ErrorKind.INPUT_VALIDATION
    status_code: int = 400
    error_code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[ErrorCode] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = ErrorCode(error_code)
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    kind = ErrorKind.INPUT_VALIDATION
    status_code = 400
    error_code = ErrorCode.VALIDATION_ERROR


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    kind = ErrorKind.AUTHENTICATION
    status_code = 401
    error_code = ErrorCode.UNAUTHORIZED


class ForbiddenError(ServiceError):
    """Request understood but refused: revoked session, lockout, untrusted caller (403)."""
    kind = ErrorKind.FORBIDDEN
    status_code = 403
    error_code = ErrorCode.FORBIDDEN


class NotFoundError(ServiceError):
    """Requested session or challenge does not exist (404)."""
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    error_code = ErrorCode.NOT_FOUND


class ConflictError(ServiceError):
    """Resource conflict, e.g. refresh token reuse or duplicate identifier (409)."""
    kind = ErrorKind.CONFLICT
    status_code = 409
    error_code = ErrorCode.CONFLICT


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429).

    The message is the same for every refusal so it cannot be used to learn
    which limit or which key tripped.
    """
    kind = ErrorKind.RATE_LIMITED
    status_code = 429
    error_code = ErrorCode.RATE_LIMITED

    def __init__(self, retry_after_ms: int, *, detail: Optional[dict] = None) -> None:
        self.retry_after_ms = max(int(retry_after_ms), 0)
        merged = {"retry_after_ms": self.retry_after_ms}
        if detail:
            merged.update(detail)
        super().__init__("too many requests", detail=merged)

    @property
    def retry_after_seconds(self) -> int:
        return max(1, -(-self.retry_after_ms // 1000))


class ServerError(ServiceError):
    """Internal server error (500)."""
    kind = ErrorKind.INTERNAL
    status_code = 500
    error_code = ErrorCode.SERVER_ERROR


def invalid_credential() -> AuthenticationError:
    return AuthenticationError("invalid credentials", error_code=ErrorCode.INVALID_CREDENTIAL)


def locked_out() -> ForbiddenError:
    return ForbiddenError("account temporarily locked", error_code=ErrorCode.LOCKED_OUT)


def session_expired() -> AuthenticationError:
    return AuthenticationError("session expired", error_code=ErrorCode.SESSION_EXPIRED)


def session_revoked() -> ForbiddenError:
    return ForbiddenError("session revoked", error_code=ErrorCode.SESSION_REVOKED)


def session_not_found() -> NotFoundError:
    return NotFoundError("session not found", error_code=ErrorCode.SESSION_NOT_FOUND)


__all__ = [
    "ErrorKind",
    "ErrorCode",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "invalid_credential",
    "locked_out",
    "session_expired",
    "session_revoked",
    "session_not_found",
]
