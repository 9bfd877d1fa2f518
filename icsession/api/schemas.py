from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from icsession.logging import get_correlation_id
from icsession.service.errors import ErrorCode, ErrorKind

_VALID_ERROR_CODES = frozenset(code.value for code in ErrorCode)
_VALID_ERROR_KINDS = frozenset(kind.value for kind in ErrorKind)

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _normalize_identifier(value: str) -> str:
    """NFKC-normalize and strip zero-width characters used for look-alike identifiers."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    return unicodedata.normalize("NFKC", cleaned).strip()


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code and its kind."""

    code: str = Field(..., description="Stable snake_case error code")
    kind: str = Field(default=ErrorKind.INTERNAL.value)
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

    @field_validator("kind")
    @classmethod
    def _validate_error_kind(cls, value: str) -> str:
        if value not in _VALID_ERROR_KINDS:
            raise ValueError(f"Invalid error kind '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class RegisterRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=8, max_length=1024)

    @field_validator("identifier")
    @classmethod
    def _clean_identifier(cls, value: str) -> str:
        value = _normalize_identifier(value)
        if not value:
            raise ValueError("identifier must not be blank")
        return value


class PrincipalResponse(BaseModel):
    principal_id: str
    identifier: Optional[str] = None
    verified_factors: List[str] = Field(default_factory=list)
    linked_issuers: List[str] = Field(default_factory=list)
    created_at: datetime


class FederatedAssertionBody(BaseModel):
    issuer: str = Field(..., min_length=1, max_length=512)
    subject: str = Field(..., min_length=1, max_length=512)
    claims: Dict[str, Any] = Field(default_factory=dict)


class LoginRequest(BaseModel):
    """Either ``identifier``/``password`` or ``assertion``, never both."""

    identifier: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=1024)
    assertion: Optional[FederatedAssertionBody] = None
    application_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("identifier")
    @classmethod
    def _clean_identifier(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_identifier(value) if value is not None else None

    @model_validator(mode="after")
    def _one_credential(self):
        has_password = self.identifier is not None or self.password is not None
        if has_password and self.assertion is not None:
            raise ValueError("provide either a password credential or an assertion")
        if self.assertion is None and (not self.identifier or self.password is None):
            raise ValueError("identifier and password are required")
        return self


class SessionTokensResponse(BaseModel):
    principal_id: str
    session_id: str
    session_expires_at: datetime
    assurance_level: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    rotation_counter: int = 0
    token_type: str = "bearer"


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class SessionView(BaseModel):
    session_id: str
    principal_id: str
    state: str
    assurance_level: str
    created_at: datetime
    expires_at: datetime
    last_refreshed_at: Optional[datetime] = None
    observers: List[str] = Field(default_factory=list)


class RevokeRequest(BaseModel):
    scope: Literal["session", "principal"] = "session"
    keep_current: bool = False


class RevokeResponse(BaseModel):
    scope: str
    revoked_session_ids: List[str]


class StepUpRequest(BaseModel):
    operation: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z][a-z0-9_]*$")


class StepUpResponse(BaseModel):
    operation: str
    passthrough: bool
    challenge_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class StepUpVerifyRequest(BaseModel):
    challenge_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=1, max_length=10)


class StepUpVerifyResponse(BaseModel):
    session_id: str
    operation: str
    assurance_level: str
    access_token: str
    access_expires_at: datetime
    token_type: str = "bearer"


class MFAEnrollResponse(BaseModel):
    otpauth_uri: str
    secret: str


class LinkIdentityRequest(BaseModel):
    issuer: str = Field(..., min_length=1, max_length=512)
    subject: str = Field(..., min_length=1, max_length=512)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=8, max_length=1024)
