from __future__ import annotations

import hashlib
import secrets
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Deque, Dict, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_refresh_token(raw_token: str) -> str:
    """Storage key for a refresh token; the raw value is never kept."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class AssuranceLevel(str, Enum):
    BASIC = "basic"
    MFA_VERIFIED = "mfa_verified"

    @property
    def rank(self) -> int:
        return _ASSURANCE_RANK[self]

    def satisfies(self, required: "AssuranceLevel") -> bool:
        return self.rank >= AssuranceLevel(required).rank


_ASSURANCE_RANK = {AssuranceLevel.BASIC: 0, AssuranceLevel.MFA_VERIFIED: 1}


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"


class RedeemOutcome(str, Enum):
    """Result of presenting a refresh token to the store."""

    ROTATED = "rotated"
    REPLAYED = "replayed"  # same request retried, replacement handed out again
    REUSED = "reused"
    REVOKED = "revoked"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


@dataclass
class Principal:
    id: str
    identifier: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    verified_factors: Set[str] = field(default_factory=set)
    linked_identities: Dict[str, str] = field(default_factory=dict)
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    @classmethod
    def new(cls, identifier: Optional[str] = None) -> "Principal":
        factors = {"password"} if identifier else set()
        return cls(id=str(uuid.uuid4()), identifier=identifier, verified_factors=factors)


@dataclass
class Session:
    id: str
    principal_id: str
    created_at: datetime
    last_refreshed_at: datetime
    expires_at: datetime
    assurance_level: AssuranceLevel = AssuranceLevel.BASIC
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None
    observers: Set[str] = field(default_factory=set)
    current_refresh_id: Optional[str] = None
    pending_challenge_id: Optional[str] = None
    origin_application_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        principal_id: str,
        ttl_minutes: int,
        *,
        application_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        observers = {application_id} if application_id else set()
        return cls(
            id=secrets.token_urlsafe(32),
            principal_id=principal_id,
            created_at=created,
            last_refreshed_at=created,
            expires_at=created + timedelta(minutes=max(ttl_minutes, 1)),
            observers=observers,
            origin_application_id=application_id,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    @property
    def state(self) -> str:
        """Step-up state: basic, pending_mfa or mfa_verified."""
        if self.assurance_level == AssuranceLevel.MFA_VERIFIED:
            return "mfa_verified"
        if self.pending_challenge_id:
            return "pending_mfa"
        return "basic"


@dataclass
class RefreshRecord:
    id: str
    session_id: str
    rotation_counter: int
    issued_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    consumed_by_request: Optional[str] = None
    replaced_by: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class RedeemResult:
    outcome: RedeemOutcome
    session: Optional[Session] = None
    record: Optional[RefreshRecord] = None


@dataclass
class MFAChallenge:
    id: str
    session_id: str
    principal_id: str
    operation: str
    created_at: datetime
    expires_at: datetime
    status: ChallengeStatus = ChallengeStatus.PENDING
    completed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        session_id: str,
        principal_id: str,
        operation: str,
        ttl_seconds: int,
        *,
        now: Optional[datetime] = None,
    ) -> "MFAChallenge":
        created = now or utcnow()
        return cls(
            id=secrets.token_urlsafe(24),
            session_id=session_id,
            principal_id=principal_id,
            operation=operation,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
        )


@dataclass
class RateBucket:
    """Sliding-window hit log for one (key, operation class) pair; never persisted."""

    hits: Deque[float] = field(default_factory=deque)
    violations: int = 0


@dataclass
class MFAEnrollment:
    principal_id: str
    secret: str
    enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_used_counter: Optional[int] = None
