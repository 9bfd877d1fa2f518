from __future__ import annotations

import base64
import hashlib
import hmac
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol, Tuple, TypeVar
from urllib.parse import quote

from icsession.config import Settings
from icsession.logging import get_logger, short_id
from icsession.service.bounded import bounded_store_call
from icsession.service.errors import (
    AuthenticationError,
    ConflictError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    session_expired,
    session_not_found,
    session_revoked,
)
from icsession.service.rate_limit import RateLimiter
from icsession.service.tokens import TokenIssuer
from icsession.storage.errors import ConstraintViolation
from icsession.storage.models import (
    AssuranceLevel,
    ChallengeStatus,
    MFAChallenge,
    MFAEnrollment,
    Session,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

ENROLL_OPERATION = "enroll_mfa"
TOTP_DIGITS = 6


def totp_counter(timestamp: float, step: int = 30) -> int:
    return int(timestamp // step)


def totp_code(secret: str, counter: int, *, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 code (HMAC-SHA1) for a base32 secret at a given time-step counter."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    key = base64.b32decode(padded, casefold=True)
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def generate_totp_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


class MFAStore(Protocol):
    def get_session(self, session_id: str) -> Optional[Session]: ...

    def create_challenge(self, challenge: MFAChallenge) -> Optional[MFAChallenge]: ...

    def get_challenge(self, challenge_id: str) -> Optional[MFAChallenge]: ...

    def resolve_challenge(
        self, challenge_id: str, status: ChallengeStatus, *, now: Optional[datetime] = None
    ) -> Tuple[Optional[MFAChallenge], Optional[Session], bool]: ...

    def save_mfa_secret(self, principal_id: str, secret: str) -> MFAEnrollment: ...

    def get_mfa_enrollment(self, principal_id: str) -> Optional[MFAEnrollment]: ...

    def enable_mfa(self, principal_id: str) -> None: ...

    def verify_challenge(
        self, challenge_id: str, counter: int, *, now: Optional[datetime] = None
    ) -> Tuple[Optional[MFAChallenge], Optional[Session], bool]: ...


@dataclass
class StepUpDecision:
    operation: str
    passthrough: bool
    challenge_id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class StepUpResult:
    session: Session
    operation: str
    access_token: str
    access_expires_at: datetime


@dataclass
class EnrollmentStart:
    secret: str
    otpauth_uri: str


class StepUpGate:
    """Per-session step-up state machine.

    ``BASIC -> PENDING_MFA`` when a challenge is issued, ``PENDING_MFA ->
    MFA_VERIFIED`` on a correct code and ``PENDING_MFA -> BASIC`` on a wrong
    or late one. Each challenge accepts a single attempt. A verified session
    never drops back.
    """

    def __init__(
        self,
        store: MFAStore,
        tokens: TokenIssuer,
        limiter: RateLimiter,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.limiter = limiter
        self.settings = settings
        self._clock = clock

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await bounded_store_call(
            operation, func, *args, timeout=self.settings.store_timeout_seconds, **kwargs
        )

    def required_level(self, operation: str) -> AssuranceLevel:
        return AssuranceLevel(self.settings.step_up_policy.get(operation, AssuranceLevel.BASIC.value))

    async def _active_session(self, session_id: str) -> Session:
        session = await self._call("get_session", self.store.get_session, session_id)
        if session is None:
            raise session_not_found()
        if session.revoked:
            raise session_revoked()
        if session.is_expired(self._clock()):
            raise session_expired()
        return session

    async def enroll(self, principal_id: str, *, label: Optional[str] = None) -> EnrollmentStart:
        """Create a pending TOTP secret; it is enabled once an ``enroll_mfa`` challenge succeeds."""
        secret = generate_totp_secret()
        try:
            await self._call("save_mfa_secret", self.store.save_mfa_secret, principal_id, secret)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message) from exc
        issuer = self.settings.jwt_issuer
        account = quote(f"{issuer}:{label or principal_id}")
        uri = (
            f"otpauth://totp/{account}?secret={secret}&issuer={quote(issuer)}"
            f"&algorithm=SHA1&digits={TOTP_DIGITS}&period={self.settings.mfa_code_step_seconds}"
        )
        logger.info("mfa_enrollment_started", principal_id=principal_id)
        return EnrollmentStart(secret=secret, otpauth_uri=uri)

    async def require_step_up(self, session_id: str, operation: str) -> StepUpDecision:
        if not operation:
            raise ValidationError("operation is required")
        session = await self._active_session(session_id)
        if session.assurance_level.satisfies(self.required_level(operation)):
            return StepUpDecision(operation=operation, passthrough=True)

        enrollment = await self._call(
            "get_mfa_enrollment", self.store.get_mfa_enrollment, session.principal_id
        )
        if enrollment is None or (not enrollment.enabled and operation != ENROLL_OPERATION):
            raise ForbiddenError("mfa is not enrolled", error_code=ErrorCode.MFA_NOT_ENROLLED)

        challenge = MFAChallenge.new(
            session.id,
            session.principal_id,
            operation,
            self.settings.mfa_challenge_ttl_seconds,
            now=self._clock(),
        )
        created = await self._call("create_challenge", self.store.create_challenge, challenge)
        if created is None:
            raise session_revoked()
        logger.info(
            "step_up_challenge_issued",
            session_id=short_id(session.id),
            operation=operation,
        )
        return StepUpDecision(
            operation=operation,
            passthrough=False,
            challenge_id=created.id,
            expires_at=created.expires_at,
        )

    async def _fail(self, challenge: MFAChallenge, status: ChallengeStatus, code: ErrorCode, message: str):
        await self._call("resolve_challenge", self.store.resolve_challenge, challenge.id, status)
        self._log_failure(challenge, code)
        return AuthenticationError(message, error_code=code)

    @staticmethod
    def _log_failure(challenge: MFAChallenge, code: ErrorCode) -> None:
        logger.warning(
            "step_up_failed",
            session_id=short_id(challenge.session_id),
            operation=challenge.operation,
            reason=code.value,
        )

    def _match_counter(self, secret: str, code: str, timestamp: float) -> Tuple[Optional[int], bool]:
        """Return (matching counter, matched_stale_step)."""
        step = self.settings.mfa_code_step_seconds
        skew = self.settings.mfa_code_skew_steps
        current = totp_counter(timestamp, step)
        for offset in range(-skew, skew + 1):
            if hmac.compare_digest(totp_code(secret, current + offset), code):
                return current + offset, False
        for back in range(skew + 1, skew + 1 + self.settings.mfa_code_lookback_steps):
            if hmac.compare_digest(totp_code(secret, current - back), code):
                return None, True
        return None, False

    async def complete_step_up(
        self, challenge_id: str, code: str, *, session_id: Optional[str] = None
    ) -> StepUpResult:
        challenge = await self._call("get_challenge", self.store.get_challenge, challenge_id)
        # A challenge answered from another session is treated as unknown
        if challenge is None or (session_id is not None and challenge.session_id != session_id):
            raise NotFoundError("challenge not found", error_code=ErrorCode.CHALLENGE_NOT_FOUND)
        await self.limiter.allow(challenge.principal_id, "mfa_attempt")

        if challenge.status == ChallengeStatus.EXPIRED:
            raise AuthenticationError("challenge expired", error_code=ErrorCode.CODE_EXPIRED)
        if challenge.status != ChallengeStatus.PENDING:
            raise AuthenticationError(
                "challenge already used", error_code=ErrorCode.CODE_MISMATCH
            )
        now = self._clock()
        if now >= challenge.expires_at:
            raise await self._fail(challenge, ChallengeStatus.EXPIRED, ErrorCode.CODE_EXPIRED, "challenge expired")

        code = (code or "").strip()
        enrollment = await self._call(
            "get_mfa_enrollment", self.store.get_mfa_enrollment, challenge.principal_id
        )
        if enrollment is None or not code.isdigit() or len(code) != TOTP_DIGITS:
            raise await self._fail(challenge, ChallengeStatus.FAILED, ErrorCode.CODE_MISMATCH, "invalid code")

        counter, stale = self._match_counter(enrollment.secret, code, now.timestamp())
        if counter is None:
            if stale:
                raise await self._fail(challenge, ChallengeStatus.FAILED, ErrorCode.CODE_EXPIRED, "code expired")
            raise await self._fail(challenge, ChallengeStatus.FAILED, ErrorCode.CODE_MISMATCH, "invalid code")

        resolved, session, transitioned = await self._call(
            "verify_challenge", self.store.verify_challenge, challenge.id, counter
        )
        if not transitioned:
            raise AuthenticationError(
                "challenge already used", error_code=ErrorCode.CODE_MISMATCH
            )
        if resolved.status != ChallengeStatus.VERIFIED:
            self._log_failure(challenge, ErrorCode.CODE_MISMATCH)
            raise AuthenticationError("code already used", error_code=ErrorCode.CODE_MISMATCH)
        if session is None or session.revoked:
            raise session_revoked()

        if resolved.operation == ENROLL_OPERATION and not enrollment.enabled:
            await self._call("enable_mfa", self.store.enable_mfa, challenge.principal_id)
            logger.info("mfa_enrollment_confirmed", principal_id=challenge.principal_id)

        access_token, access_exp = self.tokens.mint_access_token(session)
        logger.info(
            "step_up_verified",
            session_id=short_id(session.id),
            operation=resolved.operation,
        )
        return StepUpResult(
            session=session,
            operation=resolved.operation,
            access_token=access_token,
            access_expires_at=access_exp,
        )

    async def ensure_assurance(self, session: Session, operation: str) -> None:
        """Raise STEP_UP_REQUIRED unless ``session`` already meets the policy for ``operation``."""
        if not session.assurance_level.satisfies(self.required_level(operation)):
            raise AuthenticationError(
                "step-up authentication required",
                error_code=ErrorCode.STEP_UP_REQUIRED,
                detail={"operation": operation},
            )
