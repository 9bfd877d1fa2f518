from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, TypeVar

from icsession.config import Settings
from icsession.logging import get_logger, short_id
from icsession.service.bounded import bounded_store_call
from icsession.service.errors import (
    AuthenticationError,
    ConflictError,
    ErrorCode,
    invalid_credential,
    session_expired,
    session_revoked,
)
from icsession.storage.errors import ConstraintViolation
from icsession.storage.models import (
    AssuranceLevel,
    RedeemOutcome,
    RedeemResult,
    RefreshRecord,
    Session,
    hash_refresh_token,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

RevocationListener = Callable[[Session], Awaitable[None]]


class SessionStore(Protocol):
    def create_session(self, session: Session, refresh: RefreshRecord) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def redeem_refresh_token(
        self,
        token_id: str,
        *,
        replacement_id: str,
        ttl_minutes: int,
        max_lifetime_minutes: int,
        request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RedeemResult: ...


@dataclass
class IssuedTokens:
    session: Session
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    rotation_counter: int = 0
    token_type: str = "bearer"


@dataclass
class AccessClaims:
    principal_id: str
    session_id: str
    assurance_level: AssuranceLevel
    expires_at: datetime
    token_id: str


class TokenIssuer:
    """Mints session-bound access tokens and rotates single-use refresh tokens.

    Access tokens are HS256 JWTs and never stored. Refresh tokens are opaque;
    only their SHA-256 digest reaches the store, where redemption is a
    compare-and-swap under the session's lock.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._leeway = timedelta(seconds=settings.jwt_leeway_seconds)
        self._revocation_listeners: List[RevocationListener] = []

    def add_revocation_listener(self, listener: RevocationListener) -> None:
        self._revocation_listeners.append(listener)

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await bounded_store_call(
            operation, func, *args, timeout=self.settings.store_timeout_seconds, **kwargs
        )

    async def issue_session(
        self, principal_id: str, *, application_id: Optional[str] = None
    ) -> IssuedTokens:
        now = self._clock()
        ttl_minutes = min(
            self.settings.refresh_token_ttl_minutes, self.settings.session_max_lifetime_minutes
        )
        session = Session.new(principal_id, ttl_minutes, application_id=application_id, now=now)
        raw_refresh = secrets.token_urlsafe(48)
        record = RefreshRecord(
            id=hash_refresh_token(raw_refresh),
            session_id=session.id,
            rotation_counter=0,
            issued_at=now,
            expires_at=session.expires_at,
        )
        try:
            stored = await self._call("create_session", self.store.create_session, session, record)
        except ConstraintViolation as exc:
            logger.warning("session_issue_rejected", reason=exc.message)
            raise invalid_credential() from exc
        logger.info(
            "session_issued",
            session_id=short_id(stored.id),
            principal_id=principal_id,
            application_id=application_id,
        )
        return self._tokens_for(stored, raw_refresh, record, now)

    def _tokens_for(
        self, session: Session, raw_refresh: str, record: RefreshRecord, now: datetime
    ) -> IssuedTokens:
        access_token, access_exp = self.mint_access_token(session, now=now)
        return IssuedTokens(
            session=session,
            access_token=access_token,
            access_expires_at=access_exp,
            refresh_token=raw_refresh,
            refresh_expires_at=record.expires_at,
            rotation_counter=record.rotation_counter,
        )

    def _replacement_token(self, raw_refresh: str, request_id: Optional[str]) -> str:
        """Successor refresh token; derived from the request id so a retried request gets the same one."""
        if not request_id:
            return secrets.token_urlsafe(48)
        digest = hmac.new(
            self.settings.jwt_secret.encode(),
            f"refresh|{raw_refresh}|{request_id}".encode(),
            hashlib.sha256,
        ).digest()
        return self._encode_segment(digest)

    async def refresh(self, raw_refresh: str, *, request_id: Optional[str] = None) -> IssuedTokens:
        if not raw_refresh:
            raise AuthenticationError(
                "invalid refresh token", error_code=ErrorCode.INVALID_REFRESH_TOKEN
            )
        now = self._clock()
        replacement = self._replacement_token(raw_refresh, request_id)
        result = await self._call(
            "redeem_refresh_token",
            self.store.redeem_refresh_token,
            hash_refresh_token(raw_refresh),
            replacement_id=hash_refresh_token(replacement),
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            max_lifetime_minutes=self.settings.session_max_lifetime_minutes,
            request_id=request_id,
            now=now,
        )

        if result.outcome in (RedeemOutcome.ROTATED, RedeemOutcome.REPLAYED):
            logger.info(
                "refresh_rotated",
                session_id=short_id(result.session.id),
                rotation_counter=result.record.rotation_counter,
                replayed=result.outcome == RedeemOutcome.REPLAYED,
            )
            return self._tokens_for(result.session, replacement, result.record, now)

        if result.outcome == RedeemOutcome.REUSED:
            logger.warning(
                "refresh_reuse_detected",
                session_id=short_id(result.session.id),
                principal_id=result.session.principal_id,
            )
            await self._notify_revoked(result.session)
            raise ConflictError(
                "refresh token already used; session revoked",
                error_code=ErrorCode.REFRESH_REUSED,
            )
        if result.outcome == RedeemOutcome.REVOKED:
            raise session_revoked()
        if result.outcome == RedeemOutcome.EXPIRED:
            raise session_expired()
        raise AuthenticationError(
            "invalid refresh token", error_code=ErrorCode.INVALID_REFRESH_TOKEN
        )

    async def _notify_revoked(self, session: Session) -> None:
        for listener in self._revocation_listeners:
            await listener(session)

    def mint_access_token(
        self, session: Session, *, now: Optional[datetime] = None
    ) -> tuple[str, datetime]:
        now = now or self._clock()
        expires_at = now + timedelta(seconds=self.settings.access_token_ttl_seconds)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": session.principal_id,
            "sid": session.id,
            "al": session.assurance_level.value,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    async def validate_access_token(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token)
        now = self._clock()
        exp = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        if exp <= now - self._leeway:
            raise AuthenticationError("access token expired", error_code=ErrorCode.TOKEN_EXPIRED)

        session = await self._call("get_session", self.store.get_session, payload["sid"])
        if session is None or session.revoked:
            raise session_revoked()
        if session.principal_id != payload.get("sub"):
            raise _signature_invalid()
        if session.is_expired(now):
            raise session_expired()
        return AccessClaims(
            principal_id=session.principal_id,
            session_id=session.id,
            assurance_level=session.assurance_level,
            expires_at=exp,
            token_id=str(payload.get("jti") or ""),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        """Verify signature and audience; raises SIGNATURE_INVALID on any mismatch."""
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise _signature_invalid() from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise _signature_invalid() from None
        # Only HS256 is accepted, blocking alg=none and algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise _signature_invalid()

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise _signature_invalid()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_payload_decode_failed")
            raise _signature_invalid() from None
        if not isinstance(payload, dict):
            raise _signature_invalid()

        aud = payload.get("aud")
        valid_aud = aud == self.settings.jwt_audience or (
            isinstance(aud, list) and self.settings.jwt_audience in aud
        )
        if (
            payload.get("iss") != self.settings.jwt_issuer
            or not valid_aud
            or payload.get("token_type") != "access"
            or not payload.get("sid")
        ):
            raise _signature_invalid()
        try:
            float(payload.get("exp"))
        except (TypeError, ValueError):
            raise _signature_invalid() from None
        return payload


def _signature_invalid() -> AuthenticationError:
    return AuthenticationError("invalid access token", error_code=ErrorCode.SIGNATURE_INVALID)
