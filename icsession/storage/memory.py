from __future__ import annotations

import base64
import hashlib
import secrets
import threading
import zlib
from contextlib import ExitStack
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from cryptography.fernet import Fernet, InvalidToken

from icsession.logging import get_logger, short_id
from icsession.storage.errors import ConstraintViolation, StoreUnavailable
from icsession.storage.models import (
    AssuranceLevel,
    ChallengeStatus,
    MFAChallenge,
    MFAEnrollment,
    Principal,
    RedeemOutcome,
    RedeemResult,
    RefreshRecord,
    Session,
    utcnow,
)


class _LockStripes:
    """Fixed pool of re-entrant locks; a key always maps to the same lock."""

    def __init__(self, size: int = 64) -> None:
        self._locks = [threading.RLock() for _ in range(max(size, 1))]

    def __call__(self, key: str) -> threading.RLock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]

    def ordered(self, *keys: str) -> List[threading.RLock]:
        """Distinct stripes for several keys, in a fixed global order."""
        indexes = sorted({zlib.crc32(key.encode("utf-8")) % len(self._locks) for key in keys})
        return [self._locks[index] for index in indexes]


def _copy_session(session: Session) -> Session:
    return replace(session, observers=set(session.observers))


def _copy_principal(principal: Principal) -> Principal:
    return replace(
        principal,
        verified_factors=set(principal.verified_factors),
        linked_identities=dict(principal.linked_identities),
    )


def _normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


class MemoryStore:
    """In-process authoritative store for principals, sessions and refresh records.

    A session, its refresh records and its MFA challenges are only mutated
    while holding the lock stripe chosen by the session id, so unrelated
    sessions never contend and a revoke serializes against an in-flight
    refresh of the same session. Principal-level tables use a second stripe
    pool; when both are needed the session stripe is taken first.

    Every read returns a copy. Callers never hold a reference to a live record.
    """

    def __init__(
        self,
        *,
        mfa_encryption_key: str | None = None,
        lock_stripes: int = 64,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._session_locks = _LockStripes(lock_stripes)
        self._principal_locks = _LockStripes(lock_stripes)
        self._closed = False
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_records: Dict[str, RefreshRecord] = {}
        self.challenges: Dict[str, MFAChallenge] = {}
        self.mfa_enrollments: Dict[str, MFAEnrollment] = {}
        self._identifier_index: Dict[str, str] = {}
        self._identity_index: Dict[Tuple[str, str], str] = {}
        self._sessions_by_principal: Dict[str, Set[str]] = {}
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material
        if not material:
            # Secrets encrypted with an ephemeral key do not survive a restart
            self.logger.warning("mfa_cipher_ephemeral_key")
            material = secrets.token_urlsafe(48)
        return Fernet(self._derive_cipher_key(material))

    def _check_open(self) -> None:
        if self._closed:
            raise StoreUnavailable("session store is closed")

    def ping(self) -> bool:
        self._check_open()
        return True

    def close(self) -> None:
        self._closed = True

    # principals
    def create_principal(self, identifier: str, password_hash: str) -> Principal:
        key = _normalize_identifier(identifier)
        with self._principal_locks(f"ident:{key}"):
            self._check_open()
            if key in self._identifier_index:
                raise ConstraintViolation("identifier already registered", {"identifier": key})
            principal = Principal.new(key)
            self.principals[principal.id] = principal
            self.credentials[principal.id] = password_hash
            self._identifier_index[key] = principal.id
            return _copy_principal(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        self._check_open()
        principal = self.principals.get(principal_id)
        return _copy_principal(principal) if principal else None

    def find_principal_by_identifier(self, identifier: str) -> Optional[Principal]:
        self._check_open()
        principal_id = self._identifier_index.get(_normalize_identifier(identifier))
        return self.get_principal(principal_id) if principal_id else None

    def get_password_hash(self, principal_id: str) -> Optional[str]:
        self._check_open()
        return self.credentials.get(principal_id)

    def set_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._principal_locks(f"pid:{principal_id}"):
            self._check_open()
            if principal_id not in self.principals:
                raise ConstraintViolation("principal does not exist", {"principal_id": principal_id})
            self.credentials[principal_id] = password_hash

    def deactivate_principal(self, principal_id: str) -> Optional[Principal]:
        """Soft delete; the record stays so sessions can still resolve it."""
        with self._principal_locks(f"pid:{principal_id}"):
            self._check_open()
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            if principal.deleted_at is None:
                principal.deleted_at = self._clock()
            return _copy_principal(principal)

    def find_principal_by_identity(self, issuer: str, subject: str) -> Optional[Principal]:
        self._check_open()
        principal_id = self._identity_index.get((issuer, subject))
        return self.get_principal(principal_id) if principal_id else None

    def link_identity(self, principal_id: str, issuer: str, subject: str) -> Principal:
        with ExitStack() as stack:
            for lock in self._principal_locks.ordered(f"fed:{issuer}|{subject}", f"pid:{principal_id}"):
                stack.enter_context(lock)
            self._check_open()
            principal = self.principals.get(principal_id)
            if not principal or not principal.is_active:
                raise ConstraintViolation(
                    "principal does not exist", {"principal_id": principal_id}
                )
            owner = self._identity_index.get((issuer, subject))
            if owner and owner != principal_id:
                raise ConstraintViolation(
                    "identity already linked", {"issuer": issuer}
                )
            previous = principal.linked_identities.get(issuer)
            if previous is not None and previous != subject:
                self._identity_index.pop((issuer, previous), None)
            self._identity_index[(issuer, subject)] = principal_id
            principal.linked_identities[issuer] = subject
            principal.verified_factors.add(f"federated:{issuer}")
            return _copy_principal(principal)

    def get_or_create_federated_principal(
        self, issuer: str, subject: str
    ) -> Tuple[Principal, bool]:
        """Return the principal linked to (issuer, subject), creating it on first sight."""
        with self._principal_locks(f"fed:{issuer}|{subject}"):
            self._check_open()
            principal_id = self._identity_index.get((issuer, subject))
            if principal_id and principal_id in self.principals:
                return _copy_principal(self.principals[principal_id]), False
            principal = Principal.new()
            principal.linked_identities[issuer] = subject
            principal.verified_factors.add(f"federated:{issuer}")
            self.principals[principal.id] = principal
            self._identity_index[(issuer, subject)] = principal.id
            return _copy_principal(principal), True

    # sessions
    def create_session(self, session: Session, refresh: RefreshRecord) -> Session:
        if session.expires_at <= session.created_at:
            raise ConstraintViolation("session must expire after it is created", {"session_id": session.id})
        if refresh.session_id != session.id:
            raise ConstraintViolation("refresh token belongs to another session", {"session_id": session.id})
        principal = self.principals.get(session.principal_id)
        if not principal or not principal.is_active:
            raise ConstraintViolation(
                "principal does not exist", {"principal_id": session.principal_id}
            )
        with self._session_locks(session.id):
            self._check_open()
            if session.id in self.sessions:
                raise ConstraintViolation("session id collision", {"session_id": session.id})
            stored = _copy_session(session)
            stored.current_refresh_id = refresh.id
            self.sessions[stored.id] = stored
            self.refresh_records[refresh.id] = replace(refresh)
            with self._principal_locks(f"sessions:{stored.principal_id}"):
                self._sessions_by_principal.setdefault(stored.principal_id, set()).add(stored.id)
            return _copy_session(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        self._check_open()
        with self._session_locks(session_id):
            session = self.sessions.get(session_id)
            if not session:
                return None
            self._lapse_pending_locked(session, self._clock())
            return _copy_session(session)

    def put_session(self, session: Session) -> Session:
        """Upsert a session record; assurance never decreases and revocation is sticky."""
        with self._session_locks(session.id):
            self._check_open()
            existing = self.sessions.get(session.id)
            stored = _copy_session(session)
            if existing:
                if existing.assurance_level.rank > stored.assurance_level.rank:
                    stored.assurance_level = existing.assurance_level
                if existing.revoked:
                    stored.revoked = True
                    stored.revoked_at = existing.revoked_at
                    stored.revoke_reason = existing.revoke_reason
            self.sessions[stored.id] = stored
            with self._principal_locks(f"sessions:{stored.principal_id}"):
                self._sessions_by_principal.setdefault(stored.principal_id, set()).add(stored.id)
            return _copy_session(stored)

    def list_principal_sessions(self, principal_id: str) -> List[Session]:
        self._check_open()
        with self._principal_locks(f"sessions:{principal_id}"):
            session_ids = list(self._sessions_by_principal.get(principal_id, ()))
        sessions = []
        for session_id in session_ids:
            session = self.get_session(session_id)
            if session:
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.created_at)

    def touch_session(
        self,
        session_id: str,
        ttl_minutes: int,
        max_lifetime_minutes: int,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        with self._session_locks(session_id):
            self._check_open()
            session = self.sessions.get(session_id)
            if not session:
                return None
            now = now or self._clock()
            self._lapse_pending_locked(session, now)
            if not session.revoked and not session.is_expired(now):
                self._slide_expiry(session, ttl_minutes, max_lifetime_minutes, now)
            return _copy_session(session)

    @staticmethod
    def _slide_expiry(
        session: Session, ttl_minutes: int, max_lifetime_minutes: int, now: datetime
    ) -> None:
        cap = session.created_at + timedelta(minutes=max_lifetime_minutes)
        session.expires_at = max(min(now + timedelta(minutes=ttl_minutes), cap), session.expires_at)
        session.last_refreshed_at = now

    def _lapse_pending_locked(self, session: Session, now: datetime) -> None:
        """Expire the session's pending challenge once its TTL has passed."""
        if not session.pending_challenge_id:
            return
        challenge = self.challenges.get(session.pending_challenge_id)
        if challenge is not None and now < challenge.expires_at:
            return
        if challenge is not None and challenge.status == ChallengeStatus.PENDING:
            challenge.status = ChallengeStatus.EXPIRED
            challenge.completed_at = challenge.expires_at
        session.pending_challenge_id = None

    def _revoke_locked(self, session: Session, reason: str, now: datetime) -> None:
        if not session.revoked:
            session.revoked = True
            session.revoked_at = now
            session.revoke_reason = reason
        if session.pending_challenge_id:
            challenge = self.challenges.get(session.pending_challenge_id)
            if challenge and challenge.status == ChallengeStatus.PENDING:
                challenge.status = ChallengeStatus.FAILED
                challenge.completed_at = now
            session.pending_challenge_id = None

    def revoke_session(self, session_id: str, reason: str = "logout") -> Optional[Session]:
        with self._session_locks(session_id):
            self._check_open()
            session = self.sessions.get(session_id)
            if not session:
                return None
            self._revoke_locked(session, reason, self._clock())
            self.logger.info(
                "session_revoked_in_store",
                session_id=short_id(session_id),
                reason=session.revoke_reason,
            )
            return _copy_session(session)

    def revoke_principal_sessions(
        self,
        principal_id: str,
        reason: str = "logout_all",
        *,
        except_session_id: Optional[str] = None,
    ) -> List[str]:
        """Revoke every session of a principal one stripe at a time; returns revoked ids."""
        self._check_open()
        with self._principal_locks(f"sessions:{principal_id}"):
            session_ids = list(self._sessions_by_principal.get(principal_id, ()))
        revoked: List[str] = []
        for session_id in session_ids:
            if session_id == except_session_id:
                continue
            with self._session_locks(session_id):
                session = self.sessions.get(session_id)
                if not session or session.revoked:
                    continue
                self._revoke_locked(session, reason, self._clock())
                revoked.append(session_id)
        return revoked

    def add_observer(self, session_id: str, application_id: str) -> Optional[Session]:
        with self._session_locks(session_id):
            self._check_open()
            session = self.sessions.get(session_id)
            if not session:
                return None
            now = self._clock()
            self._lapse_pending_locked(session, now)
            if not session.revoked and not session.is_expired(now):
                session.observers.add(application_id)
            return _copy_session(session)

    def raise_assurance(self, session_id: str, level: AssuranceLevel) -> Optional[Session]:
        with self._session_locks(session_id):
            self._check_open()
            session = self.sessions.get(session_id)
            if not session:
                return None
            level = AssuranceLevel(level)
            if level.rank > session.assurance_level.rank:
                session.assurance_level = level
            return _copy_session(session)

    # refresh tokens
    def get_refresh_record(self, token_id: str) -> Optional[RefreshRecord]:
        self._check_open()
        record = self.refresh_records.get(token_id)
        return replace(record) if record else None

    def redeem_refresh_token(
        self,
        token_id: str,
        *,
        replacement_id: str,
        ttl_minutes: int,
        max_lifetime_minutes: int,
        request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RedeemResult:
        """Compare-and-swap a refresh token for its replacement.

        Exactly one caller observes ``ROTATED`` for a given token. A caller
        that presents an already used token gets ``REUSED`` and the session is
        revoked, unless it repeats the request id that consumed the token and
        the replacement is still unused, which yields ``REPLAYED``.
        """
        self._check_open()
        initial = self.refresh_records.get(token_id)
        if initial is None:
            return RedeemResult(RedeemOutcome.UNKNOWN)
        with self._session_locks(initial.session_id):
            record = self.refresh_records.get(token_id)
            session = self.sessions.get(initial.session_id)
            if record is None or session is None:
                return RedeemResult(RedeemOutcome.UNKNOWN)
            now = now or self._clock()
            if record.used_at is not None:
                if (
                    request_id
                    and record.consumed_by_request == request_id
                    and record.replaced_by == replacement_id
                    and session.current_refresh_id == replacement_id
                    and not session.revoked
                    and not session.is_expired(now)
                ):
                    successor = self.refresh_records.get(replacement_id)
                    if successor is not None and successor.used_at is None:
                        return RedeemResult(
                            RedeemOutcome.REPLAYED, _copy_session(session), replace(successor)
                        )
                self._revoke_locked(session, "refresh_reuse", now)
                self.logger.warning(
                    "refresh_reuse_revoked_session",
                    session_id=short_id(session.id),
                    rotation_counter=record.rotation_counter,
                )
                return RedeemResult(RedeemOutcome.REUSED, _copy_session(session), replace(record))

            if session.revoked:
                return RedeemResult(RedeemOutcome.REVOKED, _copy_session(session), replace(record))
            if session.is_expired(now) or record.is_expired(now):
                return RedeemResult(RedeemOutcome.EXPIRED, _copy_session(session), replace(record))

            record.used_at = now
            record.consumed_by_request = request_id
            record.replaced_by = replacement_id
            self._slide_expiry(session, ttl_minutes, max_lifetime_minutes, now)
            successor = RefreshRecord(
                id=replacement_id,
                session_id=session.id,
                rotation_counter=record.rotation_counter + 1,
                issued_at=now,
                expires_at=session.expires_at,
            )
            self.refresh_records[successor.id] = successor
            session.current_refresh_id = successor.id
            return RedeemResult(RedeemOutcome.ROTATED, _copy_session(session), replace(successor))

    # step-up challenges
    def create_challenge(self, challenge: MFAChallenge) -> Optional[MFAChallenge]:
        """Attach a pending challenge to an active session, superseding any previous one."""
        with self._session_locks(challenge.session_id):
            self._check_open()
            session = self.sessions.get(challenge.session_id)
            if not session or session.revoked or session.is_expired(self._clock()):
                return None
            previous = self.challenges.get(session.pending_challenge_id or "")
            if previous and previous.status == ChallengeStatus.PENDING:
                previous.status = ChallengeStatus.EXPIRED
                previous.completed_at = challenge.created_at
            self.challenges[challenge.id] = replace(challenge)
            session.pending_challenge_id = challenge.id
            return replace(challenge)

    def get_challenge(self, challenge_id: str) -> Optional[MFAChallenge]:
        self._check_open()
        challenge = self.challenges.get(challenge_id)
        return replace(challenge) if challenge else None

    def resolve_challenge(
        self,
        challenge_id: str,
        status: ChallengeStatus,
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[Optional[MFAChallenge], Optional[Session], bool]:
        """Move a pending challenge to a terminal status.

        Returns the challenge, its session and whether this call performed the
        transition. A verified challenge raises the session to MFA_VERIFIED;
        any other outcome only clears the pending marker, so the session falls
        back to its previous level.
        """
        self._check_open()
        initial = self.challenges.get(challenge_id)
        if initial is None:
            return None, None, False
        with self._session_locks(initial.session_id):
            challenge = self.challenges.get(challenge_id)
            if challenge is None:
                return None, None, False
            session = self.sessions.get(challenge.session_id)
            if challenge.status != ChallengeStatus.PENDING:
                return replace(challenge), _copy_session(session) if session else None, False
            now = now or self._clock()
            challenge.status = ChallengeStatus(status)
            challenge.completed_at = now
            if session:
                if session.pending_challenge_id == challenge.id:
                    session.pending_challenge_id = None
                if challenge.status == ChallengeStatus.VERIFIED and not session.revoked:
                    session.assurance_level = AssuranceLevel.MFA_VERIFIED
            return replace(challenge), _copy_session(session) if session else None, True

    def verify_challenge(
        self,
        challenge_id: str,
        counter: int,
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[Optional[MFAChallenge], Optional[Session], bool]:
        """Spend a TOTP time-step and verify a pending challenge in one step.

        Nothing is spent when the challenge is no longer pending. If the
        time-step was already used the challenge fails instead. The boolean
        tells whether this call resolved the challenge either way.
        """
        self._check_open()
        initial = self.challenges.get(challenge_id)
        if initial is None:
            return None, None, False
        with self._session_locks(initial.session_id):
            challenge = self.challenges.get(challenge_id)
            if challenge is None:
                return None, None, False
            if challenge.status != ChallengeStatus.PENDING:
                session = self.sessions.get(challenge.session_id)
                return replace(challenge), _copy_session(session) if session else None, False
            fresh = self.consume_totp_counter(challenge.principal_id, counter)
            status = ChallengeStatus.VERIFIED if fresh else ChallengeStatus.FAILED
            return self.resolve_challenge(challenge_id, status, now=now)

    # MFA secrets
    def save_mfa_secret(self, principal_id: str, secret: str) -> MFAEnrollment:
        with self._principal_locks(f"pid:{principal_id}"):
            self._check_open()
            if principal_id not in self.principals:
                raise ConstraintViolation("principal does not exist", {"principal_id": principal_id})
            existing = self.mfa_enrollments.get(principal_id)
            if existing and existing.enabled:
                raise ConstraintViolation("mfa already enabled", {"principal_id": principal_id})
            encrypted = self._mfa_cipher.encrypt(secret.encode()).decode()
            stored = MFAEnrollment(principal_id=principal_id, secret=encrypted)
            self.mfa_enrollments[principal_id] = stored
            return replace(stored, secret=secret)

    def get_mfa_enrollment(self, principal_id: str) -> Optional[MFAEnrollment]:
        self._check_open()
        stored = self.mfa_enrollments.get(principal_id)
        if not stored:
            return None
        try:
            secret = self._mfa_cipher.decrypt(stored.secret.encode()).decode()
        except InvalidToken:
            self.logger.error("mfa_secret_decrypt_failed", principal_id=principal_id)
            return None
        return replace(stored, secret=secret)

    def enable_mfa(self, principal_id: str) -> None:
        with self._principal_locks(f"pid:{principal_id}"):
            self._check_open()
            stored = self.mfa_enrollments.get(principal_id)
            if not stored:
                raise ConstraintViolation("mfa not enrolled", {"principal_id": principal_id})
            stored.enabled = True
            principal = self.principals.get(principal_id)
            if principal:
                principal.verified_factors.add("totp")

    def consume_totp_counter(self, principal_id: str, counter: int) -> bool:
        """Record a TOTP time-step as spent; False if it (or a later one) was already used."""
        with self._principal_locks(f"pid:{principal_id}"):
            self._check_open()
            stored = self.mfa_enrollments.get(principal_id)
            if not stored:
                return False
            if stored.last_used_counter is not None and counter <= stored.last_used_counter:
                return False
            stored.last_used_counter = counter
            return True

    # maintenance
    def cleanup_expired(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
        """Drop sessions past expiry with their refresh records and challenges.

        Pending challenges past their TTL are expired right away; resolved ones
        are kept for an hour.
        """
        self._check_open()
        now = now or self._clock()
        removed = {"sessions": 0, "refresh_tokens": 0, "challenges": 0}
        for session_id in list(self.sessions.keys()):
            with self._session_locks(session_id):
                session = self.sessions.get(session_id)
                if not session or not session.is_expired(now):
                    continue
                del self.sessions[session_id]
                removed["sessions"] += 1
                with self._principal_locks(f"sessions:{session.principal_id}"):
                    ids = self._sessions_by_principal.get(session.principal_id)
                    if ids is not None:
                        ids.discard(session_id)
                        if not ids:
                            del self._sessions_by_principal[session.principal_id]
        live = set(self.sessions.keys())
        for token_id, record in list(self.refresh_records.items()):
            if record.session_id not in live:
                self.refresh_records.pop(token_id, None)
                removed["refresh_tokens"] += 1
        for session_id in live:
            with self._session_locks(session_id):
                session = self.sessions.get(session_id)
                if session:
                    self._lapse_pending_locked(session, now)
        stale_before = now - timedelta(hours=1)
        for challenge_id, challenge in list(self.challenges.items()):
            if challenge.session_id in live and challenge.expires_at > stale_before:
                continue
            with self._session_locks(challenge.session_id):
                self.challenges.pop(challenge_id, None)
                session = self.sessions.get(challenge.session_id)
                if session and session.pending_challenge_id == challenge_id:
                    session.pending_challenge_id = None
            removed["challenges"] += 1
        return removed
