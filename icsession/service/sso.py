from __future__ import annotations

import asyncio
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

from icsession.config import Settings
from icsession.logging import get_logger, short_id
from icsession.service.bounded import bounded_cache_call, bounded_store_call
from icsession.service.errors import (
    ErrorCode,
    ForbiddenError,
    session_expired,
    session_not_found,
    session_revoked,
)
from icsession.storage.models import Session, utcnow
from icsession.storage.redis_cache import REVOCATION_CHANNEL, RedisCache

logger = get_logger(__name__)

T = TypeVar("T")


class SSOStore(Protocol):
    def get_session(self, session_id: str) -> Optional[Session]: ...

    def add_observer(self, session_id: str, application_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str, reason: str = "logout") -> Optional[Session]: ...

    def revoke_principal_sessions(
        self, principal_id: str, reason: str = "logout_all", *, except_session_id: Optional[str] = None
    ) -> List[str]: ...


class SSOCoordinator:
    """Makes one session visible to every application in the trust domain.

    Reads come from the authoritative store or from a local snapshot no older
    than ``session_cache_ttl_ms``. Revocation always writes the store first,
    so a check that bypasses or outlives the snapshot sees it immediately;
    the snapshot on this node is dropped in the same call and other nodes are
    told through Redis.
    """

    def __init__(
        self,
        store: SSOStore,
        settings: Settings,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._monotonic = monotonic
        self._snapshots: Dict[str, Tuple[Session, float]] = {}
        self._snapshot_lock = threading.Lock()

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await bounded_store_call(
            operation, func, *args, timeout=self.settings.store_timeout_seconds, **kwargs
        )

    def is_trusted(self, application_id: str) -> bool:
        trusted = self.settings.trusted_applications
        return not trusted or application_id in trusted

    def _ensure_active(self, session: Optional[Session]) -> Session:
        if session is None:
            raise session_not_found()
        if session.revoked:
            raise session_revoked()
        if session.is_expired(self._clock()):
            raise session_expired()
        return session

    def _remember(self, session: Session) -> None:
        if self.settings.session_cache_ttl_ms <= 0:
            return
        with self._snapshot_lock:
            self._snapshots[session.id] = (session, self._monotonic())

    def _fresh_snapshot(self, session_id: str) -> Optional[Session]:
        max_age = self.settings.session_cache_ttl_ms / 1000.0
        with self._snapshot_lock:
            entry = self._snapshots.get(session_id)
            if entry is None:
                return None
            session, stored_at = entry
            if self._monotonic() - stored_at > max_age:
                self._snapshots.pop(session_id, None)
                return None
            return session

    def evict_local(self, session_id: str) -> None:
        with self._snapshot_lock:
            self._snapshots.pop(session_id, None)

    async def observe(self, session_id: str, application_id: str) -> Session:
        """Register ``application_id`` as a participant in the session."""
        if not application_id or not self.is_trusted(application_id):
            logger.warning("sso_application_untrusted", application_id=application_id)
            raise ForbiddenError(
                "application is not part of the trust domain",
                error_code=ErrorCode.APPLICATION_NOT_TRUSTED,
            )
        session = self._ensure_active(
            await self._call("add_observer", self.store.add_observer, session_id, application_id)
        )
        await self._check_remote_revocation(session)
        self._remember(session)
        logger.info(
            "session_observed",
            session_id=short_id(session_id),
            application_id=application_id,
            observers=len(session.observers),
        )
        return session

    async def check_session(self, session_id: str, *, consistent: bool = False) -> Session:
        if not consistent:
            snapshot = self._fresh_snapshot(session_id)
            if snapshot is not None:
                return self._ensure_active(snapshot)
        session = self._ensure_active(
            await self._call("get_session", self.store.get_session, session_id)
        )
        await self._check_remote_revocation(session)
        self._remember(session)
        return session

    async def _check_remote_revocation(self, session: Session) -> None:
        if not self.cache:
            return
        revoked = await bounded_cache_call(
            "revocation_check",
            self.cache.is_session_revoked(session.id),
            timeout=self.settings.store_timeout_seconds,
        )
        if revoked:
            self.evict_local(session.id)
            raise session_revoked()

    async def logout_everywhere(self, session_id: str) -> Session:
        """Revoke a session for every application observing it."""
        session = await self._call("revoke_session", self.store.revoke_session, session_id, "logout")
        if session is None:
            raise session_not_found()
        await self.forget(session)
        logger.info(
            "session_logged_out_everywhere",
            session_id=short_id(session_id),
            observers=sorted(session.observers),
        )
        return session

    async def logout_principal(
        self, principal_id: str, *, except_session_id: Optional[str] = None
    ) -> List[str]:
        revoked_ids = await self._call(
            "revoke_principal_sessions",
            self.store.revoke_principal_sessions,
            principal_id,
            "logout_all",
            except_session_id=except_session_id,
        )
        for session_id in revoked_ids:
            self.evict_local(session_id)
        if self.cache:
            await bounded_cache_call(
                "publish_revocations",
                self.cache.publish_revocations(
                    revoked_ids, self.settings.session_max_lifetime_minutes * 60
                ),
                timeout=self.settings.store_timeout_seconds,
            )
        logger.info("principal_sessions_revoked", principal_id=principal_id, count=len(revoked_ids))
        return revoked_ids

    async def forget(self, session: Session) -> None:
        """Drop local state for a revoked session and tell other nodes."""
        self.evict_local(session.id)
        if self.cache:
            ttl = int((session.expires_at - self._clock()).total_seconds())
            await bounded_cache_call(
                "publish_revocations",
                self.cache.publish_revocations([session.id], ttl),
                timeout=self.settings.store_timeout_seconds,
            )

    async def listen_for_revocations(self, stop: asyncio.Event) -> None:
        """Evict snapshots revoked on other nodes until ``stop`` is set."""
        if not self.cache:
            return
        pubsub = self.cache.client.pubsub()
        await pubsub.subscribe(REVOCATION_CHANNEL)
        try:
            while not stop.is_set():
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message.get("type") == "message":
                    self.evict_local(str(message.get("data")))
        finally:
            await pubsub.unsubscribe(REVOCATION_CHANNEL)
            await pubsub.aclose()

    def prune_snapshots(self) -> int:
        max_age = self.settings.session_cache_ttl_ms / 1000.0
        now = self._monotonic()
        with self._snapshot_lock:
            stale = [sid for sid, (_, at) in self._snapshots.items() if now - at > max_age]
            for sid in stale:
                del self._snapshots[sid]
        return len(stale)
