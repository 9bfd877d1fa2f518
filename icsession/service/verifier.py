from __future__ import annotations

import asyncio
import hmac
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Tuple, TypeVar, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from icsession.config import Settings
from icsession.logging import get_logger
from icsession.service.bounded import bounded_store_call
from icsession.service.errors import (
    AuthenticationError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    ValidationError,
    invalid_credential,
)
from icsession.service.rate_limit import RateLimiter
from icsession.storage.errors import ConstraintViolation
from icsession.storage.models import Principal

logger = get_logger(__name__)

T = TypeVar("T")

MIN_PASSWORD_LENGTH = 8


@dataclass
class PasswordCredential:
    identifier: str
    password: str


@dataclass
class FederatedAssertion:
    """An assertion already validated by the federation layer."""

    issuer: str
    subject: str
    claims: dict[str, Any] = field(default_factory=dict)


Credential = Union[PasswordCredential, FederatedAssertion]


class PrincipalStore(Protocol):
    def create_principal(self, identifier: str, password_hash: str) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def find_principal_by_identifier(self, identifier: str) -> Optional[Principal]: ...

    def get_password_hash(self, principal_id: str) -> Optional[str]: ...

    def set_password_hash(self, principal_id: str, password_hash: str) -> None: ...

    def deactivate_principal(self, principal_id: str) -> Optional[Principal]: ...

    def link_identity(self, principal_id: str, issuer: str, subject: str) -> Principal: ...

    def get_or_create_federated_principal(
        self, issuer: str, subject: str
    ) -> Tuple[Principal, bool]: ...


def lockout_key(identifier: str) -> str:
    return f"login:{identifier.strip().lower()}"


class CredentialVerifier:
    """Turns a password or federated assertion into a principal id.

    The failure lockout is consulted before the credential store is touched,
    and unknown identifiers still pay for one Argon2 verification so timing
    does not reveal whether a principal exists.
    """

    def __init__(self, store: PrincipalStore, limiter: RateLimiter, settings: Settings) -> None:
        self.store = store
        self.limiter = limiter
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    async def _call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        return await bounded_store_call(
            operation, func, *args, timeout=self.settings.store_timeout_seconds
        )

    async def verify(self, credential: Credential) -> str:
        if isinstance(credential, PasswordCredential):
            return await self._verify_password(credential)
        if isinstance(credential, FederatedAssertion):
            return await self._verify_assertion(credential)
        raise ValidationError("unsupported credential type")

    async def _verify_password(self, credential: PasswordCredential) -> str:
        if not credential.identifier or not credential.identifier.strip():
            raise ValidationError("identifier is required")
        key = lockout_key(credential.identifier)
        await self.limiter.check_lockout(key)

        principal = await self._call(
            "find_principal", self.store.find_principal_by_identifier, credential.identifier
        )
        stored_hash = None
        if principal and principal.is_active:
            stored_hash = await self._call("get_password_hash", self.store.get_password_hash, principal.id)
        matched = await asyncio.to_thread(self._check_password, stored_hash, credential.password)

        if not matched or principal is None or not principal.is_active:
            locked = await self.limiter.record_failure(key)
            logger.warning("credential_rejected", method="password", lockout_triggered=locked)
            raise invalid_credential()

        await self.limiter.record_success(key)
        logger.info("credential_verified", method="password", principal_id=principal.id)
        return principal.id

    def _check_password(self, stored_hash: Optional[str], password: str) -> bool:
        try:
            if stored_hash is None:
                self._pwd_hasher.verify(self._dummy_hash, password)
                return False
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    async def _verify_assertion(self, assertion: FederatedAssertion) -> str:
        if not assertion.issuer or not assertion.subject:
            raise ValidationError("assertion issuer and subject are required")
        key = f"federated:{assertion.issuer}|{assertion.subject}"
        await self.limiter.check_lockout(key)
        trusted = self.settings.trusted_issuers
        if trusted and assertion.issuer not in trusted:
            await self.limiter.record_failure(key)
            logger.warning("federation_issuer_untrusted", issuer=assertion.issuer)
            raise invalid_credential()

        principal, created = await self._call(
            "federated_principal",
            self.store.get_or_create_federated_principal,
            assertion.issuer,
            assertion.subject,
        )
        if not principal.is_active:
            await self.limiter.record_failure(key)
            raise invalid_credential()
        if created:
            logger.info("federated_principal_created", principal_id=principal.id, issuer=assertion.issuer)
        await self.limiter.record_success(key)
        logger.info("credential_verified", method="federated", principal_id=principal.id)
        return principal.id

    def check_federation_key(self, presented: Optional[str]) -> None:
        """Reject callers that cannot prove they are the federation layer."""
        expected = self.settings.federation_shared_secret
        if not expected:
            raise AuthenticationError("federated login is not enabled")
        if not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
            logger.warning("federation_key_rejected")
            raise AuthenticationError("invalid federation key")

    async def register(self, identifier: str, password: str) -> Principal:
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("identifier is required")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        password_hash = await asyncio.to_thread(self._pwd_hasher.hash, password)
        try:
            principal = await self._call(
                "create_principal", self.store.create_principal, identifier, password_hash
            )
        except ConstraintViolation as exc:
            raise ConflictError("identifier already registered") from exc
        logger.info("principal_registered", principal_id=principal.id)
        return principal

    async def change_password(self, principal_id: str, current: str, new: str) -> None:
        if len(new or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        stored_hash = await self._call("get_password_hash", self.store.get_password_hash, principal_id)
        matched = await asyncio.to_thread(self._check_password, stored_hash, current)
        if not matched:
            raise invalid_credential()
        new_hash = await asyncio.to_thread(self._pwd_hasher.hash, new)
        await self._call("set_password_hash", self.store.set_password_hash, principal_id, new_hash)
        logger.info("password_changed", principal_id=principal_id)

    async def link_identity(self, principal_id: str, issuer: str, subject: str) -> Principal:
        trusted = self.settings.trusted_issuers
        if trusted and issuer not in trusted:
            raise ValidationError("issuer is not trusted")
        try:
            principal = await self._call(
                "link_identity", self.store.link_identity, principal_id, issuer, subject
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("identity_linked", principal_id=principal_id, issuer=issuer)
        return principal

    async def get_principal(self, principal_id: str) -> Principal:
        principal = await self._call("get_principal", self.store.get_principal, principal_id)
        if not principal:
            raise NotFoundError("principal not found", error_code=ErrorCode.NOT_FOUND)
        return principal

    async def deactivate(self, principal_id: str) -> Principal:
        principal = await self._call("deactivate_principal", self.store.deactivate_principal, principal_id)
        if not principal:
            raise NotFoundError("principal not found")
        logger.info("principal_deactivated", principal_id=principal_id)
        return principal
