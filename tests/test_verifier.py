"""Credential verification: passwords, federated assertions and lockout."""

import pytest

from icsession.service.errors import (
    AuthenticationError,
    ConflictError,
    ErrorCode,
    ForbiddenError,
    ValidationError,
)
from icsession.service.rate_limit import RateLimiter
from icsession.service.verifier import (
    CredentialVerifier,
    FederatedAssertion,
    PasswordCredential,
)
from icsession.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-key")


@pytest.fixture
def make_verifier(store, make_settings):
    def _make(**overrides):
        settings = make_settings(**overrides)
        return CredentialVerifier(store, RateLimiter(settings), settings)

    return _make


@pytest.fixture
def verifier(make_verifier):
    return make_verifier()


class TestRegister:
    async def test_register_hashes_password(self, verifier, store):
        principal = await verifier.register("Erin@Example.com", "correct-horse")
        stored = store.get_password_hash(principal.id)
        assert stored.startswith("$argon2id$")
        assert "correct-horse" not in stored
        assert principal.verified_factors == {"password"}

    async def test_duplicate_identifier_conflicts(self, verifier):
        await verifier.register("erin@example.com", "correct-horse")
        with pytest.raises(ConflictError):
            await verifier.register("ERIN@example.com", "another-pass")

    async def test_short_password(self, verifier):
        with pytest.raises(ValidationError):
            await verifier.register("erin@example.com", "short")

    async def test_blank_identifier(self, verifier):
        with pytest.raises(ValidationError):
            await verifier.register("   ", "correct-horse")


class TestPasswordVerification:
    async def test_correct_password(self, verifier):
        principal = await verifier.register("erin@example.com", "correct-horse")
        assert await verifier.verify(PasswordCredential("erin@example.com", "correct-horse")) == principal.id

    async def test_wrong_password_and_unknown_identifier_look_alike(self, verifier):
        await verifier.register("erin@example.com", "correct-horse")
        with pytest.raises(AuthenticationError) as wrong:
            await verifier.verify(PasswordCredential("erin@example.com", "battery-staple"))
        with pytest.raises(AuthenticationError) as unknown:
            await verifier.verify(PasswordCredential("nobody@example.com", "battery-staple"))
        assert wrong.value.error_code == unknown.value.error_code == ErrorCode.INVALID_CREDENTIAL
        assert wrong.value.message == unknown.value.message

    async def test_lockout_after_repeated_failures(self, verifier):
        await verifier.register("erin@example.com", "correct-horse")
        for _ in range(verifier.settings.login_max_failures):
            with pytest.raises(AuthenticationError):
                await verifier.verify(PasswordCredential("erin@example.com", "wrong-password"))
        # Even the right password is refused while locked
        with pytest.raises(ForbiddenError) as excinfo:
            await verifier.verify(PasswordCredential("erin@example.com", "correct-horse"))
        assert excinfo.value.error_code == ErrorCode.LOCKED_OUT

    async def test_success_resets_failure_count(self, verifier):
        await verifier.register("erin@example.com", "correct-horse")
        for _ in range(verifier.settings.login_max_failures - 1):
            with pytest.raises(AuthenticationError):
                await verifier.verify(PasswordCredential("erin@example.com", "wrong-password"))
        await verifier.verify(PasswordCredential("erin@example.com", "correct-horse"))
        with pytest.raises(AuthenticationError):
            await verifier.verify(PasswordCredential("erin@example.com", "wrong-password"))
        await verifier.verify(PasswordCredential("erin@example.com", "correct-horse"))

    async def test_deactivated_principal_rejected(self, verifier):
        principal = await verifier.register("erin@example.com", "correct-horse")
        await verifier.deactivate(principal.id)
        with pytest.raises(AuthenticationError):
            await verifier.verify(PasswordCredential("erin@example.com", "correct-horse"))

    async def test_change_password(self, verifier):
        principal = await verifier.register("erin@example.com", "correct-horse")
        with pytest.raises(AuthenticationError):
            await verifier.change_password(principal.id, "not-current", "new-password-1")
        await verifier.change_password(principal.id, "correct-horse", "new-password-1")
        assert await verifier.verify(PasswordCredential("erin@example.com", "new-password-1")) == principal.id


class TestFederatedVerification:
    async def test_first_assertion_creates_principal(self, verifier, store):
        principal_id = await verifier.verify(FederatedAssertion("https://idp", "sub-9"))
        assert await verifier.verify(FederatedAssertion("https://idp", "sub-9")) == principal_id
        principal = store.get_principal(principal_id)
        assert principal.linked_identities == {"https://idp": "sub-9"}

    async def test_untrusted_issuer(self, make_verifier):
        verifier = make_verifier(trusted_issuers="https://idp")
        with pytest.raises(AuthenticationError) as excinfo:
            await verifier.verify(FederatedAssertion("https://evil", "sub-9"))
        assert excinfo.value.error_code == ErrorCode.INVALID_CREDENTIAL

    async def test_link_identity_conflict(self, verifier):
        first = await verifier.register("erin@example.com", "correct-horse")
        second = await verifier.register("frank@example.com", "correct-horse")
        await verifier.link_identity(first.id, "https://idp", "sub-1")
        with pytest.raises(ConflictError):
            await verifier.link_identity(second.id, "https://idp", "sub-1")

    async def test_linked_identity_logs_into_existing_principal(self, verifier):
        principal = await verifier.register("erin@example.com", "correct-horse")
        await verifier.link_identity(principal.id, "https://idp", "sub-1")
        assert await verifier.verify(FederatedAssertion("https://idp", "sub-1")) == principal.id


class TestFederationKey:
    def test_disabled_without_secret(self, verifier):
        with pytest.raises(AuthenticationError):
            verifier.check_federation_key("anything")

    def test_wrong_and_right_key(self, make_verifier):
        verifier = make_verifier(federation_shared_secret="federation-secret")
        with pytest.raises(AuthenticationError):
            verifier.check_federation_key("guess")
        with pytest.raises(AuthenticationError):
            verifier.check_federation_key(None)
        verifier.check_federation_key("federation-secret")
