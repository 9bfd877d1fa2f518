"""Unit tests for the in-memory session store.

Tests for:
- Principal registration, federation links and soft delete
- Session creation invariants and copy-on-read
- Refresh redemption compare-and-swap, including concurrent redemption and revoke
- Revocation, observers and monotonic assurance
- Step-up challenge transitions, TTL lapse and TOTP counter bookkeeping
- Expiry cleanup
"""

import threading
from datetime import timedelta

import pytest

from icsession.storage.errors import ConstraintViolation, StoreUnavailable
from icsession.storage.memory import MemoryStore
from icsession.storage.models import (
    AssuranceLevel,
    ChallengeStatus,
    MFAChallenge,
    RedeemOutcome,
    RefreshRecord,
    Session,
    hash_refresh_token,
)


@pytest.fixture
def store(fake_clock):
    return MemoryStore(mfa_encryption_key="unit-test-key", clock=fake_clock)


@pytest.fixture
def principal(store):
    return store.create_principal("alice@example.com", "hash")


def _open_session(store, principal_id, now, *, ttl_minutes=60, raw="refresh-0"):
    session = Session.new(principal_id, ttl_minutes, now=now)
    record = RefreshRecord(
        id=hash_refresh_token(raw),
        session_id=session.id,
        rotation_counter=0,
        issued_at=now,
        expires_at=session.expires_at,
    )
    return store.create_session(session, record), record


def _redeem(store, token_id, replacement_id, *, now, request_id=None):
    return store.redeem_refresh_token(
        token_id,
        replacement_id=replacement_id,
        ttl_minutes=60,
        max_lifetime_minutes=24 * 60,
        request_id=request_id,
        now=now,
    )


class TestPrincipals:
    def test_duplicate_identifier_rejected_case_insensitively(self, store, principal):
        with pytest.raises(ConstraintViolation):
            store.create_principal("ALICE@example.com", "other")

    def test_password_principal_has_password_factor(self, principal):
        assert principal.verified_factors == {"password"}

    def test_find_by_identifier_normalizes(self, store, principal):
        found = store.find_principal_by_identifier("  Alice@Example.com ")
        assert found is not None
        assert found.id == principal.id

    def test_returned_principal_is_a_copy(self, store, principal):
        copy = store.get_principal(principal.id)
        copy.verified_factors.add("tampered")
        assert "tampered" not in store.get_principal(principal.id).verified_factors

    def test_federated_principal_created_once(self, store):
        first, created = store.get_or_create_federated_principal("https://idp", "sub-1")
        second, created_again = store.get_or_create_federated_principal("https://idp", "sub-1")
        assert created is True
        assert created_again is False
        assert first.id == second.id
        assert first.linked_identities == {"https://idp": "sub-1"}

    def test_link_identity_owned_by_other_principal_conflicts(self, store, principal):
        other, _ = store.get_or_create_federated_principal("https://idp", "sub-1")
        with pytest.raises(ConstraintViolation):
            store.link_identity(principal.id, "https://idp", "sub-1")
        assert store.find_principal_by_identity("https://idp", "sub-1").id == other.id

    def test_deactivate_is_soft(self, store, principal):
        deactivated = store.deactivate_principal(principal.id)
        assert deactivated.deleted_at is not None
        assert store.get_principal(principal.id) is not None
        assert not store.get_principal(principal.id).is_active


class TestSessions:
    def test_create_rejects_non_positive_lifetime(self, store, principal, fake_clock):
        session = Session.new(principal.id, 60, now=fake_clock())
        session.expires_at = session.created_at
        record = RefreshRecord(
            id="r", session_id=session.id, rotation_counter=0,
            issued_at=fake_clock(), expires_at=session.created_at,
        )
        with pytest.raises(ConstraintViolation):
            store.create_session(session, record)

    def test_create_requires_active_principal(self, store, principal, fake_clock):
        store.deactivate_principal(principal.id)
        with pytest.raises(ConstraintViolation):
            _open_session(store, principal.id, fake_clock())

    def test_new_session_is_basic_and_expires_after_creation(self, store, principal, fake_clock):
        session, record = _open_session(store, principal.id, fake_clock())
        assert session.expires_at > session.created_at
        assert session.assurance_level == AssuranceLevel.BASIC
        assert session.current_refresh_id == record.id
        assert session.state == "basic"

    def test_principal_index_lists_sessions(self, store, principal, fake_clock):
        first, _ = _open_session(store, principal.id, fake_clock(), raw="a")
        fake_clock.advance(seconds=1)
        second, _ = _open_session(store, principal.id, fake_clock(), raw="b")
        ids = [s.id for s in store.list_principal_sessions(principal.id)]
        assert ids == [first.id, second.id]

    def test_assurance_never_decreases(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        store.raise_assurance(session.id, AssuranceLevel.MFA_VERIFIED)
        assert store.raise_assurance(session.id, AssuranceLevel.BASIC).assurance_level == (
            AssuranceLevel.MFA_VERIFIED
        )
        downgraded = store.get_session(session.id)
        downgraded.assurance_level = AssuranceLevel.BASIC
        assert store.put_session(downgraded).assurance_level == AssuranceLevel.MFA_VERIFIED

    def test_revocation_is_sticky_through_put(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        store.revoke_session(session.id)
        stale = store.get_session(session.id)
        stale.revoked = False
        assert store.put_session(stale).revoked is True

    def test_revoke_is_idempotent_and_keeps_first_reason(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        first = store.revoke_session(session.id, "logout")
        second = store.revoke_session(session.id, "other")
        assert second.revoke_reason == "logout"
        assert second.revoked_at == first.revoked_at

    def test_revoke_principal_sessions_skips_excepted(self, store, principal, fake_clock):
        keep, _ = _open_session(store, principal.id, fake_clock(), raw="a")
        drop, _ = _open_session(store, principal.id, fake_clock(), raw="b")
        revoked = store.revoke_principal_sessions(principal.id, except_session_id=keep.id)
        assert revoked == [drop.id]
        assert not store.get_session(keep.id).revoked

    def test_observers_only_join_active_sessions(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        assert store.add_observer(session.id, "app-a").observers == {"app-a"}
        store.revoke_session(session.id)
        assert store.add_observer(session.id, "app-b").observers == {"app-a"}

    def test_touch_slides_but_respects_absolute_lifetime(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock(), ttl_minutes=30)
        fake_clock.advance(minutes=20)
        touched = store.touch_session(session.id, 30, 45, now=fake_clock())
        assert touched.expires_at == session.created_at + timedelta(minutes=45)

    def test_closed_store_raises_unavailable(self, store):
        store.close()
        with pytest.raises(StoreUnavailable):
            store.get_session("anything")


class TestRefreshRedemption:
    def test_rotation_issues_successor(self, store, principal, fake_clock):
        session, record = _open_session(store, principal.id, fake_clock())
        result = _redeem(store, record.id, "next", now=fake_clock())
        assert result.outcome == RedeemOutcome.ROTATED
        assert result.record.rotation_counter == 1
        assert result.session.current_refresh_id == "next"
        assert store.get_refresh_record(record.id).used_at is not None

    def test_second_use_revokes_session(self, store, principal, fake_clock):
        session, record = _open_session(store, principal.id, fake_clock())
        _redeem(store, record.id, "next", now=fake_clock())
        result = _redeem(store, record.id, "other", now=fake_clock())
        assert result.outcome == RedeemOutcome.REUSED
        assert store.get_session(session.id).revoked
        assert store.get_session(session.id).revoke_reason == "refresh_reuse"

    def test_unknown_token(self, store):
        assert _redeem(store, "missing", "next", now=None).outcome == RedeemOutcome.UNKNOWN

    def test_retry_with_same_request_id_replays(self, store, principal, fake_clock):
        session, record = _open_session(store, principal.id, fake_clock())
        first = _redeem(store, record.id, "next", now=fake_clock(), request_id="req-1")
        again = _redeem(store, record.id, "next", now=fake_clock(), request_id="req-1")
        assert first.outcome == RedeemOutcome.ROTATED
        assert again.outcome == RedeemOutcome.REPLAYED
        assert again.record.id == "next"
        assert not store.get_session(session.id).revoked

    def test_replay_refused_once_successor_used(self, store, principal, fake_clock):
        session, record = _open_session(store, principal.id, fake_clock())
        _redeem(store, record.id, "next", now=fake_clock(), request_id="req-1")
        _redeem(store, "next", "third", now=fake_clock())
        again = _redeem(store, record.id, "next", now=fake_clock(), request_id="req-1")
        assert again.outcome == RedeemOutcome.REUSED
        assert store.get_session(session.id).revoked

    def test_revoked_session_refuses_refresh(self, store, principal, fake_clock):
        session, record = _open_session(store, principal.id, fake_clock())
        store.revoke_session(session.id)
        assert _redeem(store, record.id, "next", now=fake_clock()).outcome == RedeemOutcome.REVOKED

    def test_expired_session_refuses_refresh(self, store, principal, fake_clock):
        _, record = _open_session(store, principal.id, fake_clock(), ttl_minutes=5)
        later = fake_clock.advance(minutes=6)
        assert _redeem(store, record.id, "next", now=later).outcome == RedeemOutcome.EXPIRED

    def test_concurrent_redemption_has_exactly_one_winner(self, store, principal, fake_clock):
        session, record = _open_session(store, principal.id, fake_clock())
        workers = 16
        barrier = threading.Barrier(workers)
        outcomes = []
        outcomes_lock = threading.Lock()

        def attempt(index):
            barrier.wait()
            result = _redeem(store, record.id, f"next-{index}", now=fake_clock())
            with outcomes_lock:
                outcomes.append(result.outcome)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count(RedeemOutcome.ROTATED) == 1
        assert outcomes.count(RedeemOutcome.REUSED) == workers - 1
        assert store.get_session(session.id).revoked

    @pytest.mark.parametrize("round_", range(20))
    def test_revoke_wins_over_concurrent_refresh(self, store, principal, fake_clock, round_):
        session, record = _open_session(store, principal.id, fake_clock(), raw=f"race-{round_}")
        barrier = threading.Barrier(2)
        # Each store call and its log entry happen under the session's stripe
        stripe = store._session_locks(session.id)
        events = []

        def refresh_chain():
            barrier.wait()
            token_id = record.id
            for step in range(50):
                with stripe:
                    result = _redeem(store, token_id, f"{round_}-next-{step}", now=fake_clock())
                    events.append(("redeem", result.outcome))
                if result.outcome != RedeemOutcome.ROTATED:
                    return
                token_id = result.record.id

        def revoke():
            barrier.wait()
            with stripe:
                store.revoke_session(session.id, reason="logout")
                events.append(("revoke", None))

        threads = [threading.Thread(target=refresh_chain), threading.Thread(target=revoke)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        final = store.get_session(session.id)
        assert final.revoked
        assert final.revoke_reason == "logout"
        revoked_at = events.index(("revoke", None))
        assert ("redeem", RedeemOutcome.ROTATED) not in events[revoked_at:]
        follow_up = _redeem(store, final.current_refresh_id, "after-revoke", now=fake_clock())
        assert follow_up.outcome == RedeemOutcome.REVOKED


class TestChallenges:
    def _challenge(self, session, now, ttl=300):
        return MFAChallenge.new(session.id, session.principal_id, "link_identity", ttl, now=now)

    def test_pending_challenge_marks_session(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        challenge = store.create_challenge(self._challenge(session, fake_clock()))
        assert store.get_session(session.id).state == "pending_mfa"
        assert store.get_challenge(challenge.id).status == ChallengeStatus.PENDING

    def test_new_challenge_supersedes_previous(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        first = store.create_challenge(self._challenge(session, fake_clock()))
        store.create_challenge(self._challenge(session, fake_clock()))
        assert store.get_challenge(first.id).status == ChallengeStatus.EXPIRED

    def test_verified_challenge_raises_assurance(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        challenge = store.create_challenge(self._challenge(session, fake_clock()))
        _, updated, transitioned = store.resolve_challenge(challenge.id, ChallengeStatus.VERIFIED)
        assert transitioned
        assert updated.assurance_level == AssuranceLevel.MFA_VERIFIED
        assert updated.state == "mfa_verified"

    def test_failed_challenge_returns_to_basic(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        challenge = store.create_challenge(self._challenge(session, fake_clock()))
        _, updated, _ = store.resolve_challenge(challenge.id, ChallengeStatus.FAILED)
        assert updated.state == "basic"

    def test_resolution_happens_once(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        challenge = store.create_challenge(self._challenge(session, fake_clock()))
        store.resolve_challenge(challenge.id, ChallengeStatus.FAILED)
        resolved, updated, transitioned = store.resolve_challenge(
            challenge.id, ChallengeStatus.VERIFIED
        )
        assert not transitioned
        assert resolved.status == ChallengeStatus.FAILED
        assert updated.assurance_level == AssuranceLevel.BASIC

    def test_revoked_session_cannot_start_challenge(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        store.revoke_session(session.id)
        assert store.create_challenge(self._challenge(session, fake_clock())) is None

    def test_revoke_fails_pending_challenge(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        challenge = store.create_challenge(self._challenge(session, fake_clock()))
        store.revoke_session(session.id)
        assert store.get_challenge(challenge.id).status == ChallengeStatus.FAILED

    def test_lapsed_challenge_returns_session_to_basic(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        challenge = store.create_challenge(self._challenge(session, fake_clock(), ttl=300))
        fake_clock.advance(seconds=299)
        assert store.get_session(session.id).state == "pending_mfa"
        fake_clock.advance(seconds=1)
        assert store.get_session(session.id).state == "basic"
        lapsed = store.get_challenge(challenge.id)
        assert lapsed.status == ChallengeStatus.EXPIRED
        assert lapsed.completed_at == challenge.expires_at

    def test_cleanup_lapses_pending_challenge_at_ttl(self, store, principal, fake_clock):
        session, _ = _open_session(store, principal.id, fake_clock())
        challenge = store.create_challenge(self._challenge(session, fake_clock(), ttl=300))
        store.cleanup_expired(now=fake_clock.advance(seconds=360))
        assert store.sessions[session.id].pending_challenge_id is None
        assert store.sessions[session.id].state == "basic"
        assert store.challenges[challenge.id].status == ChallengeStatus.EXPIRED

    def test_verify_challenge_spends_counter(self, store, principal, fake_clock):
        store.save_mfa_secret(principal.id, "JBSWY3DPEHPK3PXP")
        session, _ = _open_session(store, principal.id, fake_clock())
        challenge = store.create_challenge(self._challenge(session, fake_clock()))
        resolved, updated, transitioned = store.verify_challenge(challenge.id, 100)
        assert transitioned
        assert resolved.status == ChallengeStatus.VERIFIED
        assert updated.state == "mfa_verified"
        assert not store.consume_totp_counter(principal.id, 100)

    def test_verify_challenge_with_spent_counter_fails(self, store, principal, fake_clock):
        store.save_mfa_secret(principal.id, "JBSWY3DPEHPK3PXP")
        store.consume_totp_counter(principal.id, 100)
        session, _ = _open_session(store, principal.id, fake_clock())
        challenge = store.create_challenge(self._challenge(session, fake_clock()))
        resolved, updated, transitioned = store.verify_challenge(challenge.id, 100)
        assert transitioned
        assert resolved.status == ChallengeStatus.FAILED
        assert updated.state == "basic"

    def test_verify_resolved_challenge_spends_nothing(self, store, principal, fake_clock):
        store.save_mfa_secret(principal.id, "JBSWY3DPEHPK3PXP")
        session, _ = _open_session(store, principal.id, fake_clock())
        challenge = store.create_challenge(self._challenge(session, fake_clock()))
        store.resolve_challenge(challenge.id, ChallengeStatus.FAILED)
        _, _, transitioned = store.verify_challenge(challenge.id, 100)
        assert not transitioned
        assert store.consume_totp_counter(principal.id, 100)

    def test_concurrent_verification_has_one_winner(self, store, principal, fake_clock):
        store.save_mfa_secret(principal.id, "JBSWY3DPEHPK3PXP")
        session, _ = _open_session(store, principal.id, fake_clock())
        challenge = store.create_challenge(self._challenge(session, fake_clock()))
        workers = 8
        barrier = threading.Barrier(workers)
        results = []
        results_lock = threading.Lock()

        def attempt():
            barrier.wait()
            resolved, _, transitioned = store.verify_challenge(challenge.id, 100)
            with results_lock:
                results.append((transitioned, resolved.status))

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count((True, ChallengeStatus.VERIFIED)) == 1
        assert results.count((False, ChallengeStatus.VERIFIED)) == workers - 1
        assert store.get_session(session.id).state == "mfa_verified"


class TestMFASecrets:
    def test_secret_encrypted_at_rest(self, store, principal):
        store.save_mfa_secret(principal.id, "JBSWY3DPEHPK3PXP")
        assert store.mfa_enrollments[principal.id].secret != "JBSWY3DPEHPK3PXP"
        assert store.get_mfa_enrollment(principal.id).secret == "JBSWY3DPEHPK3PXP"

    def test_cannot_replace_enabled_secret(self, store, principal):
        store.save_mfa_secret(principal.id, "JBSWY3DPEHPK3PXP")
        store.enable_mfa(principal.id)
        assert "totp" in store.get_principal(principal.id).verified_factors
        with pytest.raises(ConstraintViolation):
            store.save_mfa_secret(principal.id, "KRSXG5CTMVRXEZLU")

    def test_totp_counter_strictly_increases(self, store, principal):
        store.save_mfa_secret(principal.id, "JBSWY3DPEHPK3PXP")
        assert store.consume_totp_counter(principal.id, 100)
        assert not store.consume_totp_counter(principal.id, 100)
        assert not store.consume_totp_counter(principal.id, 99)
        assert store.consume_totp_counter(principal.id, 101)


class TestCleanup:
    def test_cleanup_removes_expired_sessions_and_records(self, store, principal, fake_clock):
        expired, _ = _open_session(store, principal.id, fake_clock(), ttl_minutes=5, raw="a")
        live, _ = _open_session(store, principal.id, fake_clock(), ttl_minutes=120, raw="b")
        removed = store.cleanup_expired(now=fake_clock.advance(minutes=10))
        assert removed["sessions"] == 1
        assert removed["refresh_tokens"] == 1
        assert store.get_session(expired.id) is None
        assert [s.id for s in store.list_principal_sessions(principal.id)] == [live.id]
