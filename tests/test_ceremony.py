"""
Tests for the ceremony manager.

Includes:
- Unit tests for each operation's error paths
- Integration-style register -> login round-trips with the software authenticator
"""

import dataclasses
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

import credential_store
from authenticator import WebAuthnAuthenticator
from ceremony import CeremonyManager, normalize_username
from errors import (
    ChallengeMismatch,
    CredentialInUse,
    CredentialNotFound,
    InvalidInput,
    PersistenceFailed,
    UserNotFound,
    UserNotRegistered,
    UsernameTaken,
    VerificationFailed,
)
from verification import AttestationResult, Fido2Verifier, SignedChallengeVerifier

ORIGIN = "http://localhost:3000"


class TestNormalizeUsername:
    def test_trims_and_lowercases(self):
        assert normalize_username("  Alice ") == "alice"

    @pytest.mark.parametrize("value", [None, "", "   ", 42])
    def test_rejects_invalid(self, value):
        with pytest.raises(InvalidInput):
            normalize_username(value)


class TestRegistration:
    def test_alice_registers(self, manager, store, authenticator):
        options = manager.start_registration("alice")
        assert options["challenge"]
        assert options["rp"]["id"] == "localhost"
        assert options["user"]["name"] == "alice"

        result = manager.complete_registration("alice", authenticator.create_credential(options))

        assert result.ok is True
        assert manager.is_available("alice") is False
        record = store.get("alice")
        assert record.pending is False
        assert len(record.credentials) == 1
        assert record.credentials[0].counter == 0
        assert record.current_challenge is None

    def test_second_start_conflicts_while_pending(self, manager):
        manager.start_registration("alice")
        with pytest.raises(UsernameTaken):
            manager.start_registration("ALICE ")

    def test_start_on_registered_user_conflicts(self, manager, register):
        register("alice")
        with pytest.raises(UsernameTaken):
            manager.start_registration("alice")

    def test_pending_user_is_unavailable(self, manager):
        assert manager.is_available("alice") is True
        manager.start_registration("alice")
        assert manager.is_available("alice") is False

    def test_challenge_mismatch_leaves_no_residue(self, manager, store, authenticator):
        options = manager.start_registration("alice")
        forged = dict(options, challenge="not-the-live-challenge")

        with pytest.raises(ChallengeMismatch):
            manager.complete_registration("alice", authenticator.create_credential(forged))

        assert store.get("alice") is None
        assert manager.is_available("alice") is True

    def test_failed_verification_deletes_pending_user(self, manager, store, authenticator):
        options = manager.start_registration("alice")
        response = authenticator.create_credential(options)
        response["response"]["signature"] = response["response"]["signature"][::-1]

        with pytest.raises(VerificationFailed):
            manager.complete_registration("alice", response)
        assert store.get("alice") is None

    def test_complete_without_start(self, manager, authenticator):
        options = {"challenge": "x", "rp": {"id": "localhost"}, "user": {"name": "ghost"}}
        with pytest.raises(UserNotFound):
            manager.complete_registration("ghost", authenticator.create_credential(options))

    def test_malformed_payload_keeps_pending_user(self, manager, store):
        manager.start_registration("alice")
        with pytest.raises(InvalidInput):
            manager.complete_registration("alice", {"nope": True})
        assert store.get("alice").pending is True

    def test_complete_on_registered_user_is_rejected(self, manager, store, authenticator, register):
        register("alice")
        options = {"challenge": "x", "rp": {"id": "localhost"}, "user": {"name": "alice"}}
        with pytest.raises(ChallengeMismatch):
            manager.complete_registration("alice", authenticator.create_credential(options))
        assert len(store.get("alice").credentials) == 1

    def test_credential_id_must_be_globally_unique(self, store, settings, sessions):
        class DuplicateIdVerifier(SignedChallengeVerifier):
            def verify_attestation(self, response, expected):
                return AttestationResult(credential_id="same-id", public_key="pk", counter=0)

        dup_manager = CeremonyManager(store, DuplicateIdVerifier(), settings, sessions)
        try:
            dup_manager.start_registration("alice")
            dup_manager.complete_registration("alice", {"response": {}})
            dup_manager.start_registration("bob")
            with pytest.raises(CredentialInUse):
                dup_manager.complete_registration("bob", {"response": {}})
            assert store.get("bob") is None
        finally:
            dup_manager.close()

    def test_persistence_failure_surfaces_and_leaves_nothing(self, manager, store):
        with patch.object(credential_store, "save_users", side_effect=OSError("read-only")):
            with pytest.raises(PersistenceFailed):
                manager.start_registration("alice")
        assert store.get("alice") is None


class TestLogin:
    def test_unregistered_user(self, manager, store):
        with pytest.raises(UserNotRegistered):
            manager.start_login("bob")
        assert store.get("bob") is None

    def test_pending_user_cannot_log_in(self, manager):
        manager.start_registration("alice")
        with pytest.raises(UserNotRegistered):
            manager.start_login("alice")

    def test_login_options_list_credentials(self, manager, register):
        cred_id = register("alice")
        options = manager.start_login("alice")
        assert options["rpId"] == "localhost"
        assert [c["id"] for c in options["allowCredentials"]] == [cred_id]

    def test_successful_login(self, manager, store, sessions, authenticator, register):
        register("alice")
        options = manager.start_login("alice")

        result = manager.complete_login("alice", authenticator.get_assertion(options))

        assert result.ok is True
        assert result.redirect == "/dashboard.html"
        assert sessions.username_for(result.session_token) == "alice"
        record = store.get("alice")
        assert record.login_count == 1
        assert record.last_login is not None
        assert record.credentials[0].counter == 1

    def test_counter_is_monotonic_across_logins(self, manager, store, authenticator, register):
        register("alice")
        counters = []
        for _ in range(3):
            options = manager.start_login("alice")
            manager.complete_login("alice", authenticator.get_assertion(options))
            counters.append(store.get("alice").credentials[0].counter)
        assert counters == [1, 2, 3]

    def test_replayed_response_is_rejected(self, manager, store, authenticator, register):
        register("alice")
        assertion = authenticator.get_assertion(manager.start_login("alice"))
        manager.complete_login("alice", assertion)

        with pytest.raises(ChallengeMismatch):
            manager.complete_login("alice", assertion)
        assert store.get("alice").login_count == 1

    def test_counter_regression_fails_without_mutation(self, manager, store, sessions, authenticator, register):
        cred_id = register("alice")
        manager.complete_login("alice", authenticator.get_assertion(manager.start_login("alice")))
        before = store.get("alice")

        authenticator.set_counter(cred_id, 0)  # next signature carries counter 1 again
        with pytest.raises(VerificationFailed):
            manager.complete_login("alice", authenticator.get_assertion(manager.start_login("alice")))

        after = store.get("alice")
        assert after.login_count == before.login_count
        assert after.last_login == before.last_login
        assert after.credentials[0].counter == 1
        assert len(sessions) == 1

    def test_unknown_credential(self, manager, authenticator, register):
        register("alice")
        assertion = authenticator.get_assertion(manager.start_login("alice"))
        assertion["rawId"] = assertion["id"] = "unknown"
        with pytest.raises(CredentialNotFound):
            manager.complete_login("alice", assertion)

    def test_unknown_user(self, manager):
        with pytest.raises(UserNotFound):
            manager.complete_login("nobody", {"rawId": "x", "response": {}})

    def test_missing_counter_lenient_increments(self, manager, store, authenticator, register):
        register("alice")
        authenticator.report_counter = False
        manager.complete_login("alice", authenticator.get_assertion(manager.start_login("alice")))
        assert store.get("alice").credentials[0].counter == 1

    def test_missing_counter_strict_fails(self, store, settings, sessions, authenticator):
        strict = CeremonyManager(
            store, SignedChallengeVerifier(), dataclasses.replace(settings, counter_policy="strict"), sessions
        )
        try:
            options = strict.start_registration("alice")
            strict.complete_registration("alice", authenticator.create_credential(options))
            authenticator.report_counter = False
            with pytest.raises(VerificationFailed):
                strict.complete_login("alice", authenticator.get_assertion(strict.start_login("alice")))
            assert store.get("alice").login_count == 0
        finally:
            strict.close()

    def test_login_challenge_cannot_complete_registration(self, manager, store, authenticator, register):
        register("alice")
        options = manager.start_login("alice")
        reg_options = {"challenge": options["challenge"], "rp": {"id": "localhost"}, "user": {"name": "alice"}}
        with pytest.raises(ChallengeMismatch):
            manager.complete_registration("alice", authenticator.create_credential(reg_options))

    def test_concurrent_logins_with_same_response_commit_once(self, manager, store, sessions, authenticator, register):
        register("alice")
        assertion = authenticator.get_assertion(manager.start_login("alice"))

        def attempt():
            try:
                manager.complete_login("alice", assertion)
                return "ok"
            except (ChallengeMismatch, VerificationFailed):
                return "rejected"

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = sorted(pool.map(lambda _: attempt(), range(2)))

        assert outcomes == ["ok", "rejected"]
        record = store.get("alice")
        assert record.login_count == 1
        assert record.credentials[0].counter == 1
        assert len(sessions) == 1


class TestFido2Ceremonies:
    """Full ceremonies through python-fido2 with standard WebAuthn responses."""

    @pytest.fixture
    def fido2_manager(self, store, settings, sessions):
        mgr = CeremonyManager(store, Fido2Verifier(), dataclasses.replace(settings, verifier="fido2"), sessions)
        yield mgr
        mgr.close()

    def _register(self, mgr, authenticator, username="alice"):
        options = mgr.start_registration(username)
        mgr.complete_registration(username, authenticator.create_credential(options))

    def test_register_and_login(self, fido2_manager, store, sessions):
        authenticator = WebAuthnAuthenticator(ORIGIN)
        self._register(fido2_manager, authenticator)

        result = fido2_manager.complete_login("alice", authenticator.get_assertion(fido2_manager.start_login("alice")))

        assert sessions.username_for(result.session_token) == "alice"
        entry = store.get("alice").credentials[0]
        assert entry.counter == 1
        assert entry.counter_supported is True

    def test_counterless_passkey_logs_in_repeatedly(self, fido2_manager, store):
        authenticator = WebAuthnAuthenticator(ORIGIN, counter_step=0)
        self._register(fido2_manager, authenticator)

        for _ in range(3):
            options = fido2_manager.start_login("alice")
            fido2_manager.complete_login("alice", authenticator.get_assertion(options))

        record = store.get("alice")
        assert record.login_count == 3
        assert record.credentials[0].counter_supported is False

    def test_counter_regression_after_counting(self, fido2_manager, store):
        authenticator = WebAuthnAuthenticator(ORIGIN)
        self._register(fido2_manager, authenticator)
        fido2_manager.complete_login("alice", authenticator.get_assertion(fido2_manager.start_login("alice")))

        authenticator.counter_step = 0  # keeps reporting 1
        with pytest.raises(VerificationFailed):
            fido2_manager.complete_login("alice", authenticator.get_assertion(fido2_manager.start_login("alice")))
        assert store.get("alice").login_count == 1

    def test_counterless_passkey_rejected_by_strict_policy(self, store, settings, sessions):
        strict = CeremonyManager(
            store, Fido2Verifier(), dataclasses.replace(settings, verifier="fido2", counter_policy="strict"), sessions
        )
        try:
            authenticator = WebAuthnAuthenticator(ORIGIN, counter_step=0)
            self._register(strict, authenticator)
            with pytest.raises(VerificationFailed):
                strict.complete_login("alice", authenticator.get_assertion(strict.start_login("alice")))
        finally:
            strict.close()


class TestCounterBounds:
    def test_oversized_counter_fails_registration_and_frees_username(self, manager, store, authenticator):
        options = manager.start_registration("alice")
        response = authenticator.create_credential(options)
        response["response"]["signCount"] = 2**40

        with pytest.raises(VerificationFailed):
            manager.complete_registration("alice", response)
        assert store.get("alice") is None

    def test_oversized_counter_fails_login_without_mutation(self, manager, store, authenticator, register):
        register("alice")
        assertion = authenticator.get_assertion(manager.start_login("alice"))
        assertion["response"]["signCount"] = 2**32

        with pytest.raises(VerificationFailed):
            manager.complete_login("alice", assertion)
        assert store.get("alice").login_count == 0


def test_username_locks_are_released(manager, store, authenticator, register):
    register("alice")
    manager.complete_login("alice", authenticator.get_assertion(manager.start_login("alice")))
    with pytest.raises(UserNotFound):
        manager.complete_login("nobody", {"rawId": "x", "response": {}})
    with pytest.raises(UserNotRegistered):
        manager.start_login("mallory")

    assert store._key_locks == {}
