"""
ceremony.py
===========
The relying-party ceremony manager: issues challenges, verifies client
responses and commits credential state.

This is the server side of the passkey protocol. It:
- Issues random challenges bound to one user and one operation kind
- Creates pending users on registration and reclaims abandoned ones
- Verifies registration (attestation) and login (assertion) responses via a
  pluggable verifier
- Enforces sign counter monotonicity and single use of every challenge
- Stores ONLY public keys and metadata, never private keys

Security properties:
- Replay attack resistance: a challenge is consumed by its successful completion
- Clone detection: sign counter must strictly increase
- Phishing resistance: origin and RP ID are part of every expectation
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from config import Settings
from credential_store import CredentialEntry, CredentialStore, UserRecord
from crypto_utils import base64url_encode, generate_challenge
from errors import (
    ChallengeMismatch,
    CeremonyError,
    CredentialInUse,
    CredentialNotFound,
    InvalidInput,
    UserNotFound,
    UserNotRegistered,
    UsernameTaken,
    VerificationFailed,
)
from expiry import ExpiryScheduler
from verification import ExpectedAssertion, ExpectedRegistration

logger = logging.getLogger(__name__)

REGISTER = "register"
LOGIN = "login"

PUB_KEY_CRED_PARAMS = [
    {"type": "public-key", "alg": -7},    # ES256
    {"type": "public-key", "alg": -8},    # EdDSA
    {"type": "public-key", "alg": -257},  # RS256
]
LOGIN_TRANSPORTS = ["internal", "hybrid"]


@dataclass
class CeremonyResult:
    ok: bool
    message: str
    redirect: Optional[str] = None
    session_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": self.ok, "message": self.message}
        if self.redirect:
            body["redirect"] = self.redirect
        return body


def normalize_username(username: Any) -> str:
    """Trim and lower-case; reject anything that is not a non-empty string."""
    if not isinstance(username, str) or not username.strip():
        raise InvalidInput("username required")
    return username.strip().lower()


def _require_payload(response: Any) -> Mapping[str, Any]:
    if not isinstance(response, Mapping) or not isinstance(response.get("response"), Mapping):
        raise InvalidInput("authenticator response required")
    return response


def _credential_id_of(response: Mapping[str, Any]) -> str:
    cred_id = response.get("rawId") or response.get("id")
    if not isinstance(cred_id, str) or not cred_id:
        raise InvalidInput("credential id required")
    return cred_id


class CeremonyManager:
    """Registration and login state machine over a CredentialStore."""

    def __init__(
        self,
        store: CredentialStore,
        verifier,
        settings: Settings,
        session_issuer,
        scheduler: Optional[ExpiryScheduler] = None,
    ) -> None:
        """
        Wire collaborators and resume expiry for pending users.

        Pending records found on disk belong to ceremonies interrupted by a
        restart; they get a fresh expiry window instead of living forever.
        """
        self._store = store
        self._verifier = verifier
        self._settings = settings
        self._sessions = session_issuer
        self._expiry = scheduler or ExpiryScheduler(settings.registration_timeout, self.expire_registration)

        for record in store.records():
            if record.pending:
                self._expiry.schedule(record.username, record.id)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def start_registration(self, username: Any) -> Dict[str, Any]:
        """
        Create a pending user bound to a fresh registration challenge.

        Step-by-step:
        1. Normalize the username; reject it if any record already exists
        2. Generate a challenge and persist a pending UserRecord holding it
        3. Arm the expiry timer for the new record
        4. Return registration options for navigator.credentials.create()
        """
        username = normalize_username(username)
        with self._store.locked(username):
            if self._store.exists(username):
                raise UsernameTaken(f'Username "{username}" is already registered.')
            challenge = generate_challenge(self._settings.challenge_size)
            record = UserRecord.new_pending(username, challenge, REGISTER)
            self._store.put(record)

        self._expiry.schedule(username, record.id)
        logger.info("Registration started for %r", username)
        return self._registration_options(record)

    def complete_registration(self, username: Any, response: Any) -> CeremonyResult:
        """
        Verify the attestation and commit the first credential.

        Registration is all-or-nothing: if anything fails after the pending
        record was found, that record is deleted again.
        """
        username = normalize_username(username)
        response = _require_payload(response)
        record_id: Optional[str] = None
        try:
            with self._store.locked(username):
                record = self._store.get(username)
                if record is None:
                    raise UserNotFound("user not found")
                record_id = record.id
                expected = self._expected_registration(record)

            attestation = self._verifier.verify_attestation(response, expected)

            with self._store.locked(username):
                record = self._store.get(username)
                if (
                    record is None
                    or record.id != record_id
                    or not record.pending
                    or record.current_challenge != expected.challenge
                ):
                    raise ChallengeMismatch("registration ceremony is no longer live")
                owner = self._store.find_credential_owner(attestation.credential_id)
                if owner is not None:
                    raise CredentialInUse("credential is already registered")

                record.credentials.append(
                    CredentialEntry(
                        cred_id=attestation.credential_id,
                        public_key=attestation.public_key,
                        counter=attestation.counter,
                        counter_supported=attestation.counter > 0,
                    )
                )
                record.pending = False
                record.current_challenge = None
                record.challenge_kind = None
                self._store.put(record)
        except CeremonyError as exc:
            logger.warning("Registration failed for %r: %s", username, exc.message)
            if record_id is not None:
                self._discard_pending(username, record_id)
            raise

        logger.info("Registration completed for %r", username)
        return CeremonyResult(ok=True, message="Registration successful.")

    def _expected_registration(self, record: UserRecord) -> ExpectedRegistration:
        if not record.pending or record.current_challenge is None or record.challenge_kind != REGISTER:
            raise ChallengeMismatch("no registration ceremony in progress")
        return ExpectedRegistration(
            challenge=record.current_challenge,
            origin=self._settings.origin,
            rp_id=self._settings.rp_id,
        )

    def _discard_pending(self, username: str, record_id: str) -> None:
        with self._store.locked(username):
            record = self._store.get(username)
            if record is not None and record.id == record_id and record.pending:
                self._store.delete(username)
                logger.info("Pending user %r removed after failed registration", username)

    def _registration_options(self, record: UserRecord) -> Dict[str, Any]:
        return {
            "challenge": record.current_challenge,
            "rp": {"id": self._settings.rp_id, "name": self._settings.rp_name},
            "user": {
                "id": base64url_encode(record.id.encode("utf-8")),
                "name": record.username,
                "displayName": record.username,
            },
            "pubKeyCredParams": PUB_KEY_CRED_PARAMS,
            "timeout": self._settings.ceremony_timeout_ms,
            "attestation": "none",
            "authenticatorSelection": {"userVerification": "preferred"},
        }

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------
    def start_login(self, username: Any) -> Dict[str, Any]:
        username = normalize_username(username)
        with self._store.locked(username):
            record = self._store.get(username)
            if record is None or not record.credentials:
                raise UserNotRegistered("user not registered")
            record.current_challenge = generate_challenge(self._settings.challenge_size)
            record.challenge_kind = LOGIN
            self._store.put(record)

        return {
            "challenge": record.current_challenge,
            "rp": {"id": self._settings.rp_id, "name": self._settings.rp_name},
            "rpId": self._settings.rp_id,
            "allowCredentials": [
                {"type": "public-key", "id": c.cred_id, "transports": LOGIN_TRANSPORTS}
                for c in record.credentials
            ],
            "timeout": self._settings.ceremony_timeout_ms,
            "userVerification": "preferred",
        }

    def complete_login(self, username: Any, response: Any) -> CeremonyResult:
        """
        Verify an assertion, advance the counter and bind a session.

        Step-by-step:
        1. Under the user's lock, find the credential named by rawId and
           snapshot challenge, public key and counter
        2. Verify outside the lock
        3. Resolve the new counter (policy for a missing one, must increase)
        4. Under the lock again, re-check that challenge and counter are still
           the ones we verified against, then commit counter and login stats
        5. Bind the session only after the commit is saved
        """
        username = normalize_username(username)
        response = _require_payload(response)
        cred_id = _credential_id_of(response)

        with self._store.locked(username):
            record = self._store.get(username)
            if record is None:
                raise UserNotFound("user not found")
            entry = record.find_credential(cred_id)
            if entry is None:
                raise CredentialNotFound("credential not found for this user")
            if record.current_challenge is None or record.challenge_kind != LOGIN:
                raise ChallengeMismatch("no login ceremony in progress")
            expected = ExpectedAssertion(
                challenge=record.current_challenge,
                origin=self._settings.origin,
                rp_id=self._settings.rp_id,
                credential_id=entry.cred_id,
                public_key=entry.public_key,
                previous_counter=entry.counter,
            )

        assertion = self._verifier.verify_assertion(response, expected)
        new_counter = self._next_counter(username, entry, assertion.counter)

        with self._store.locked(username):
            record = self._store.get(username)
            if record is None:
                raise UserNotFound("user not found")
            if record.current_challenge != expected.challenge or record.challenge_kind != LOGIN:
                raise ChallengeMismatch("login challenge already used or replaced")
            entry = record.find_credential(cred_id)
            if entry is None:
                raise CredentialNotFound("credential not found for this user")
            if entry.counter != expected.previous_counter:
                raise VerificationFailed("signature counter changed during login")

            entry.counter = new_counter
            entry.counter_supported = entry.counter_supported or bool(assertion.counter)
            record.last_login = datetime.now(timezone.utc)
            record.login_count += 1
            record.current_challenge = None
            record.challenge_kind = None
            self._store.put(record)

        token = self._sessions.bind_session(username)
        logger.info("Login succeeded for %r (login #%d)", username, record.login_count)
        return CeremonyResult(
            ok=True,
            message="Login successful.",
            redirect=self._settings.login_redirect,
            session_token=token,
        )

    def _next_counter(self, username: str, entry: CredentialEntry, reported: Optional[int]) -> int:
        """
        Resolve the counter to store after a verified assertion.

        A credential that has never reported a non-zero counter and reports 0
        (or nothing) keeps no counter. The lenient fallback then bumps the
        stored value, and a later reported 0 is never compared against it.
        Any non-zero report must exceed the stored value.
        """
        if reported is None or (reported == 0 and not entry.counter_supported):
            if self._settings.counter_policy == "strict":
                raise VerificationFailed("authenticator did not report a signature counter")
            logger.warning("No signature counter from %r's authenticator; incrementing stored value", username)
            return entry.counter + 1
        if reported <= entry.counter:
            logger.warning("Counter regression for %r: %d <= %d", username, reported, entry.counter)
            raise VerificationFailed("signature counter did not advance; possible cloned authenticator")
        return reported

    # ------------------------------------------------------------------
    # Queries and housekeeping
    # ------------------------------------------------------------------
    def is_available(self, username: Any) -> bool:
        return not self._store.exists(normalize_username(username))

    def describe(self, username: str) -> Optional[UserRecord]:
        return self._store.get(username)

    def expire_registration(self, username: str, record_id: str) -> bool:
        """Delete the record only if it is still the same pending registration."""
        with self._store.locked(username):
            record = self._store.get(username)
            if record is None or record.id != record_id or not record.pending:
                return False
            self._store.delete(username)
        logger.info("Pending user %r removed: registration timed out", username)
        return True

    def close(self) -> None:
        self._expiry.shutdown()
