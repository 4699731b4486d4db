"""
verification.py
===============
Verifiers that check a client's cryptographic proof for a ceremony.

The ceremony manager only knows the two-method contract:
- verify_attestation(response, ExpectedRegistration) -> AttestationResult
- verify_assertion(response, ExpectedAssertion) -> AssertionResult

Both fail closed. A response whose clientDataJSON carries a different
challenge raises ChallengeMismatch; any other rejection raises
VerificationFailed with a generic client-facing detail. Library internals are
only logged at debug level.

Two implementations:
- SignedChallengeVerifier: the simplified Ed25519 proof-of-possession scheme
  spoken by the software authenticator (authenticator.py)
- Fido2Verifier: real WebAuthn attestation/assertion checks via python-fido2
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519
from fido2 import cbor, features
from fido2.cose import CoseKey
from fido2.server import Fido2Server
from fido2.webauthn import AttestedCredentialData, AuthenticatorData, PublicKeyCredentialRpEntity

from crypto_utils import base64url_decode, base64url_encode, sha256
from errors import ChallengeMismatch, VerificationFailed

logger = logging.getLogger(__name__)

CREATE_TYPE = "webauthn.create"
GET_TYPE = "webauthn.get"
GENERIC_DETAIL = "authenticator response could not be verified"
MAX_COUNTER = 0xFFFFFFFF  # signCount is a 32-bit unsigned field

# Clients post PublicKeyCredential JSON: binary fields are base64url strings.
try:
    features.webauthn_json_mapping.enabled = True
except ValueError:
    # Already configured by the embedding application; it must be on.
    if not features.webauthn_json_mapping.enabled:
        raise


@dataclass(frozen=True)
class ExpectedRegistration:
    challenge: str
    origin: str
    rp_id: str


@dataclass(frozen=True)
class ExpectedAssertion:
    challenge: str
    origin: str
    rp_id: str
    credential_id: str
    public_key: str
    previous_counter: int


@dataclass(frozen=True)
class AttestationResult:
    credential_id: str
    public_key: str
    counter: int


@dataclass(frozen=True)
class AssertionResult:
    """
    counter is None when the authenticator does not report one. A reported 0
    is passed through; whether it means "no counter" depends on the stored
    credential, so the ceremony manager decides.
    """

    counter: Optional[int]


def parse_client_data(response: Mapping[str, Any], ceremony_type: str, challenge: str, origin: str) -> bytes:
    """
    Decode clientDataJSON and check type, challenge and origin.

    Returns the raw clientDataJSON bytes (signatures are computed over their hash).
    """
    try:
        raw = base64url_decode(response["response"]["clientDataJSON"])
        client_data = json.loads(raw)
        if not isinstance(client_data, dict):
            raise ValueError("clientDataJSON is not an object")
    except (KeyError, TypeError, ValueError) as exc:
        logger.debug("Unreadable clientDataJSON: %s", exc)
        raise VerificationFailed("malformed client data", detail=GENERIC_DETAIL) from exc

    if client_data.get("challenge") != challenge:
        raise ChallengeMismatch("response does not answer the live challenge")
    if client_data.get("type") != ceremony_type:
        raise VerificationFailed("unexpected client data type", detail=GENERIC_DETAIL)
    if client_data.get("origin") != origin:
        raise VerificationFailed("unexpected origin", detail=GENERIC_DETAIL)
    return raw


def signed_message(rp_id: str, client_data_json: bytes, counter: Optional[int]) -> bytes:
    """rp_id || SHA256(clientDataJSON) [|| counter(4 bytes big-endian)]."""
    message = rp_id.encode("utf-8") + sha256(client_data_json)
    if counter is not None:
        message += int(counter).to_bytes(4, "big")
    return message


def _read_counter(body: Mapping[str, Any]) -> Optional[int]:
    counter = body.get("signCount")
    if counter is None:
        return None
    if not isinstance(counter, int) or isinstance(counter, bool) or not 0 <= counter <= MAX_COUNTER:
        raise VerificationFailed("invalid signature counter", detail=GENERIC_DETAIL)
    return counter


class SignedChallengeVerifier:
    """
    Verifier for the simplified passkey protocol.

    The authenticator signs: rp_id || SHA256(clientDataJSON) || signCount.
    Registration carries the raw Ed25519 public key; the signature proves the
    authenticator holds the matching private key without sending it.
    """

    def verify_attestation(self, response: Mapping[str, Any], expected: ExpectedRegistration) -> AttestationResult:
        """
        Step-by-step:
        1. Check clientDataJSON (challenge, type, origin)
        2. Decode the public key and the signature
        3. Verify the signature over the expected message
        4. Return credential id, public key and initial counter (0 if omitted)
        """
        client_data_json = parse_client_data(response, CREATE_TYPE, expected.challenge, expected.origin)
        body = response["response"]
        counter = _read_counter(body)
        try:
            credential_id = response["rawId"]
            if not isinstance(credential_id, str) or not credential_id:
                raise ValueError("credential id required")
            public_key_b64u = body["publicKey"]
            public_key = ed25519.Ed25519PublicKey.from_public_bytes(base64url_decode(public_key_b64u))
            public_key.verify(
                base64url_decode(body["signature"]),
                signed_message(expected.rp_id, client_data_json, counter),
            )
        except (KeyError, TypeError, ValueError, InvalidSignature) as exc:
            logger.debug("Attestation rejected: %r", exc)
            raise VerificationFailed("registration proof rejected", detail=GENERIC_DETAIL) from exc

        return AttestationResult(credential_id=credential_id, public_key=public_key_b64u, counter=counter or 0)

    def verify_assertion(self, response: Mapping[str, Any], expected: ExpectedAssertion) -> AssertionResult:
        client_data_json = parse_client_data(response, GET_TYPE, expected.challenge, expected.origin)
        body = response["response"]
        counter = _read_counter(body)
        try:
            public_key = ed25519.Ed25519PublicKey.from_public_bytes(base64url_decode(expected.public_key))
            public_key.verify(
                base64url_decode(body["signature"]),
                signed_message(expected.rp_id, client_data_json, counter),
            )
        except (KeyError, TypeError, ValueError, InvalidSignature) as exc:
            logger.debug("Assertion rejected: %r", exc)
            raise VerificationFailed("login proof rejected", detail=GENERIC_DETAIL) from exc
        return AssertionResult(counter=counter)


class Fido2Verifier:
    """
    WebAuthn verifier backed by python-fido2's Fido2Server.

    Public keys are stored as base64url(CBOR(COSE key)). A server is built per
    call because origin and RP ID come with each expectation.
    """

    def __init__(self, rp_name: str = "Passkey Demo") -> None:
        self.rp_name = rp_name

    def _server(self, rp_id: str, origin: str) -> Fido2Server:
        rp = PublicKeyCredentialRpEntity(name=self.rp_name, id=rp_id)
        return Fido2Server(rp, verify_origin=lambda candidate: candidate == origin)

    @staticmethod
    def _state(challenge: str) -> Dict[str, Any]:
        return {"challenge": challenge, "user_verification": None}

    def verify_attestation(self, response: Mapping[str, Any], expected: ExpectedRegistration) -> AttestationResult:
        parse_client_data(response, CREATE_TYPE, expected.challenge, expected.origin)
        try:
            server = self._server(expected.rp_id, expected.origin)
            auth_data = server.register_complete(self._state(expected.challenge), dict(response))
            credential_data = auth_data.credential_data
            return AttestationResult(
                credential_id=base64url_encode(credential_data.credential_id),
                public_key=base64url_encode(cbor.encode(credential_data.public_key)),
                counter=auth_data.counter,
            )
        except Exception as exc:
            logger.debug("fido2 attestation rejected: %r", exc)
            raise VerificationFailed("registration proof rejected", detail=GENERIC_DETAIL) from exc

    def verify_assertion(self, response: Mapping[str, Any], expected: ExpectedAssertion) -> AssertionResult:
        """
        Step-by-step:
        1. Check clientDataJSON (challenge, type, origin)
        2. Rebuild the stored credential from its CBOR COSE key
        3. Let Fido2Server verify RP ID hash, flags and signature
        4. Return the counter from authenticatorData as reported (0 included)
        """
        parse_client_data(response, GET_TYPE, expected.challenge, expected.origin)
        try:
            public_key = CoseKey.parse(cbor.decode(base64url_decode(expected.public_key)))
            credential = AttestedCredentialData.create(
                bytes(16), base64url_decode(expected.credential_id), public_key
            )
            server = self._server(expected.rp_id, expected.origin)
            server.authenticate_complete(self._state(expected.challenge), [credential], dict(response))
            auth_data = AuthenticatorData(base64url_decode(response["response"]["authenticatorData"]))
        except Exception as exc:
            logger.debug("fido2 assertion rejected: %r", exc)
            raise VerificationFailed("login proof rejected", detail=GENERIC_DETAIL) from exc
        return AssertionResult(counter=auth_data.counter)


def build_verifier(name: str, rp_name: str = "Passkey Demo"):
    """Return the verifier selected by the "verifier" setting."""
    if name == "fido2":
        return Fido2Verifier(rp_name)
    if name == "signed":
        return SignedChallengeVerifier()
    raise ValueError(f"unknown verifier {name!r}")
