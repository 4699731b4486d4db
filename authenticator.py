"""
authenticator.py
===============
A minimal software authenticator that creates passkeys and signs challenges.

This simulates the client side of a ceremony (browser + security key or
platform authenticator) for the demo and the tests. Authenticator speaks the
protocol checked by verification.SignedChallengeVerifier; WebAuthnAuthenticator
speaks standard WebAuthn for verification.Fido2Verifier.

Key behaviors demonstrated:
- Private key NEVER leaves the device; only the public key is sent to the server
- RP ID binding: a passkey refuses to sign for a different domain (phishing resistance)
- Client data: challenge, origin and ceremony type are wrapped in clientDataJSON
- Sign counter: monotonic counter per credential (replay/clone detection)
"""

from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from fido2 import cbor
from fido2.cose import ES256
from fido2.webauthn import AttestedCredentialData, AuthenticatorData

from crypto_utils import base64url_encode, sha256
from verification import CREATE_TYPE, GET_TYPE, signed_message


class Authenticator:
    """
    Software authenticator holding Ed25519 passkeys in memory.

    report_counter=False simulates authenticators that keep no signature
    counter: responses then omit signCount entirely.
    """

    def __init__(self, origin: str, report_counter: bool = True) -> None:
        self.origin = origin
        self.report_counter = report_counter
        self._credentials: Dict[str, Dict[str, Any]] = {}

    def _client_data(self, ceremony_type: str, challenge: str) -> bytes:
        payload = {"type": ceremony_type, "challenge": challenge, "origin": self.origin}
        return json.dumps(payload, sort_keys=True).encode("utf-8")

    def create_credential(self, options: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a new passkey for registration options and return the attestation response.

        Step-by-step:
        1. Generate a new Ed25519 key pair; keep the private key locally
        2. Generate a random 16-byte credential_id (base64url-encoded)
        3. Wrap challenge + origin into clientDataJSON
        4. Sign rp_id || SHA256(clientDataJSON) || counter (proof-of-possession)
        5. Return credential id, public key, signature and counter
        """
        rp_id = options["rp"]["id"]
        private_key = ed25519.Ed25519PrivateKey.generate()
        public_key_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        credential_id = base64url_encode(os.urandom(16))
        self._credentials[credential_id] = {
            "username": options["user"]["name"],
            "rp_id": rp_id,
            "private_key": private_key,
            "sign_counter": 0,
        }

        client_data_json = self._client_data(CREATE_TYPE, options["challenge"])
        counter = 0 if self.report_counter else None
        signature = private_key.sign(signed_message(rp_id, client_data_json, counter))

        body: Dict[str, Any] = {
            "clientDataJSON": base64url_encode(client_data_json),
            "publicKey": base64url_encode(public_key_bytes),
            "signature": base64url_encode(signature),
        }
        if counter is not None:
            body["signCount"] = counter
        return {"id": credential_id, "rawId": credential_id, "type": "public-key", "response": body}

    def get_assertion(self, options: Dict[str, Any], credential_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Sign a login challenge with one of the allowed passkeys.

        RP ID is checked before signing; the counter is bumped on every use.
        """
        if credential_id is None:
            allowed = [c["id"] for c in options.get("allowCredentials", []) if c["id"] in self._credentials]
            if not allowed:
                raise ValueError("No matching passkey on this authenticator.")
            credential_id = allowed[0]
        if credential_id not in self._credentials:
            raise ValueError("Unknown credential_id in authenticator.")

        entry = self._credentials[credential_id]
        rp_id = options["rpId"]
        if entry["rp_id"] != rp_id:
            raise PermissionError(f"RP ID mismatch (stored={entry['rp_id']}, requested={rp_id}).")

        entry["sign_counter"] += 1
        counter = entry["sign_counter"] if self.report_counter else None
        client_data_json = self._client_data(GET_TYPE, options["challenge"])
        signature = entry["private_key"].sign(signed_message(rp_id, client_data_json, counter))

        body: Dict[str, Any] = {
            "clientDataJSON": base64url_encode(client_data_json),
            "signature": base64url_encode(signature),
        }
        if counter is not None:
            body["signCount"] = counter
        return {"id": credential_id, "rawId": credential_id, "type": "public-key", "response": body}

    def set_counter(self, credential_id: str, value: int) -> None:
        """Force a credential's counter, e.g. to simulate a cloned authenticator."""
        self._credentials[credential_id]["sign_counter"] = value

    def debug_dump(self) -> Dict[str, Dict[str, Any]]:
        """Credential metadata without private keys (option 6 in the demo menu)."""
        return {
            cred_id: {
                "username": entry["username"],
                "rp_id": entry["rp_id"],
                "sign_counter": entry["sign_counter"],
            }
            for cred_id, entry in self._credentials.items()
        }


class WebAuthnAuthenticator:
    """
    Software authenticator speaking standard WebAuthn, checked by
    verification.Fido2Verifier.

    It creates ES256 (P-256) credentials with "none" attestation and answers
    with the PublicKeyCredential JSON a browser posts: base64url fields, a CBOR
    attestation object on registration, authenticatorData plus a DER ECDSA
    signature on login.

    counter_step=0 simulates platform passkeys that keep no signature counter
    and always report 0.
    """

    def __init__(self, origin: str, counter_step: int = 1) -> None:
        self.origin = origin
        self.counter_step = counter_step
        self._credentials: Dict[str, Dict[str, Any]] = {}

    def _client_data(self, ceremony_type: str, challenge: str) -> bytes:
        payload = {"type": ceremony_type, "challenge": challenge, "origin": self.origin, "crossOrigin": False}
        return json.dumps(payload).encode("utf-8")

    def create_credential(self, options: Dict[str, Any]) -> Dict[str, Any]:
        """
        Step-by-step:
        1. Generate a P-256 key pair and a random 32-byte credential id
        2. Build authenticatorData (RP ID hash, UP|AT flags, counter 0,
           attested credential data with the COSE public key)
        3. Wrap it in a "none" attestation object
        """
        rp_id = options["rp"]["id"]
        private_key = ec.generate_private_key(ec.SECP256R1())
        raw_id = os.urandom(32)
        credential_id = base64url_encode(raw_id)
        self._credentials[credential_id] = {"rp_id": rp_id, "private_key": private_key, "sign_counter": 0}

        credential_data = AttestedCredentialData.create(
            bytes(16), raw_id, ES256.from_cryptography_key(private_key.public_key())
        )
        flags = AuthenticatorData.FLAG.UP | AuthenticatorData.FLAG.AT
        auth_data = AuthenticatorData.create(sha256(rp_id.encode("utf-8")), flags, 0, credential_data)
        attestation_object = cbor.encode({"fmt": "none", "attStmt": {}, "authData": bytes(auth_data)})

        client_data_json = self._client_data(CREATE_TYPE, options["challenge"])
        return {
            "id": credential_id,
            "rawId": credential_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": base64url_encode(client_data_json),
                "attestationObject": base64url_encode(attestation_object),
            },
            "clientExtensionResults": {},
        }

    def get_assertion(self, options: Dict[str, Any], credential_id: Optional[str] = None) -> Dict[str, Any]:
        """Sign authenticatorData || SHA256(clientDataJSON) with the credential's key."""
        if credential_id is None:
            allowed = [c["id"] for c in options.get("allowCredentials", []) if c["id"] in self._credentials]
            if not allowed:
                raise ValueError("No matching passkey on this authenticator.")
            credential_id = allowed[0]

        entry = self._credentials[credential_id]
        rp_id = options["rpId"]
        if entry["rp_id"] != rp_id:
            raise PermissionError(f"RP ID mismatch (stored={entry['rp_id']}, requested={rp_id}).")

        entry["sign_counter"] += self.counter_step
        auth_data = AuthenticatorData.create(
            sha256(rp_id.encode("utf-8")), AuthenticatorData.FLAG.UP, entry["sign_counter"]
        )
        client_data_json = self._client_data(GET_TYPE, options["challenge"])
        signature = entry["private_key"].sign(auth_data + sha256(client_data_json), ec.ECDSA(hashes.SHA256()))
        return {
            "id": credential_id,
            "rawId": credential_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": base64url_encode(client_data_json),
                "authenticatorData": base64url_encode(auth_data),
                "signature": base64url_encode(signature),
            },
            "clientExtensionResults": {},
        }
