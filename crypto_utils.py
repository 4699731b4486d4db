"""
crypto_utils.py
==============
Small, well-named cryptographic helper functions shared by the ceremony server,
the verifiers and the software authenticator.

It provides:
- Base64url encoding/decoding (WebAuthn-compatible format)
- SHA-256 hashing for client data digests
- Challenge generation (cryptographically random, fixed size)
"""

from __future__ import annotations

import base64
import os

from cryptography.hazmat.primitives import hashes

MIN_CHALLENGE_SIZE = 16  # WebAuthn requires at least 16 random bytes


def base64url_encode(raw_bytes: bytes) -> str:
    """
    Encode raw bytes using URL-safe base64 without '=' padding (WebAuthn-style).

    WebAuthn/CTAP use base64url encoding (RFC 4648) which differs from standard
    base64: uses - and _ instead of + and /, and omits padding for compactness.
    """
    return base64.urlsafe_b64encode(raw_bytes).decode("utf-8").rstrip("=")


def base64url_decode(encoded: str) -> bytes:
    """
    Decode URL-safe base64 string back to raw bytes, handling missing padding.

    Step-by-step:
    1. Calculate how many '=' padding chars are needed (base64 requires length % 4 == 0)
    2. Append the required padding to the encoded string
    3. Decode using base64.urlsafe_b64decode() and return raw bytes
    """
    padding = "=" * (-len(encoded) % 4)  # add required '=' padding back
    return base64.urlsafe_b64decode(encoded + padding)


def sha256(data: bytes) -> bytes:
    """Compute the 32-byte SHA-256 digest of data."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


def generate_challenge(size: int = 64) -> str:
    """
    Generate a fresh random challenge (nonce), base64url-encoded.

    Challenges are single-use and unpredictable. One is bound to each live
    ceremony; the client's proof must embed it.
    """
    if size < MIN_CHALLENGE_SIZE:
        raise ValueError(f"challenge size must be at least {MIN_CHALLENGE_SIZE} bytes")
    return base64url_encode(os.urandom(size))
