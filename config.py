"""
config.py
=========
Runtime settings for the ceremony server and the demo.

Values come from the environment (optionally a .env file loaded with
python-dotenv), all prefixed with PASSKEY_. Anything unset falls back to the
defaults below, which suit a local http://localhost:3000 deployment.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from crypto_utils import MIN_CHALLENGE_SIZE

ENV_PREFIX = "PASSKEY_"

COUNTER_POLICIES = ("strict", "lenient")
VERIFIERS = ("fido2", "signed")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(frozen=True)
class Settings:
    """
    Relying-party identity, ceremony tuning and deployment knobs.

    - registration_timeout: seconds a pending registration may stay
      unfinished before its username is reclaimed
    - counter_policy: "strict" fails a login whose authenticator reports no
      signature counter, "lenient" bumps the stored counter by one instead
    - verifier: "fido2" for real WebAuthn clients, "signed" for the software
      authenticator used by the demo and the tests
    """

    rp_id: str = "localhost"
    rp_name: str = "Passkey Demo"
    origin: str = "http://localhost:3000"
    users_file: str = "users.json"
    registration_timeout: float = 30.0
    challenge_size: int = 64
    ceremony_timeout_ms: int = 60000
    counter_policy: str = "lenient"
    verifier: str = "fido2"
    login_redirect: str = "/dashboard.html"
    secret_key: str = field(default_factory=lambda: secrets.token_hex(32), repr=False)
    log_level: str = "INFO"
    host: str = "localhost"
    port: int = 3000

    def __post_init__(self) -> None:
        if not self.rp_id:
            raise ValueError("rp_id must not be empty")
        if self.challenge_size < MIN_CHALLENGE_SIZE:
            raise ValueError(f"challenge_size must be at least {MIN_CHALLENGE_SIZE} bytes")
        if self.registration_timeout <= 0:
            raise ValueError("registration_timeout must be positive")
        if self.counter_policy not in COUNTER_POLICIES:
            raise ValueError(f"counter_policy must be one of {COUNTER_POLICIES}")
        if self.verifier not in VERIFIERS:
            raise ValueError(f"verifier must be one of {VERIFIERS}")

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """
        Build settings from PASSKEY_* environment variables.

        Step-by-step:
        1. Load the .env file (if any) without overriding real env vars
        2. Read each known variable, converting numeric ones
        3. Let __post_init__ validate the combination
        """
        load_dotenv(env_file)
        defaults = cls.__dataclass_fields__
        values = {}
        for name, field_def in defaults.items():
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if field_def.type in ("int", int):
                values[name] = int(raw)
            elif field_def.type in ("float", float):
                values[name] = float(raw)
            else:
                values[name] = raw
        if "secret_key" not in values:
            logging.getLogger(__name__).warning(
                "%sSECRET_KEY is not set; sessions will not survive a restart", ENV_PREFIX
            )
        return cls(**values)


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler once; both entry points call this."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
