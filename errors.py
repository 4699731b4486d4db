"""
errors.py
=========
Error taxonomy for the registration/login ceremonies.

Every failure a client can observe is a CeremonyError subclass carrying:
- kind: machine-readable category (InvalidInput, Conflict, NotFound, ...)
- status: HTTP status the web layer answers with
- message: human-readable explanation
- detail: optional generic detail string (never verifier internals)
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CeremonyError(Exception):
    """Base class for all client-visible ceremony failures."""

    kind = "CeremonyError"
    status = 400

    def __init__(self, message: str, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": False, "kind": self.kind, "error": self.message}
        if self.detail:
            body["detail"] = self.detail
        return body


class InvalidInput(CeremonyError):
    kind = "InvalidInput"
    status = 400


class Conflict(CeremonyError):
    kind = "Conflict"
    status = 409


class UsernameTaken(Conflict):
    """Registration requested for a username that already has a record."""


class CredentialInUse(Conflict):
    """Attested credential id is already registered to another user."""


class NotFound(CeremonyError):
    kind = "NotFound"
    status = 404


class UserNotFound(NotFound):
    pass


class UserNotRegistered(NotFound):
    """Login requested for a username with no record or no credentials."""


class CredentialNotFound(NotFound):
    pass


class ChallengeMismatch(CeremonyError):
    """No live challenge, a stale challenge, or a replayed response."""

    kind = "ChallengeMismatch"
    status = 400


class VerificationFailed(CeremonyError):
    kind = "VerificationFailed"
    status = 401


class PersistenceFailed(CeremonyError):
    """The credential store could not durably write its state."""

    kind = "PersistenceFailed"
    status = 500
