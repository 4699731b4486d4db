"""
credential_store.py
==================
JSON-based persistence for user records and their registered passkeys.

The backing file is a single JSON array of user objects. It is rewritten in
full on every committed mutation: the new content goes to a temporary file in
the same directory which then atomically replaces the old one, so a crash
mid-write never leaves a half-written store behind.

In a real deployment the records would live in a proper database; the flat
file keeps the demo visible and debuggable (indent=2, sort_keys=True).
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from errors import PersistenceFailed

logger = logging.getLogger(__name__)


@dataclass
class CredentialEntry:
    """
    One registered authenticator.

    - cred_id: base64url credential identifier chosen by the authenticator
    - public_key: base64url public key material returned by the verifier
    - counter: last accepted signature counter (must increase each login)
    - counter_supported: the authenticator has reported a non-zero counter at
      least once; until then a reported 0 means it keeps no counter
    """

    cred_id: str
    public_key: str
    counter: int = 0
    counter_supported: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cred_id": self.cred_id,
            "public_key": self.public_key,
            "counter": self.counter,
            "counter_supported": self.counter_supported,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialEntry":
        counter = int(data.get("counter", 0))
        return cls(
            cred_id=data["cred_id"],
            public_key=data["public_key"],
            counter=counter,
            counter_supported=bool(data.get("counter_supported", counter > 0)),
        )


@dataclass
class UserRecord:
    """Identity plus credential state for one normalized username."""

    id: str
    username: str
    credentials: List[CredentialEntry] = field(default_factory=list)
    login_count: int = 0
    last_login: Optional[datetime] = None
    pending: bool = True
    current_challenge: Optional[str] = None
    challenge_kind: Optional[str] = None

    @classmethod
    def new_pending(cls, username: str, challenge: str, kind: str) -> "UserRecord":
        return cls(
            id=uuid.uuid4().hex,
            username=username,
            current_challenge=challenge,
            challenge_kind=kind,
        )

    def find_credential(self, cred_id: str) -> Optional[CredentialEntry]:
        for entry in self.credentials:
            if entry.cred_id == cred_id:
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "credentials": [c.to_dict() for c in self.credentials],
            "login_count": self.login_count,
            "last_login": self.last_login.isoformat() if self.last_login else None,
            "pending": self.pending,
            "current_challenge": self.current_challenge,
            "challenge_kind": self.challenge_kind,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserRecord":
        last_login = data.get("last_login")
        return cls(
            id=data["id"],
            username=data["username"],
            credentials=[CredentialEntry.from_dict(c) for c in data.get("credentials", [])],
            login_count=int(data.get("login_count", 0)),
            last_login=datetime.fromisoformat(last_login) if last_login else None,
            pending=bool(data.get("pending", False)),
            current_challenge=data.get("current_challenge"),
            challenge_kind=data.get("challenge_kind"),
        )


def load_users(path: str) -> Dict[str, UserRecord]:
    """
    Load every user record from disk, keyed by username.

    Step-by-step:
    1. If the file does not exist, return {} (fresh install / no users yet)
    2. Parse the JSON array and rebuild each UserRecord
    3. If the file is unreadable or malformed, log it and return {} so the
       server still starts
    """
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        users = [UserRecord.from_dict(item) for item in raw]
    except (OSError, ValueError, KeyError, TypeError) as exc:
        logger.error("Could not read user store %s, starting empty: %s", path, exc)
        return {}
    logger.info("Loaded %d user(s) from %s", len(users), path)
    return {user.username: user for user in users}


def save_users(path: str, users: Dict[str, UserRecord]) -> None:
    """
    Persist all user records to disk atomically.

    Step-by-step:
    1. Serialize records as a JSON array (indent=2, sort_keys=True)
    2. Write to a temporary file next to the target and fsync it
    3. os.replace() the temporary file over the target
    """
    payload = json.dumps([u.to_dict() for u in users.values()], indent=2, sort_keys=True)
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=".users-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class CredentialStore:
    """
    Owns the username -> UserRecord mapping and its backing file.

    Callers get deep copies from get(); changes become visible (and durable)
    only through put()/delete(), which save before returning. A failed save
    rolls the in-memory mapping back and raises PersistenceFailed.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._users: Dict[str, UserRecord] = load_users(path)
        self._lock = threading.RLock()
        # username -> (lock, number of callers holding or waiting for it)
        self._key_locks: Dict[str, Tuple[threading.Lock, int]] = {}
        self._key_locks_guard = threading.Lock()

    @contextmanager
    def locked(self, username: str) -> Iterator[None]:
        """
        Per-username mutual exclusion around a read-modify-persist sequence.

        Locks are reference counted and dropped once nobody holds or waits for
        them, so arbitrary usernames from clients do not accumulate.
        """
        with self._key_locks_guard:
            key_lock, users = self._key_locks.get(username) or (threading.Lock(), 0)
            self._key_locks[username] = (key_lock, users + 1)
        try:
            with key_lock:
                yield
        finally:
            with self._key_locks_guard:
                _, users = self._key_locks[username]
                if users == 1:
                    del self._key_locks[username]
                else:
                    self._key_locks[username] = (key_lock, users - 1)

    def get(self, username: str) -> Optional[UserRecord]:
        with self._lock:
            record = self._users.get(username)
            return copy.deepcopy(record) if record is not None else None

    def exists(self, username: str) -> bool:
        with self._lock:
            return username in self._users

    def records(self) -> List[UserRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._users.values()]

    def find_credential_owner(self, cred_id: str) -> Optional[str]:
        """Return the username holding cred_id, or None if nobody does."""
        with self._lock:
            for record in self._users.values():
                if record.find_credential(cred_id) is not None:
                    return record.username
        return None

    def put(self, record: UserRecord) -> None:
        """Insert or replace a record and persist."""
        with self._lock:
            previous = self._users.get(record.username)
            self._users[record.username] = copy.deepcopy(record)
            try:
                self._save()
            except PersistenceFailed:
                if previous is None:
                    del self._users[record.username]
                else:
                    self._users[record.username] = previous
                raise

    def delete(self, username: str) -> None:
        """Remove a record (if present) and persist."""
        with self._lock:
            previous = self._users.pop(username, None)
            if previous is None:
                return
            try:
                self._save()
            except PersistenceFailed:
                self._users[username] = previous
                raise

    def _save(self) -> None:
        try:
            save_users(self.path, self._users)
        except OSError as exc:
            logger.exception("Failed to save user store %s", self.path)
            raise PersistenceFailed("could not persist user records", detail="storage error") from exc

    def debug_dump(self) -> List[Dict[str, Any]]:
        """JSON-friendly view of the store for the demo's "show stored data" option."""
        with self._lock:
            return [r.to_dict() for r in self._users.values()]
