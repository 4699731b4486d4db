"""
session_issuer.py
================
Session binding after a successful login.

The ceremony manager calls bind_session(username) exactly once per successful
login, after the login's record changes are saved.
"""

from __future__ import annotations

import secrets
import threading
from typing import Dict, Optional

from flask import session

SESSION_USER_KEY = "username"
SESSION_TOKEN_KEY = "token"


class FlaskSessionIssuer:
    """Binds the login to Flask's signed-cookie session of the current request."""

    def bind_session(self, username: str) -> str:
        token = secrets.token_urlsafe(32)
        session.clear()
        session[SESSION_USER_KEY] = username
        session[SESSION_TOKEN_KEY] = token
        return token

    @staticmethod
    def current_user() -> Optional[str]:
        return session.get(SESSION_USER_KEY)

    @staticmethod
    def end_session() -> None:
        session.clear()


class InMemorySessionIssuer:
    """Token -> username table, for the command-line demo and tests."""

    def __init__(self) -> None:
        self._sessions: Dict[str, str] = {}
        self._lock = threading.Lock()

    def bind_session(self, username: str) -> str:
        token = secrets.token_urlsafe(32)
        with self._lock:
            self._sessions[token] = username
        return token

    def username_for(self, token: str) -> Optional[str]:
        with self._lock:
            return self._sessions.get(token)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
