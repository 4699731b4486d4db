"""
app.py
======
Flask HTTP surface for the ceremony manager.

Routes:
- POST /register/options, /register/complete
- POST /login/options, /login/complete
- GET  /check-username/<username>
- GET  /session, /logout

Failures answer with {"ok": false, "kind": ..., "error": ...} and the status
code of the error kind.
"""

from __future__ import annotations

from typing import Optional

from flask import Flask, jsonify, redirect, request

from ceremony import CeremonyManager
from config import Settings, configure_logging
from credential_store import CredentialStore
from errors import CeremonyError, PersistenceFailed
from session_issuer import FlaskSessionIssuer
from verification import build_verifier


def create_app(settings: Optional[Settings] = None, verifier=None) -> Flask:
    settings = settings or Settings.from_env()
    app = Flask(__name__)
    app.secret_key = settings.secret_key

    sessions = FlaskSessionIssuer()
    manager = CeremonyManager(
        CredentialStore(settings.users_file),
        verifier or build_verifier(settings.verifier, settings.rp_name),
        settings,
        sessions,
    )
    app.extensions["ceremony"] = manager

    @app.errorhandler(CeremonyError)
    def handle_ceremony_error(exc: CeremonyError):
        if isinstance(exc, PersistenceFailed):
            app.logger.error("%s %s failed: %s", request.method, request.path, exc.message)
        else:
            app.logger.info("%s %s rejected (%s): %s", request.method, request.path, exc.kind, exc.message)
        return jsonify(exc.to_dict()), exc.status

    def _body() -> dict:
        body = request.get_json(silent=True)
        return body if isinstance(body, dict) else {}

    @app.get("/check-username/<username>")
    def check_username(username):
        return jsonify({"available": manager.is_available(username)})

    @app.post("/register/options")
    def register_options():
        return jsonify(manager.start_registration(_body().get("username")))

    @app.post("/register/complete")
    def register_complete():
        body = _body()
        result = manager.complete_registration(body.get("username"), body.get("attestationResponse"))
        return jsonify(result.to_dict())

    @app.post("/login/options")
    def login_options():
        return jsonify(manager.start_login(_body().get("username")))

    @app.post("/login/complete")
    def login_complete():
        body = _body()
        result = manager.complete_login(body.get("username"), body.get("assertionResponse"))
        return jsonify(result.to_dict())

    @app.get("/session")
    def current_session():
        username = sessions.current_user()
        record = manager.describe(username) if username else None
        if record is None:
            return jsonify({"loggedIn": False})
        return jsonify(
            {
                "loggedIn": True,
                "user": record.username,
                "lastLogin": record.last_login.isoformat() if record.last_login else None,
                "loginCount": record.login_count,
            }
        )

    @app.get("/logout")
    def logout():
        sessions.end_session()
        return redirect("/")

    return app


if __name__ == "__main__":
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    create_app(settings).run(host=settings.host, port=settings.port, threaded=True)
