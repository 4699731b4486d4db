import pytest

from authenticator import Authenticator
from ceremony import CeremonyManager
from config import Settings
from credential_store import CredentialStore
from session_issuer import InMemorySessionIssuer
from verification import SignedChallengeVerifier

ORIGIN = "http://localhost:3000"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        origin=ORIGIN,
        users_file=str(tmp_path / "users.json"),
        registration_timeout=60.0,
        verifier="signed",
        secret_key="test-secret",
    )


@pytest.fixture
def store(settings):
    return CredentialStore(settings.users_file)


@pytest.fixture
def sessions():
    return InMemorySessionIssuer()


@pytest.fixture
def authenticator():
    return Authenticator(ORIGIN)


@pytest.fixture
def manager(store, settings, sessions):
    mgr = CeremonyManager(store, SignedChallengeVerifier(), settings, sessions)
    yield mgr
    mgr.close()


@pytest.fixture
def register(manager, authenticator):
    """Run a full registration and return the credential id."""

    def _register(username):
        options = manager.start_registration(username)
        attestation = authenticator.create_credential(options)
        manager.complete_registration(username, attestation)
        return attestation["rawId"]

    return _register
