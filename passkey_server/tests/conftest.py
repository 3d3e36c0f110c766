from __future__ import annotations

from pathlib import Path

import cbor2
import pytest

from passkey_server.app import create_app
from passkey_server.config import PasskeySettings
from passkey_server.database import Database
from passkey_server.engine import CeremonyEngine
from passkey_server.repository import SqlAccountRepository, SqlCredentialRepository
from passkey_server.resolver import UserResolver
from passkey_server.sessions import MemorySessionStore
from passkey_server.verifier import WebAuthnVerifier

from . import soft_authenticator
from .soft_authenticator import SoftAuthenticator


@pytest.fixture
def settings(tmp_path: Path) -> PasskeySettings:
    return PasskeySettings(
        database_url=f"sqlite:///{tmp_path / 'passkeys.db'}",
        rp_id="localhost",
        rp_name="Test RP",
        origin="http://localhost:5173",
        session_ttl_seconds=300,
    )


@pytest.fixture
def database(settings: PasskeySettings):
    db = Database(settings.database_url)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def accounts(database: Database) -> SqlAccountRepository:
    return SqlAccountRepository(database)


@pytest.fixture
def credentials(database: Database) -> SqlCredentialRepository:
    return SqlCredentialRepository(database)


@pytest.fixture
def sessions(settings: PasskeySettings) -> MemorySessionStore:
    return MemorySessionStore(ttl=settings.session_ttl_seconds)


@pytest.fixture
def resolver(accounts, credentials) -> UserResolver:
    return UserResolver(accounts, credentials)


@pytest.fixture
def engine(settings, sessions, credentials) -> CeremonyEngine:
    return CeremonyEngine(settings, sessions, credentials, WebAuthnVerifier(settings.hosted_algorithms))


@pytest.fixture
def authenticator(settings: PasskeySettings) -> SoftAuthenticator:
    return SoftAuthenticator(rp_id=settings.rp_id, origin=settings.origin)


@pytest.fixture
def client(settings, sessions, accounts, credentials):
    app = create_app(settings, sessions=sessions, accounts=accounts, credentials=credentials)
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def keys_without_x(monkeypatch):
    """Make the authenticator emit EC2 keys that lack the x coordinate."""
    original = soft_authenticator.build_credential_public_key

    def broken(private_key):
        cose = cbor2.loads(original(private_key))
        del cose[-2]
        return cbor2.dumps(cose)

    monkeypatch.setattr(soft_authenticator, "build_credential_public_key", broken)
