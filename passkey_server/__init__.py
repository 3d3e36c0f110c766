"""Passkey relying party: WebAuthn registration and login ceremonies."""

from .app import create_app
from .config import PasskeySettings
from .engine import CeremonyEngine
from .entities import Account, CeremonySession, CredentialRecord
from .resolver import UserResolver
from .sessions import MemorySessionStore, RedisSessionStore

__all__ = [
    "create_app",
    "PasskeySettings",
    "CeremonyEngine",
    "Account",
    "CeremonySession",
    "CredentialRecord",
    "UserResolver",
    "MemorySessionStore",
    "RedisSessionStore",
]
