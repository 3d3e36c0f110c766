from __future__ import annotations

import uuid

import pytest

from passkey_server.entities import Account, CredentialRecord
from passkey_server.errors import AccountNotFound
from passkey_server.repository import MemoryAccountRepository, MemoryCredentialRepository
from passkey_server.resolver import UserResolver


def test_find_or_create_is_idempotent(resolver):
    first = resolver.find_or_create_by_display_name("alice", "Alice")
    second = resolver.find_or_create_by_display_name("alice")

    assert first.id == second.id
    assert second.display_name == "Alice"
    assert len(first.webauthn_id()) == 16
    assert first.webauthn_id() == uuid.UUID(first.id).bytes


def test_losing_a_creation_race_returns_the_winner(resolver, accounts, monkeypatch):
    winner = accounts.create(Account.new("alice"))
    real_get_by_name = accounts.get_by_name
    calls = []

    def stale_then_real(name):
        calls.append(name)
        # the first read happens before the concurrent insert commits
        return None if len(calls) == 1 else real_get_by_name(name)

    monkeypatch.setattr(accounts, "get_by_name", stale_then_real)
    account = resolver.find_or_create_by_display_name("alice")

    assert account.id == winner.id
    assert calls == ["alice", "alice"]


def test_resolve_by_handle_loads_credentials():
    accounts, credentials = MemoryAccountRepository(), MemoryCredentialRepository()
    resolver = UserResolver(accounts, credentials)
    alice = accounts.create(Account.new("alice"))
    credentials.add(
        CredentialRecord(credential_id=b"cred", account_id=alice.id, public_key=b"k", algorithm=-7)
    )

    resolved = resolver.resolve(b"cred", alice.webauthn_id())
    assert resolved.id == alice.id
    assert [c.credential_id for c in resolved.webauthn_credentials()] == [b"cred"]


def test_resolution_never_creates_accounts(resolver, accounts):
    resolver.find_or_create_by_display_name("alice")

    with pytest.raises(AccountNotFound):
        resolver.resolve_by_handle(b"alice")
    with pytest.raises(AccountNotFound):
        resolver.resolve_by_handle(uuid.uuid4().bytes)
    with pytest.raises(AccountNotFound):
        resolver.resolve_by_id(str(uuid.uuid4()))
    assert resolver.find_by_name("mallory") is None
    assert accounts.get_by_name("mallory") is None
