from __future__ import annotations

import pytest

from passkey_server.entities import Account, CredentialRecord
from passkey_server.errors import AccountExists, DuplicateCredential
from passkey_server.repository import MemoryAccountRepository, MemoryCredentialRepository


def make_record(account_id: str, credential_id: bytes = b"cred-1", sign_count: int = 0) -> CredentialRecord:
    return CredentialRecord(
        credential_id=credential_id,
        account_id=account_id,
        public_key=b"cose-key",
        algorithm=-7,
        sign_count=sign_count,
        transports=["usb"],
        flags=0x45,
    )


@pytest.fixture(params=["sql", "memory"])
def repos(request):
    if request.param == "sql":
        return request.getfixturevalue("accounts"), request.getfixturevalue("credentials")
    return MemoryAccountRepository(), MemoryCredentialRepository()


def test_account_lookups(repos):
    accounts, _ = repos
    alice = accounts.create(Account.new("alice", "Alice"))

    assert accounts.get(alice.id).name == "alice"
    assert accounts.get_by_name("alice").display_name == "Alice"
    assert accounts.get_by_handle(alice.webauthn_id()).id == alice.id
    assert accounts.get_by_handle(b"alice") is None
    assert accounts.get_by_name("nobody") is None


def test_account_name_is_unique(repos):
    accounts, _ = repos
    accounts.create(Account.new("alice"))
    with pytest.raises(AccountExists):
        accounts.create(Account.new("alice"))


def test_credential_lookups(repos):
    accounts, credentials = repos
    alice = accounts.create(Account.new("alice"))
    credentials.add(make_record(alice.id, b"cred-1"))
    credentials.add(make_record(alice.id, b"cred-2"))

    assert [r.credential_id for r in credentials.list_for_account(alice.id)] == [b"cred-1", b"cred-2"]
    assert [r.credential_id for r in credentials.find_by_user_handle(alice.webauthn_id())] == [
        b"cred-1",
        b"cred-2",
    ]
    stored = credentials.get(b"cred-1")
    assert stored.public_key == b"cose-key"
    assert stored.transports == ["usb"]
    assert stored.flags == 0x45
    assert credentials.get(b"missing") is None


def test_credential_id_is_globally_unique(repos):
    accounts, credentials = repos
    alice = accounts.create(Account.new("alice"))
    bob = accounts.create(Account.new("bob"))
    credentials.add(make_record(alice.id))

    with pytest.raises(DuplicateCredential):
        credentials.add(make_record(bob.id))
    assert credentials.list_for_account(bob.id) == []


def test_update_sign_count_is_compare_and_set(repos):
    accounts, credentials = repos
    alice = accounts.create(Account.new("alice"))
    original = credentials.add(make_record(alice.id, sign_count=5))

    assert credentials.update_sign_count(b"cred-1", expected=5, new=6)
    # a second writer that read the old value loses
    assert not credentials.update_sign_count(b"cred-1", expected=5, new=6)
    stored = credentials.get(b"cred-1")
    assert stored.sign_count == 6
    assert stored.updated_at >= original.updated_at
    assert not credentials.update_sign_count(b"missing", expected=0, new=1)


def test_delete_is_scoped_to_owner(repos):
    accounts, credentials = repos
    alice = accounts.create(Account.new("alice"))
    bob = accounts.create(Account.new("bob"))
    credentials.add(make_record(alice.id))

    assert not credentials.delete(bob.id, b"cred-1")
    assert credentials.delete(alice.id, b"cred-1")
    assert credentials.get(b"cred-1") is None
    assert not credentials.delete(alice.id, b"cred-1")
