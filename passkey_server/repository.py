"""Account and credential persistence.

Two interchangeable variants exist for each repository: the SQLAlchemy one
used by the server, and an in-process one with the same uniqueness rules that
the test-suite wires in when no database is needed.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from .database import Database
from .entities import Account, CredentialRecord, user_handle_for, utcnow
from .errors import AccountExists, DuplicateCredential
from .models import AccountRow, CredentialRow


class AccountRepository(Protocol):
    def create(self, account: Account) -> Account:
        ...

    def get(self, account_id: str) -> Optional[Account]:
        ...

    def get_by_name(self, name: str) -> Optional[Account]:
        ...

    def get_by_handle(self, user_handle: bytes) -> Optional[Account]:
        ...


class CredentialRepository(Protocol):
    def add(self, record: CredentialRecord) -> CredentialRecord:
        ...

    def get(self, credential_id: bytes) -> Optional[CredentialRecord]:
        ...

    def list_for_account(self, account_id: str) -> List[CredentialRecord]:
        ...

    def find_by_user_handle(self, user_handle: bytes) -> List[CredentialRecord]:
        ...

    def update_sign_count(
        self,
        credential_id: bytes,
        expected: int,
        new: int,
        at: Optional[datetime] = None,
    ) -> bool:
        ...

    def delete(self, account_id: str, credential_id: bytes) -> bool:
        ...


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _account_from_row(row: AccountRow) -> Account:
    return Account(id=row.id, name=row.name, display_name=row.display_name)


def _record_from_row(row: CredentialRow) -> CredentialRecord:
    return CredentialRecord(
        credential_id=bytes(row.credential_id),
        account_id=row.account_id,
        public_key=bytes(row.public_key),
        algorithm=row.algorithm,
        sign_count=row.sign_count,
        transports=list(row.transports or []),
        flags=row.flags,
        aaguid=row.aaguid,
        attestation_format=row.attestation_format,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


class SqlAccountRepository:
    def __init__(self, db: Database):
        self.db = db

    def create(self, account: Account) -> Account:
        row = AccountRow(
            id=account.id,
            name=account.name,
            display_name=account.display_name,
            user_handle=user_handle_for(account.id),
        )
        try:
            with self.db.session() as session:
                session.add(row)
                session.flush()
        except IntegrityError as exc:
            raise AccountExists(f"Account {account.name!r} already exists") from exc
        return account

    def get(self, account_id: str) -> Optional[Account]:
        with self.db.session() as session:
            row = session.get(AccountRow, account_id)
            return _account_from_row(row) if row else None

    def get_by_name(self, name: str) -> Optional[Account]:
        with self.db.session() as session:
            row = session.scalar(select(AccountRow).where(AccountRow.name == name))
            return _account_from_row(row) if row else None

    def get_by_handle(self, user_handle: bytes) -> Optional[Account]:
        with self.db.session() as session:
            row = session.scalar(select(AccountRow).where(AccountRow.user_handle == user_handle))
            return _account_from_row(row) if row else None


class SqlCredentialRepository:
    def __init__(self, db: Database):
        self.db = db

    def add(self, record: CredentialRecord) -> CredentialRecord:
        row = CredentialRow(
            account_id=record.account_id,
            credential_id=record.credential_id,
            public_key=record.public_key,
            algorithm=record.algorithm,
            sign_count=record.sign_count,
            transports=list(record.transports),
            flags=record.flags,
            aaguid=record.aaguid,
            attestation_format=record.attestation_format,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        try:
            with self.db.session() as session:
                session.add(row)
                session.flush()
        except IntegrityError as exc:
            raise DuplicateCredential("Credential id already registered") from exc
        return record

    def get(self, credential_id: bytes) -> Optional[CredentialRecord]:
        with self.db.session() as session:
            row = session.scalar(
                select(CredentialRow).where(CredentialRow.credential_id == credential_id)
            )
            return _record_from_row(row) if row else None

    def list_for_account(self, account_id: str) -> List[CredentialRecord]:
        with self.db.session() as session:
            rows = session.scalars(
                select(CredentialRow)
                .where(CredentialRow.account_id == account_id)
                .order_by(CredentialRow.id)
            )
            return [_record_from_row(row) for row in rows]

    def find_by_user_handle(self, user_handle: bytes) -> List[CredentialRecord]:
        with self.db.session() as session:
            rows = session.scalars(
                select(CredentialRow)
                .join(AccountRow, AccountRow.id == CredentialRow.account_id)
                .where(AccountRow.user_handle == user_handle)
                .order_by(CredentialRow.id)
            )
            return [_record_from_row(row) for row in rows]

    def update_sign_count(
        self,
        credential_id: bytes,
        expected: int,
        new: int,
        at: Optional[datetime] = None,
    ) -> bool:
        """Compare-and-set the counter; False when another login won the race."""
        with self.db.session() as session:
            result = session.execute(
                update(CredentialRow)
                .where(
                    CredentialRow.credential_id == credential_id,
                    CredentialRow.sign_count == expected,
                )
                .values(sign_count=new, updated_at=at or utcnow())
            )
            return result.rowcount == 1

    def delete(self, account_id: str, credential_id: bytes) -> bool:
        with self.db.session() as session:
            result = session.execute(
                delete(CredentialRow).where(
                    CredentialRow.account_id == account_id,
                    CredentialRow.credential_id == credential_id,
                )
            )
            return result.rowcount > 0


class MemoryAccountRepository:
    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._lock = threading.Lock()

    def create(self, account: Account) -> Account:
        with self._lock:
            if account.id in self._accounts or any(
                existing.name == account.name for existing in self._accounts.values()
            ):
                raise AccountExists(f"Account {account.name!r} already exists")
            self._accounts[account.id] = replace(account, credentials=[])
        return account

    def get(self, account_id: str) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(account_id)
        return replace(account) if account else None

    def get_by_name(self, name: str) -> Optional[Account]:
        with self._lock:
            for account in self._accounts.values():
                if account.name == name:
                    return replace(account)
        return None

    def get_by_handle(self, user_handle: bytes) -> Optional[Account]:
        with self._lock:
            for account in self._accounts.values():
                if account.webauthn_id() == user_handle:
                    return replace(account)
        return None


class MemoryCredentialRepository:
    def __init__(self) -> None:
        self._records: Dict[bytes, CredentialRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: CredentialRecord) -> CredentialRecord:
        with self._lock:
            if record.credential_id in self._records:
                raise DuplicateCredential("Credential id already registered")
            self._records[record.credential_id] = replace(record, transports=list(record.transports))
        return record

    def get(self, credential_id: bytes) -> Optional[CredentialRecord]:
        with self._lock:
            record = self._records.get(credential_id)
        return replace(record) if record else None

    def list_for_account(self, account_id: str) -> List[CredentialRecord]:
        with self._lock:
            return [replace(r) for r in self._records.values() if r.account_id == account_id]

    def find_by_user_handle(self, user_handle: bytes) -> List[CredentialRecord]:
        with self._lock:
            return [
                replace(r)
                for r in self._records.values()
                if user_handle_for(r.account_id) == user_handle
            ]

    def update_sign_count(
        self,
        credential_id: bytes,
        expected: int,
        new: int,
        at: Optional[datetime] = None,
    ) -> bool:
        with self._lock:
            record = self._records.get(credential_id)
            if record is None or record.sign_count != expected:
                return False
            self._records[credential_id] = replace(record, sign_count=new, updated_at=at or utcnow())
            return True

    def delete(self, account_id: str, credential_id: bytes) -> bool:
        with self._lock:
            record = self._records.get(credential_id)
            if record is None or record.account_id != account_id:
                return False
            del self._records[credential_id]
            return True
