"""Account resolution for the ceremonies."""

from __future__ import annotations

import logging
from typing import Optional

from .entities import Account
from .errors import AccountExists, AccountNotFound
from .repository import AccountRepository, CredentialRepository

LOGGER = logging.getLogger(__name__)


class UserResolver:
    """Finds accounts by name, id or WebAuthn user handle.

    Only ``find_or_create_by_display_name`` writes; every other lookup is pure,
    so discoverable login can never create an account from a client supplied
    value.
    """

    def __init__(self, accounts: AccountRepository, credentials: CredentialRepository):
        self.accounts = accounts
        self.credentials = credentials

    def _with_credentials(self, account: Account) -> Account:
        account.credentials = self.credentials.list_for_account(account.id)
        return account

    def find_or_create_by_display_name(self, name: str, display_name: Optional[str] = None) -> Account:
        """Registration bootstrap, idempotent per ``name``.

        Concurrent first registrations race on the unique name column; the
        loser reads back the winner's account.
        """
        account = self.accounts.get_by_name(name)
        if account is None:
            try:
                account = self.accounts.create(Account.new(name, display_name))
                LOGGER.info("Created account %s for %r", account.id, name)
            except AccountExists:
                account = self.accounts.get_by_name(name)
                if account is None:
                    raise
        return self._with_credentials(account)

    def find_by_name(self, name: str) -> Optional[Account]:
        account = self.accounts.get_by_name(name)
        return self._with_credentials(account) if account else None

    def resolve_by_id(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFound(f"No account with id {account_id}")
        return self._with_credentials(account)

    def resolve_by_handle(self, user_handle: bytes) -> Account:
        account = self.accounts.get_by_handle(user_handle)
        if account is None:
            raise AccountNotFound("No account for user handle")
        return self._with_credentials(account)

    def resolve(self, credential_id: bytes, user_handle: bytes) -> Account:
        """Discoverable login handler: only the authenticator-bound handle counts."""
        return self.resolve_by_handle(user_handle)
