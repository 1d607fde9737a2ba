"""
Account storage seam used by the orchestrator.

Persistent account storage lives outside this bounded context. The orchestrator
only depends on the `AccountRepository` protocol; `InMemoryAccountRepository`
backs development runs and tests.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, Optional, Protocol
import threading
import uuid

from .domain import Account, AccountType, OAuthProvider


class AccountRepository(Protocol):
    def find_account_by_email(self, email: str) -> Optional[Account]:
        ...

    def find_account_by_id(self, account_id: str) -> Optional[Account]:
        ...

    def create_account(
        self,
        *,
        email: str,
        name: str,
        provider: OAuthProvider,
        avatar_url: Optional[str] = None,
    ) -> Account:
        ...

    def update_scopes(self, account_id: str, scopes: Iterable[str]) -> None:
        ...


class InMemoryAccountRepository:
    """Dictionary-backed accounts keyed by id, with a case-insensitive email index."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}

    @staticmethod
    def _email_key(email: str) -> str:
        return email.strip().lower()

    def add(self, account: Account) -> Account:
        with self._lock:
            self._by_id[account.id] = account
            self._email_index[self._email_key(account.email)] = account.id
        return account

    def find_account_by_email(self, email: str) -> Optional[Account]:
        if not email:
            return None
        with self._lock:
            account_id = self._email_index.get(self._email_key(email))
            return self._by_id.get(account_id) if account_id else None

    def find_account_by_id(self, account_id: str) -> Optional[Account]:
        with self._lock:
            return self._by_id.get(account_id)

    def create_account(
        self,
        *,
        email: str,
        name: str,
        provider: OAuthProvider,
        avatar_url: Optional[str] = None,
    ) -> Account:
        account = Account(
            id=uuid.uuid4().hex,
            email=email,
            name=name,
            account_type=AccountType.OAUTH,
            provider=provider,
            avatar_url=avatar_url,
        )
        with self._lock:
            if self._email_key(email) in self._email_index:
                raise ValueError("account_exists")
            self._by_id[account.id] = account
            self._email_index[self._email_key(email)] = account.id
        return account

    def update_scopes(self, account_id: str, scopes: Iterable[str]) -> None:
        with self._lock:
            account = self._by_id.get(account_id)
            if account is None:
                return
            self._by_id[account_id] = replace(account, scopes=tuple(scopes))


__all__ = ["AccountRepository", "InMemoryAccountRepository"]
