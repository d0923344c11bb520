from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Iterable, Protocol

from taskgate.permissions import normalize_groups


@dataclass(frozen=True)
class Principal:
    """Authenticated caller handed in by the upstream auth layer for one request."""

    username: str


class AccountDirectory(Protocol):
    def groups_for_user(self, username: str) -> frozenset[str]:
        """Current group membership; unknown or inactive accounts have none."""
        ...

    def emails_for_groups(self, groups: Iterable[str]) -> list[str]:
        ...


class InMemoryAccountDirectory:
    def __init__(self):
        self._lock = Lock()
        self.accounts: dict[str, dict] = {}

    def add_account(
        self,
        username: str,
        *,
        groups: Iterable[str],
        email: str | None = None,
        is_active: bool = True,
    ) -> None:
        with self._lock:
            self.accounts[username] = {
                'username': username,
                'email': email,
                'groups': list(groups),
                'is_active': bool(is_active),
            }

    def set_groups(self, username: str, groups: Iterable[str]) -> None:
        with self._lock:
            self.accounts[username]['groups'] = list(groups)

    def groups_for_user(self, username: str) -> frozenset[str]:
        with self._lock:
            account = self.accounts.get(username)
            if account is None or not account['is_active']:
                return frozenset()
            return normalize_groups(account['groups'])

    def emails_for_groups(self, groups: Iterable[str]) -> list[str]:
        wanted = normalize_groups(groups)
        with self._lock:
            accounts = list(self.accounts.values())
        emails = {
            str(a['email'])
            for a in accounts
            if a['is_active'] and a.get('email') and not wanted.isdisjoint(normalize_groups(a['groups']))
        }
        return sorted(emails)
