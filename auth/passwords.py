"""
auth/passwords.py -- Password policy: minimum length plus breach-corpus check.

A password is acceptable when satisfies_policy() is True AND is_trivial() is
False. Both checks run only when a password is set or changed; existing
hashes are never re-checked against a newer corpus.

The breach corpus lives in the trivial_passwords table, lowercased, one row
per password. Loading it is a one-time bulk job outside this package.
"""

from __future__ import annotations

from typing import Optional, Protocol

from sqlalchemy import select

from auth.store import Database, trivial_passwords

MIN_PASSWORD_LENGTH = 8

INVALID_PASSWORD = "invalid_password"
TRIVIAL_PASSWORD = "trivial_password"


class BreachListLookup(Protocol):
    def contains(self, lowercased_password: str) -> bool: ...


class BreachList:
    """BreachListLookup backed by the indexed trivial_passwords table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def contains(self, lowercased_password: str) -> bool:
        with self._db.connect() as conn:
            row = conn.execute(
                select(trivial_passwords.c.password).where(trivial_passwords.c.password == lowercased_password).limit(1)
            ).fetchone()
        return row is not None


class PasswordPolicyEngine:
    def __init__(self, breach_list: BreachListLookup) -> None:
        self._breach_list = breach_list

    def satisfies_policy(self, password: object) -> bool:
        return isinstance(password, str) and len(password.strip()) >= MIN_PASSWORD_LENGTH

    def is_trivial(self, password: str) -> bool:
        return self._breach_list.contains(password.lower())

    def check(self, password: object) -> Optional[str]:
        """Return None if acceptable, else INVALID_PASSWORD or TRIVIAL_PASSWORD."""
        if not self.satisfies_policy(password):
            return INVALID_PASSWORD
        if self.is_trivial(password):  # type: ignore[arg-type]
            return TRIVIAL_PASSWORD
        return None
