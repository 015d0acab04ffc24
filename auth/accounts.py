"""
auth/accounts.py -- Account persistence, password hashing, tombstone deletion.

Pattern: Repository + Data Mapper. AccountDirectory is the repository;
_row_to_account / _row_to_tombstone are the mappers. Services never touch SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Accounts created without a password get a random 24-symbol throwaway
  credential. Nobody ever sees it, so the only way in is a login link or a
  password reset -- which is what sets a real password.

  delete_and_tombstone() runs the tombstone insert and the account delete in
  one transaction. Either both happen or neither does; a failure rolls back
  and returns None.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, or_, select

from auth.models import Account, AccountPage, Role, Tombstone, TokenType
from auth.store import Database, accounts, tombstones
from auth.token_store import TokenStore
from auth.tokens import generate_secure_token, hash_password
from core.clock import Clock, SecureRandom

logger = logging.getLogger("keyhold.accounts")

ACCOUNT_ID_LENGTH = 13
THROWAWAY_PASSWORD_LENGTH = 24


class AccountDirectory:
    """Repository for Account and Tombstone entities.

    Usage:
        directory = AccountDirectory(db, token_store, clock, rng, bcrypt_rounds=10)
        account = directory.create("ada@example.com", "correct horse battery")
        same = directory.get_by_email("ADA@example.com")
    """

    def __init__(
        self,
        db: Database,
        token_store: TokenStore,
        clock: Clock,
        rng: SecureRandom,
        bcrypt_rounds: int = 10,
    ) -> None:
        self._db = db
        self._tokens = token_store
        self._clock = clock
        self._rng = rng
        self._rounds = bcrypt_rounds

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_email(self, email: str) -> Optional[Account]:
        """Look up an account by email, case-insensitively (NOCASE column)."""
        with self._db.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: str) -> Optional[Account]:
        with self._db.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self, page: int = 1, per_page: int = 50) -> AccountPage:
        """Return one page of accounts, newest first."""
        return self._page(None, page, per_page)

    def search_accounts(self, query: str, page: int = 1, per_page: int = 50) -> AccountPage:
        """Substring search over email, id, and role. Blank query lists all."""
        if not query or not query.strip():
            return self.list_accounts(page, per_page)
        pattern = f"%{query.strip()}%"
        condition = or_(accounts.c.email.like(pattern), accounts.c.id.like(pattern), accounts.c.role.like(pattern))
        return self._page(condition, page, per_page)

    def get_tombstone(self, account_id: str) -> Optional[Tombstone]:
        with self._db.connect() as conn:
            row = conn.execute(tombstones.select().where(tombstones.c.id == account_id)).fetchone()
        return _row_to_tombstone(row) if row is not None else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, email: str, password: Optional[str] = None, role: Role = Role.USER) -> Account:
        """Insert a new account and return it.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken
        (in any letter case). Callers check get_by_email() first; the
        constraint is the backstop for concurrent signups.
        """
        plain = password or generate_secure_token(self._rng, THROWAWAY_PASSWORD_LENGTH)
        account = Account(
            id=generate_secure_token(self._rng, ACCOUNT_ID_LENGTH),
            email=email,
            password=hash_password(plain, rounds=self._rounds),
            created=self._clock.now(),
            role=role,
        )
        with self._db.connect() as conn:
            conn.execute(
                accounts.insert().values(
                    id=account.id,
                    created=account.created,
                    updated=account.updated,
                    email=account.email,
                    password=account.password,
                    emailVerified=account.email_verified,
                    role=account.role.value,
                )
            )
            conn.commit()
        return account

    def update(self, account: Account) -> bool:
        """Persist email, verification state, and role. Stamps `updated`.

        Returns True if a row was updated, False if the account no longer exists.
        """
        now = self._clock.now()
        with self._db.connect() as conn:
            result = conn.execute(
                accounts.update()
                .where(accounts.c.id == account.id)
                .values(
                    email=account.email,
                    emailVerified=account.email_verified,
                    role=account.role.value,
                    updated=now,
                )
            )
            conn.commit()
        if result.rowcount > 0:
            account.updated = now
            return True
        return False

    def update_password(self, account_id: str, new_password: str) -> bool:
        hashed = hash_password(new_password, rounds=self._rounds)
        with self._db.connect() as conn:
            result = conn.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(password=hashed, updated=self._clock.now())
            )
            conn.commit()
        return result.rowcount > 0

    def terminate_all_sessions(self, account_id: str) -> int:
        """Delete every session token of the account. Returns sessions removed."""
        return self._tokens.delete_for_account(account_id, TokenType.SESSION)

    def delete_and_tombstone(self, account: Account, reason: str = "user_deleted") -> Optional[Tombstone]:
        """Atomically replace the account row with a tombstone.

        Returns the Tombstone, or None if anything failed -- in which case
        the transaction was rolled back and neither change is visible.
        """
        tombstone = Tombstone(
            id=account.id,
            email=account.email,
            reason=reason,
            created=account.created,
            deleted=self._clock.now(),
            pruned=0,
        )
        try:
            with self._db.begin() as conn:
                conn.execute(
                    tombstones.insert().values(
                        id=tombstone.id,
                        email=tombstone.email,
                        reason=tombstone.reason,
                        created=tombstone.created,
                        deleted=tombstone.deleted,
                        pruned=tombstone.pruned,
                    )
                )
                result = conn.execute(accounts.delete().where(accounts.c.id == account.id))
                if result.rowcount != 1:
                    raise LookupError(f"account {account.id} not found")
        except Exception:
            logger.exception("Failed to delete account %s; transaction rolled back", account.id)
            return None
        return tombstone

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _page(self, condition, page: int, per_page: int) -> AccountPage:
        page = max(1, page)
        per_page = max(1, per_page)
        count_stmt = select(func.count()).select_from(accounts)
        rows_stmt = accounts.select().order_by(accounts.c.created.desc(), accounts.c.id)
        if condition is not None:
            count_stmt = count_stmt.where(condition)
            rows_stmt = rows_stmt.where(condition)
        rows_stmt = rows_stmt.limit(per_page).offset((page - 1) * per_page)
        with self._db.connect() as conn:
            total = conn.execute(count_stmt).scalar() or 0
            rows = conn.execute(rows_stmt).fetchall()
        return AccountPage(accounts=[_row_to_account(r) for r in rows], total=total)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password=row.password,
        created=row.created,
        updated=row.updated,
        email_verified=row.emailVerified,
        role=Role(row.role),
    )


def _row_to_tombstone(row) -> Tombstone:
    return Tombstone(
        id=row.id,
        email=row.email,
        reason=row.reason,
        created=row.created,
        deleted=row.deleted,
        pruned=row.pruned,
    )
