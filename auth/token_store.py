"""
auth/token_store.py -- Typed token CRUD over the single `tokens` table.

Four token kinds share one storage shape. The kind-specific payload is
marshalled to a JSON string on write and unmarshalled back into its frozen
dataclass on read (see auth.models.PAYLOAD_TYPES).

Read is tolerant, write is strict:
  - A stored payload that fails to parse (bad JSON, wrong shape, missing
    field) comes back as payload=None with a DEBUG log line. Corrupt stored
    data must never crash a request.
  - Writing a payload whose class does not belong to the token type raises
    TypeError. That is a programming error, never something user input can
    trigger.

Expiry: get() returns None once now >= expires. Expired rows stay in the
table until sweep_expired() removes them, or until the session resolver
purges one it encounters (include_expired=True).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from sqlalchemy import and_, select

from auth.models import PAYLOAD_TYPES, Token, TokenPayload, TokenType, payload_to_dict
from auth.store import Database, tokens
from auth.tokens import DEFAULT_TOKEN_LENGTH, generate_secure_token, is_valid_token
from core.clock import Clock, SecureRandom

logger = logging.getLogger("keyhold.tokens")


# ---------------------------------------------------------------------------
# Payload marshalling
# ---------------------------------------------------------------------------


def _marshal(token_type: TokenType, payload: Optional[TokenPayload]) -> str:
    if payload is None:
        return ""
    expected = PAYLOAD_TYPES[token_type]
    if not isinstance(payload, expected):
        raise TypeError(f"{type(payload).__name__} is not a valid payload for {token_type.value} tokens")
    return json.dumps(payload_to_dict(payload), separators=(",", ":"))


def _unmarshal(token_type: TokenType, raw: Optional[str]) -> Optional[TokenPayload]:
    if not raw:
        return None
    try:
        return PAYLOAD_TYPES[token_type].from_dict(json.loads(raw))
    except (ValueError, TypeError, KeyError, AttributeError) as exc:
        logger.debug("Unreadable %s token payload, treating as absent: %s", token_type.value, exc)
        return None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TokenStore:
    """Repository for Token entities.

    Usage:
        store = TokenStore(db, Clock(), SecureRandom())
        token = store.create(account.id, clock.now() + 15 * MINUTES, TokenType.LOGIN, LoginPayload(...))
        same = store.get(token.id, TokenType.LOGIN)
        store.delete(token.id, TokenType.LOGIN)
    """

    def __init__(self, db: Database, clock: Clock, rng: SecureRandom) -> None:
        self._db = db
        self._clock = clock
        self._rng = rng

    def create(
        self,
        account_id: str,
        expires_at: int,
        token_type: TokenType,
        payload: Optional[TokenPayload] = None,
        id_length: int = DEFAULT_TOKEN_LENGTH,
    ) -> Token:
        """Insert a new token and return it.

        Raises ValueError if expires_at is not after the creation time, and
        TypeError if the payload does not match the token type.
        """
        now = self._clock.now()
        if expires_at <= now:
            raise ValueError("Token expiry must be later than its creation time.")
        payload_str = _marshal(token_type, payload)
        token = Token(
            id=generate_secure_token(self._rng, id_length),
            created=now,
            expires=expires_at,
            account_id=account_id,
            type=token_type,
            payload=payload,
        )
        with self._db.connect() as conn:
            conn.execute(
                tokens.insert().values(
                    id=token.id,
                    created=token.created,
                    expires=token.expires,
                    accountId=token.account_id,
                    type=token.type.value,
                    payload=payload_str,
                )
            )
            conn.commit()
        return token

    def get(self, token_id: str, token_type: TokenType, include_expired: bool = False) -> Optional[Token]:
        """Look up a token by id and type. Returns None if unknown, malformed, or expired."""
        if not is_valid_token(token_id):
            return None
        with self._db.connect() as conn:
            row = conn.execute(
                tokens.select().where(and_(tokens.c.id == token_id, tokens.c.type == token_type.value))
            ).fetchone()
        if row is None:
            return None
        token = _row_to_token(row)
        if not include_expired and token.is_expired(self._clock.now()):
            return None
        return token

    def list_for_account(self, account_id: str, token_type: TokenType) -> list[Token]:
        """Return the unexpired tokens of one type for an account (oldest first)."""
        now = self._clock.now()
        with self._db.connect() as conn:
            rows = conn.execute(
                select(tokens)
                .where(
                    and_(
                        tokens.c.accountId == account_id,
                        tokens.c.type == token_type.value,
                        tokens.c.expires > now,
                    )
                )
                .order_by(tokens.c.created)
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def update_payload(self, token_id: str, token_type: TokenType, payload: Optional[TokenPayload]) -> bool:
        """Replace the stored payload. Returns True if a row was updated."""
        payload_str = _marshal(token_type, payload)
        with self._db.connect() as conn:
            result = conn.execute(
                tokens.update()
                .where(and_(tokens.c.id == token_id, tokens.c.type == token_type.value))
                .values(payload=payload_str)
            )
            conn.commit()
        return result.rowcount > 0

    def delete(self, token_id: str, token_type: TokenType) -> None:
        with self._db.connect() as conn:
            conn.execute(tokens.delete().where(and_(tokens.c.id == token_id, tokens.c.type == token_type.value)))
            conn.commit()

    def delete_for_account(self, account_id: str, token_type: TokenType) -> int:
        """Delete every token of one type for an account. Returns rows removed."""
        with self._db.connect() as conn:
            result = conn.execute(
                tokens.delete().where(and_(tokens.c.accountId == account_id, tokens.c.type == token_type.value))
            )
            conn.commit()
        return result.rowcount

    def sweep_expired(self, now: Optional[int] = None) -> int:
        """Delete all tokens with expires <= now. Returns number of rows removed."""
        cutoff = self._clock.now() if now is None else now
        with self._db.connect() as conn:
            result = conn.execute(tokens.delete().where(tokens.c.expires <= cutoff))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_token(row) -> Token:
    token_type = TokenType(row.type)
    return Token(
        id=row.id,
        created=row.created,
        expires=row.expires,
        account_id=row.accountId,
        type=token_type,
        payload=_unmarshal(token_type, row.payload),
    )
