"""
auth/tokens.py -- Token ids, password hashing, and input format checks.

Security design decisions:
  Token ids: n random bytes from SecureRandom, each mapped onto a 64-symbol
       URL-safe alphabet. 256 is a multiple of 64, so byte % 64 is unbiased and
       every symbol carries exactly 6 bits. The default 32-symbol id therefore
       has 192 bits of entropy -- brute-force is computationally infeasible.

  Passwords: bcrypt with a fixed, configurable cost factor. bcrypt is the
       right choice for low-entropy secrets because its cost factor makes
       brute-force expensive.

  Comparisons of secrets (elevation tokens, cron key) go through
       hmac.compare_digest so response time does not reveal how many leading
       characters matched.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hmac
import logging
import re

import bcrypt

from core.clock import SecureRandom

logger = logging.getLogger("keyhold.tokens")

SECURE_TOKEN_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz-"
MIN_TOKEN_LENGTH = 1
MAX_TOKEN_LENGTH = 256
DEFAULT_TOKEN_LENGTH = 32

_TOKEN_RE = re.compile(r"^[0-9A-Z_a-z-]{1,256}$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# bcrypt only looks at the first 72 bytes of a password.
_BCRYPT_MAX_BYTES = 72


# ---------------------------------------------------------------------------
# Token ids
# ---------------------------------------------------------------------------


def generate_secure_token(rng: SecureRandom, length: int = DEFAULT_TOKEN_LENGTH) -> str:
    """Return `length` symbols drawn from SECURE_TOKEN_ALPHABET.

    Out-of-range lengths are clamped to [1, 256] with a warning rather than
    raising: the caller asked for a token, and a clamped one is still secure.
    """
    if length < MIN_TOKEN_LENGTH:
        logger.warning("generate_secure_token: length must be at least %d, using %d", MIN_TOKEN_LENGTH, MIN_TOKEN_LENGTH)
        length = MIN_TOKEN_LENGTH
    if length > MAX_TOKEN_LENGTH:
        logger.warning("generate_secure_token: length must be at most %d, using %d", MAX_TOKEN_LENGTH, MAX_TOKEN_LENGTH)
        length = MAX_TOKEN_LENGTH
    raw = rng.bytes(length)
    size = len(SECURE_TOKEN_ALPHABET)
    return "".join(SECURE_TOKEN_ALPHABET[b % size] for b in raw)


def is_valid_token(token: object) -> bool:
    """Return True if token is a non-empty alphabet string of at most 256 symbols.

    Used as a cheap gate before any storage lookup so malformed input never
    reaches SQL.
    """
    if not isinstance(token, str):
        return False
    return _TOKEN_RE.fullmatch(token) is not None


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------


def is_valid_email(value: object) -> bool:
    """Loose shape check: something@something.tld with no whitespace."""
    if not isinstance(value, str) or not value:
        return False
    return _EMAIL_RE.fullmatch(value) is not None


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def _password_bytes(plain: str) -> bytes:
    # Current bcrypt releases raise on inputs over 72 bytes instead of
    # truncating. Truncate explicitly so hashing and verification agree.
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str, rounds: int = 10) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_password_bytes(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not plain or not hashed:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in storage. Treat as a mismatch, never as a crash.
        logger.warning("verify_password: stored hash is not a valid bcrypt hash")
        return False
