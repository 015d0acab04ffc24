"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these classes own the domain shape.

Token payloads are a closed set of frozen dataclasses, one per TokenType.
Storage keeps a single opaque JSON string column; the mapping between the two
lives in PAYLOAD_TYPES so every token type has exactly one payload shape.
Payloads are treated as immutable values: callers build a new payload with
dataclasses.replace() and persist the whole value.

All timestamps are integer milliseconds since the epoch (core.clock.Clock).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from typing import Any, ClassVar, Optional, Union


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class TokenType(str, Enum):
    SESSION = "session"
    VERIFY_EMAIL = "verifyEmail"
    PASSWORD_RESET = "passwordReset"
    LOGIN = "login"


@dataclass
class Account:
    """A registered identity.

    email_verified is 0 while unverified and the verification timestamp
    afterwards. It only returns to 0 when the email address changes.
    updated stays 0 until the first update.
    """

    id: str
    email: str
    password: str  # bcrypt hash, never the plaintext
    created: int
    updated: int = 0
    email_verified: int = 0
    role: Role = Role.USER

    @property
    def is_verified(self) -> bool:
        return self.email_verified > 0

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass
class AccountPage:
    accounts: list[Account]
    total: int


@dataclass(frozen=True)
class Tombstone:
    """Permanent record that an account once existed."""

    id: str
    email: str
    reason: str
    created: int  # when the account was created
    deleted: int  # when the account was deleted
    pruned: int = 0  # when remaining data was pruned; 0 = not yet


# ---------------------------------------------------------------------------
# Token payloads
# ---------------------------------------------------------------------------

FLASH_TYPES = ("success", "error", "info")


@dataclass(frozen=True)
class Flash:
    type: str  # one of FLASH_TYPES
    message: str


@dataclass(frozen=True)
class SessionPayload:
    kind: ClassVar[TokenType] = TokenType.SESSION

    user_agent: str = ""
    last_activity: int = 0
    previous_visit: int = 0
    privilege_elevation_token: Optional[str] = None
    privilege_elevated_at: int = 0
    flash: Optional[Flash] = None

    @classmethod
    def from_dict(cls, data: dict) -> "SessionPayload":
        flash = data.get("flash")
        return cls(
            user_agent=str(data.get("user_agent") or ""),
            last_activity=int(data.get("last_activity") or 0),
            previous_visit=int(data.get("previous_visit") or 0),
            privilege_elevation_token=data.get("privilege_elevation_token") or None,
            privilege_elevated_at=int(data.get("privilege_elevated_at") or 0),
            flash=Flash(type=str(flash["type"]), message=str(flash["message"])) if flash else None,
        )


@dataclass(frozen=True)
class VerifyEmailPayload:
    kind: ClassVar[TokenType] = TokenType.VERIFY_EMAIL

    email: str

    @classmethod
    def from_dict(cls, data: dict) -> "VerifyEmailPayload":
        return cls(email=str(data["email"]))


@dataclass(frozen=True)
class PasswordResetPayload:
    kind: ClassVar[TokenType] = TokenType.PASSWORD_RESET

    verify_email: str
    user_agent: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "PasswordResetPayload":
        return cls(verify_email=str(data["verify_email"]), user_agent=str(data.get("user_agent") or ""))


@dataclass(frozen=True)
class LoginPayload:
    kind: ClassVar[TokenType] = TokenType.LOGIN

    verify_email: str
    user_agent: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "LoginPayload":
        return cls(verify_email=str(data["verify_email"]), user_agent=str(data.get("user_agent") or ""))


TokenPayload = Union[SessionPayload, VerifyEmailPayload, PasswordResetPayload, LoginPayload]

PAYLOAD_TYPES: dict[TokenType, type] = {
    TokenType.SESSION: SessionPayload,
    TokenType.VERIFY_EMAIL: VerifyEmailPayload,
    TokenType.PASSWORD_RESET: PasswordResetPayload,
    TokenType.LOGIN: LoginPayload,
}


def payload_to_dict(payload: TokenPayload) -> dict:
    return asdict(payload)


@dataclass(frozen=True)
class Token:
    """A typed security token. payload is None when absent or unreadable."""

    id: str
    created: int
    expires: int
    account_id: str
    type: TokenType
    payload: Optional[TokenPayload] = None

    def is_expired(self, now: int) -> bool:
        return now >= self.expires


# ---------------------------------------------------------------------------
# Audit events
# ---------------------------------------------------------------------------


class AuditLevel(IntEnum):
    OK = 0
    INFO = 1
    WARN = 2
    ERROR = 3
    CRITICAL = 4


class AuditEventType(str, Enum):
    # Security-relevant
    ACCOUNT_RESET_PASSWORD_REQUESTED = "account_reset_password_requested"
    ACCOUNT_PASSWORD_CHANGED = "account_password_changed"
    ACCOUNT_EMAIL_CHANGED = "account_email_changed"
    ACCOUNT_EMAIL_VERIFIED = "account_email_verified"
    ACCOUNT_LOGIN_FAILED = "account_login_failed"
    ACCOUNT_INVALID_PASSWORD = "account_invalid_password"
    ACCOUNT_LOGIN_LINK_REQUESTED = "account_login_link_requested"

    # Account lifecycle
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_CREATE_FAILED = "account_create_failed"
    ACCOUNT_DELETED = "account_deleted"
    ACCOUNT_DELETE_FAILED = "account_delete_failed"

    # System (no account)
    CRON_CLEANUP_COMPLETED = "cron_cleanup_completed"
    SYSTEM_ERROR = "system_error"


@dataclass
class AuditEvent:
    type: AuditEventType
    level: AuditLevel
    created: int
    account_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None  # assigned on persistence
