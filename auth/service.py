"""
auth/service.py -- Account flows: signup, login, credentials, email, deletion.

Pattern: Service layer. AccountService orchestrates the repositories
(AccountDirectory, TokenStore), the PasswordPolicyEngine, the AuditTrail and
the Mailer. It never raises for an expected failure: every flow returns
Ok(value) or Err(error, message) where error is a member of the flow's
str Enum below. The transport layer maps those to status codes.

Error taxonomy:
  validation      -- invalid_email / invalid_password / trivial_password
  not found       -- token_not_found covers unknown AND expired tokens; the
                     caller never learns which
  state conflict  -- email_exists / email_in_use
  persistence     -- update_failed / error_creating_account / delete_failed,
                     always with an ERROR audit event
  security        -- invalid_password on login, with a WARN audit event

login() and request_password_reset() return account_not_found for unknown
addresses. That reveals whether an address is registered; it is kept that way
so users get a useful answer.

Sessions are not created here. login(), reset_password() and
login_with_token() return the account and the caller issues the session via
SessionManager, after set_password() has already terminated the old ones.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.accounts import AccountDirectory
from auth.audit import AuditTrail
from auth.mailer import Mailer, login_link_message, password_reset_message, redact_email, verify_email_message
from auth.models import (
    Account,
    AuditEventType,
    AuditLevel,
    LoginPayload,
    PasswordResetPayload,
    Token,
    TokenType,
    Tombstone,
    VerifyEmailPayload,
)
from auth.passwords import TRIVIAL_PASSWORD, PasswordPolicyEngine
from auth.token_store import TokenStore
from auth.tokens import is_valid_email, is_valid_token, verify_password
from core.clock import Clock
from core.config import Settings
from core.result import Err, Ok, Result

logger = logging.getLogger("keyhold.service")


# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------


class SignupError(str, Enum):
    INVALID_EMAIL = "invalid_email"
    EMAIL_EXISTS = "email_exists"
    INVALID_PASSWORD = "invalid_password"
    TRIVIAL_PASSWORD = "trivial_password"
    ERROR_CREATING_ACCOUNT = "error_creating_account"


class LoginError(str, Enum):
    INVALID_EMAIL = "invalid_email"
    ACCOUNT_NOT_FOUND = "account_not_found"
    INVALID_PASSWORD = "invalid_password"


class SetPasswordError(str, Enum):
    INVALID_PASSWORD = "invalid_password"
    TRIVIAL_PASSWORD = "trivial_password"
    UPDATE_FAILED = "update_failed"


class ChangeEmailError(str, Enum):
    INVALID_EMAIL = "invalid_email"
    EMAIL_IN_USE = "email_in_use"
    ACCOUNT_NOT_FOUND = "account_not_found"
    UPDATE_FAILED = "update_failed"


class VerificationRequestError(str, Enum):
    ACCOUNT_NOT_FOUND = "account_not_found"
    ALREADY_VERIFIED = "already_verified"


class VerifyEmailError(str, Enum):
    INVALID_TOKEN = "invalid_token"
    TOKEN_NOT_FOUND = "token_not_found"
    ACCOUNT_NOT_FOUND = "account_not_found"
    UPDATE_FAILED = "update_failed"


class TokenRequestError(str, Enum):
    """Failures of request_password_reset() and request_login_link()."""

    INVALID_EMAIL = "invalid_email"
    ACCOUNT_NOT_FOUND = "account_not_found"


class ResetPasswordError(str, Enum):
    INVALID_TOKEN = "invalid_token"
    TOKEN_NOT_FOUND = "token_not_found"
    ACCOUNT_NOT_FOUND = "account_not_found"
    INVALID_PASSWORD = "invalid_password"
    TRIVIAL_PASSWORD = "trivial_password"
    UPDATE_FAILED = "update_failed"


class LoginTokenError(str, Enum):
    INVALID_TOKEN = "invalid_token"
    TOKEN_NOT_FOUND = "token_not_found"
    ACCOUNT_NOT_FOUND = "account_not_found"


class DeleteAccountError(str, Enum):
    DELETE_FAILED = "delete_failed"


_INVALID_EMAIL_MSG = "Please enter a valid email address."
_INVALID_PASSWORD_MSG = "Passwords must be at least 8 characters long."
_TRIVIAL_PASSWORD_MSG = "This password appears in known breach lists. Please choose another."
_INVALID_TOKEN_MSG = "The link is malformed."
_TOKEN_NOT_FOUND_MSG = "The link is invalid or has expired."
_ACCOUNT_NOT_FOUND_MSG = "No account exists with this email address."
_UPDATE_FAILED_MSG = "Something went wrong while saving your changes. Please try again."


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AccountService:
    """Account lifecycle flows on top of the auth components.

    Usage:
        service = AccountService(directory, token_store, policy, audit, mailer, settings, clock)
        result = service.signup("ada@example.com", "correct horse battery")
        if result.ok:
            session = sessions.create_session(result.value.id)
    """

    def __init__(
        self,
        directory: AccountDirectory,
        token_store: TokenStore,
        policy: PasswordPolicyEngine,
        audit: AuditTrail,
        mailer: Mailer,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self._directory = directory
        self._tokens = token_store
        self._policy = policy
        self._audit = audit
        self._mailer = mailer
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Signup and login
    # ------------------------------------------------------------------

    def signup(self, email: str, password: Optional[str] = None) -> Result[Account, SignupError]:
        """Create an account and send the verification mail.

        Without a password the account gets a throwaway credential and the
        user signs in through a login link or a password reset.
        """
        email = (email or "").strip()
        if not is_valid_email(email):
            return Err(SignupError.INVALID_EMAIL, _INVALID_EMAIL_MSG)
        if self._directory.get_by_email(email) is not None:
            return Err(SignupError.EMAIL_EXISTS, "An account with this email address already exists.")
        if password:
            problem = self._policy.check(password)
            if problem is not None:
                if problem == TRIVIAL_PASSWORD:
                    return Err(SignupError.TRIVIAL_PASSWORD, _TRIVIAL_PASSWORD_MSG)
                return Err(SignupError.INVALID_PASSWORD, _INVALID_PASSWORD_MSG)
        else:
            password = None

        try:
            account = self._directory.create(email, password)
        except IntegrityError:
            # Lost a race with a concurrent signup for the same address.
            return Err(SignupError.EMAIL_EXISTS, "An account with this email address already exists.")
        except SQLAlchemyError:
            logger.exception("Account creation failed for %s", redact_email(email))
            self._audit.record(
                AuditEventType.ACCOUNT_CREATE_FAILED,
                None,
                AuditLevel.ERROR,
                {"message": "Account creation failed", "email": redact_email(email)},
            )
            return Err(SignupError.ERROR_CREATING_ACCOUNT, "The account could not be created. Please try again.")

        self._audit.record(
            AuditEventType.ACCOUNT_CREATED,
            account.id,
            AuditLevel.OK,
            {"message": "Account created", "with_password": password is not None},
        )
        self._send_verification(account)
        return Ok(account)

    def login(self, email: str, password: str) -> Result[Account, LoginError]:
        email = (email or "").strip()
        if not is_valid_email(email):
            return Err(LoginError.INVALID_EMAIL, _INVALID_EMAIL_MSG)
        account = self._directory.get_by_email(email)
        if account is None:
            self._audit.record(
                AuditEventType.ACCOUNT_LOGIN_FAILED,
                None,
                AuditLevel.INFO,
                {"message": "Login for unknown email", "email": redact_email(email)},
            )
            return Err(LoginError.ACCOUNT_NOT_FOUND, _ACCOUNT_NOT_FOUND_MSG)
        if not verify_password(password or "", account.password):
            self._audit.record(
                AuditEventType.ACCOUNT_INVALID_PASSWORD,
                account.id,
                AuditLevel.WARN,
                {"message": "Invalid password"},
            )
            return Err(LoginError.INVALID_PASSWORD, "The password is incorrect.")
        return Ok(account)

    # ------------------------------------------------------------------
    # Credentials and email
    # ------------------------------------------------------------------

    def set_password(self, account: Account, new_password: str) -> Result[Account, SetPasswordError]:
        """Validate, rehash, and terminate every session of the account.

        After success no session issued before the change is valid. The
        caller issues a fresh one for the current client.
        """
        problem = self._policy.check(new_password)
        if problem is not None:
            if problem == TRIVIAL_PASSWORD:
                return Err(SetPasswordError.TRIVIAL_PASSWORD, _TRIVIAL_PASSWORD_MSG)
            return Err(SetPasswordError.INVALID_PASSWORD, _INVALID_PASSWORD_MSG)

        try:
            updated = self._directory.update_password(account.id, new_password)
        except SQLAlchemyError:
            logger.exception("Password update failed for account %s", account.id)
            updated = False
        if not updated:
            self._audit.record(
                AuditEventType.SYSTEM_ERROR,
                account.id,
                AuditLevel.ERROR,
                {"message": "Password update failed"},
            )
            return Err(SetPasswordError.UPDATE_FAILED, _UPDATE_FAILED_MSG)

        try:
            terminated = self._directory.terminate_all_sessions(account.id)
        except SQLAlchemyError:
            logger.exception("Session termination failed for account %s", account.id)
            self._audit.record(
                AuditEventType.SYSTEM_ERROR,
                account.id,
                AuditLevel.ERROR,
                {"message": "Password changed but sessions could not be terminated"},
            )
            return Err(SetPasswordError.UPDATE_FAILED, _UPDATE_FAILED_MSG)
        self._audit.record(
            AuditEventType.ACCOUNT_PASSWORD_CHANGED,
            account.id,
            AuditLevel.OK,
            {"message": "Password changed", "sessions_terminated": terminated},
        )
        return Ok(self._directory.get_by_id(account.id) or account)

    def change_email(self, account_id: str, new_email: str) -> Result[None, ChangeEmailError]:
        """Move the account to a new address. It is unverified until confirmed again."""
        new_email = (new_email or "").strip()
        if not is_valid_email(new_email):
            return Err(ChangeEmailError.INVALID_EMAIL, _INVALID_EMAIL_MSG)
        account = self._directory.get_by_id(account_id)
        if account is None:
            return Err(ChangeEmailError.ACCOUNT_NOT_FOUND, "The account no longer exists.")
        holder = self._directory.get_by_email(new_email)
        if holder is not None and holder.id != account.id:
            return Err(ChangeEmailError.EMAIL_IN_USE, "This email address is already in use.")

        changed = replace(account, email=new_email, email_verified=0)
        try:
            saved = self._directory.update(changed)
        except IntegrityError:
            return Err(ChangeEmailError.EMAIL_IN_USE, "This email address is already in use.")
        except SQLAlchemyError:
            logger.exception("Email update failed for account %s", account.id)
            saved = False
        if not saved:
            self._audit.record(
                AuditEventType.SYSTEM_ERROR,
                account.id,
                AuditLevel.ERROR,
                {"message": "Email update failed"},
            )
            return Err(ChangeEmailError.UPDATE_FAILED, _UPDATE_FAILED_MSG)

        self._send_verification(changed)
        self._audit.record(
            AuditEventType.ACCOUNT_EMAIL_CHANGED,
            account.id,
            AuditLevel.OK,
            {"message": "Email changed", "from": account.email, "to": new_email},
        )
        return Ok(None)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def request_verification_email(self, account_id: str) -> Result[Token, VerificationRequestError]:
        account = self._directory.get_by_id(account_id)
        if account is None:
            return Err(VerificationRequestError.ACCOUNT_NOT_FOUND, "The account no longer exists.")
        if account.is_verified:
            return Err(VerificationRequestError.ALREADY_VERIFIED, "This email address is already verified.")
        return Ok(self._send_verification(account))

    def verify_email(self, token_id: str) -> Result[Account, VerifyEmailError]:
        """Consume a verify-email token.

        A token issued for an address the account has since moved away from
        is stale and treated like an unknown one.
        """
        if not is_valid_token(token_id):
            return Err(VerifyEmailError.INVALID_TOKEN, _INVALID_TOKEN_MSG)
        token = self._tokens.get(token_id, TokenType.VERIFY_EMAIL)
        if token is None or token.payload is None:
            return Err(VerifyEmailError.TOKEN_NOT_FOUND, _TOKEN_NOT_FOUND_MSG)

        account = self._directory.get_by_id(token.account_id)
        if account is None:
            self._tokens.delete(token.id, TokenType.VERIFY_EMAIL)
            return Err(VerifyEmailError.ACCOUNT_NOT_FOUND, "The account no longer exists.")
        if not _same_email(token.payload.email, account.email):
            self._tokens.delete(token.id, TokenType.VERIFY_EMAIL)
            return Err(VerifyEmailError.TOKEN_NOT_FOUND, _TOKEN_NOT_FOUND_MSG)

        if not account.is_verified and not self._mark_verified(account):
            return Err(VerifyEmailError.UPDATE_FAILED, _UPDATE_FAILED_MSG)
        self._tokens.delete(token.id, TokenType.VERIFY_EMAIL)
        return Ok(account)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, user_agent: str = "") -> Result[Token, TokenRequestError]:
        account = self._lookup_for_token(email)
        if not isinstance(account, Account):
            return account
        token = self._tokens.create(
            account.id,
            self._clock.now() + self._settings.password_reset_timeout_ms,
            TokenType.PASSWORD_RESET,
            PasswordResetPayload(verify_email=account.email, user_agent=user_agent),
        )
        self._mail(account.email, password_reset_message(self._settings.base_url, token.id))
        self._audit.record(
            AuditEventType.ACCOUNT_RESET_PASSWORD_REQUESTED,
            account.id,
            AuditLevel.INFO,
            {"message": "Password reset requested", "user_agent": user_agent},
        )
        return Ok(token)

    def reset_password(self, token_id: str, new_password: str) -> Result[Account, ResetPasswordError]:
        """Set a new password through a reset token.

        The token survives a rejected password so the user can retry with
        the same link. It is deleted once the password is set. Receiving the
        mail proves ownership of the address, so a matching address is
        marked verified.
        """
        if not is_valid_token(token_id):
            return Err(ResetPasswordError.INVALID_TOKEN, _INVALID_TOKEN_MSG)
        token = self._tokens.get(token_id, TokenType.PASSWORD_RESET)
        if token is None:
            return Err(ResetPasswordError.TOKEN_NOT_FOUND, _TOKEN_NOT_FOUND_MSG)
        account = self._directory.get_by_id(token.account_id)
        if account is None:
            self._tokens.delete(token.id, TokenType.PASSWORD_RESET)
            return Err(ResetPasswordError.ACCOUNT_NOT_FOUND, "The account no longer exists.")

        result = self.set_password(account, new_password)
        if not result.ok:
            return Err(ResetPasswordError(result.error.value), result.message)
        self._tokens.delete(token.id, TokenType.PASSWORD_RESET)

        account = result.value
        if token.payload is not None and _same_email(token.payload.verify_email, account.email):
            if not account.is_verified:
                self._mark_verified(account)
        return Ok(account)

    # ------------------------------------------------------------------
    # Login links
    # ------------------------------------------------------------------

    def request_login_link(self, email: str, user_agent: str = "") -> Result[Token, TokenRequestError]:
        account = self._lookup_for_token(email)
        if not isinstance(account, Account):
            return account
        token = self._tokens.create(
            account.id,
            self._clock.now() + self._settings.login_token_timeout_ms,
            TokenType.LOGIN,
            LoginPayload(verify_email=account.email, user_agent=user_agent),
        )
        self._mail(account.email, login_link_message(self._settings.base_url, token.id))
        self._audit.record(
            AuditEventType.ACCOUNT_LOGIN_LINK_REQUESTED,
            account.id,
            AuditLevel.INFO,
            {"message": "Login link requested", "user_agent": user_agent},
        )
        return Ok(token)

    def login_with_token(self, token_id: str) -> Result[Account, LoginTokenError]:
        """Consume a login link. The token is deleted on first use, even if the account is gone."""
        if not is_valid_token(token_id):
            return Err(LoginTokenError.INVALID_TOKEN, _INVALID_TOKEN_MSG)
        token = self._tokens.get(token_id, TokenType.LOGIN)
        if token is None:
            return Err(LoginTokenError.TOKEN_NOT_FOUND, _TOKEN_NOT_FOUND_MSG)
        self._tokens.delete(token.id, TokenType.LOGIN)

        account = self._directory.get_by_id(token.account_id)
        if account is None:
            return Err(LoginTokenError.ACCOUNT_NOT_FOUND, "The account no longer exists.")
        if token.payload is not None and _same_email(token.payload.verify_email, account.email):
            if not account.is_verified:
                self._mark_verified(account)
        return Ok(account)

    # ------------------------------------------------------------------
    # Deletion and maintenance
    # ------------------------------------------------------------------

    def delete_account(self, account: Account) -> Result[Tombstone, DeleteAccountError]:
        tombstone = self._directory.delete_and_tombstone(account)
        if tombstone is None:
            self._audit.record(
                AuditEventType.ACCOUNT_DELETE_FAILED,
                account.id,
                AuditLevel.ERROR,
                {"message": "Account deletion failed"},
            )
            return Err(DeleteAccountError.DELETE_FAILED, "The account could not be deleted. Please try again.")

        removed = sum(self._tokens.delete_for_account(account.id, t) for t in TokenType)
        self._audit.record(
            AuditEventType.ACCOUNT_DELETED,
            account.id,
            AuditLevel.OK,
            {"message": "Account deleted", "reason": tombstone.reason, "tokens_removed": removed},
        )
        return Ok(tombstone)

    def sweep_expired_tokens(self) -> int:
        deleted = self._tokens.sweep_expired(self._clock.now())
        self._audit.record(
            AuditEventType.CRON_CLEANUP_COMPLETED,
            None,
            AuditLevel.INFO,
            {"message": "Expired tokens deleted", "deleted": deleted},
        )
        return deleted

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _lookup_for_token(self, email: str):
        """Account for a token request, or the Err to return."""
        email = (email or "").strip()
        if not is_valid_email(email):
            return Err(TokenRequestError.INVALID_EMAIL, _INVALID_EMAIL_MSG)
        account = self._directory.get_by_email(email)
        if account is None:
            return Err(TokenRequestError.ACCOUNT_NOT_FOUND, _ACCOUNT_NOT_FOUND_MSG)
        return account

    def _send_verification(self, account: Account) -> Token:
        token = self._tokens.create(
            account.id,
            self._clock.now() + self._settings.verify_email_timeout_ms,
            TokenType.VERIFY_EMAIL,
            VerifyEmailPayload(email=account.email),
        )
        self._mail(account.email, verify_email_message(self._settings.base_url, token.id))
        return token

    def _mark_verified(self, account: Account) -> bool:
        account.email_verified = self._clock.now()
        try:
            saved = self._directory.update(account)
        except SQLAlchemyError:
            logger.exception("Could not mark account %s verified", account.id)
            saved = False
        if not saved:
            account.email_verified = 0
            self._audit.record(
                AuditEventType.SYSTEM_ERROR,
                account.id,
                AuditLevel.ERROR,
                {"message": "Email verification update failed"},
            )
            return False
        self._audit.record(
            AuditEventType.ACCOUNT_EMAIL_VERIFIED,
            account.id,
            AuditLevel.INFO,
            {"message": "Email verified", "email": account.email},
        )
        return True

    def _mail(self, to: str, message: tuple[str, str]) -> None:
        subject, body = message
        try:
            self._mailer.send(to, subject, body)
        except Exception:
            logger.exception("Mailer failed for %s (%s)", redact_email(to), subject)


def _same_email(a: str, b: str) -> bool:
    return a.strip().lower() == b.strip().lower()
