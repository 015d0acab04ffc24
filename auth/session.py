"""
auth/session.py -- Cookie-bound sessions, step-up elevation, activity, flash.

A session is a TokenType.SESSION token whose id travels in the `sid` cookie.
This module never touches an HTTP response directly: every operation that
needs the client's cookies to change returns CookieMutation values, and the
transport layer (auth/dependencies.py) applies them. That keeps the whole
session lifecycle testable without a web framework.

Cookies:
  sid   httpOnly, SameSite=Lax,    max_age = remaining session lifetime
  priv  httpOnly, SameSite=Strict, max_age = elevation TTL

Privilege elevation (step-up):
  After an explicit re-authentication, a fresh random token T is stored in
  the session payload together with the elevation time, AND sent to the
  client in the separate `priv` cookie. is_elevated() requires both halves to
  be present and equal (constant-time compare) and the elevation to be
  younger than the TTL. Leaking or fixing only one channel -- the session id
  or the priv cookie -- is not enough to pass a step-up check.

Payload updates are value-based: re-read the stored payload, build a new
frozen payload with exactly one change, persist the whole value. Two request
handlers holding the same session never share a mutable object.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from auth.accounts import AccountDirectory
from auth.models import FLASH_TYPES, Account, Flash, SessionPayload, Token, TokenType
from auth.token_store import TokenStore
from auth.tokens import constant_time_equals, generate_secure_token, is_valid_token
from core.clock import Clock, SecureRandom
from core.config import Settings

logger = logging.getLogger("keyhold.session")

SESSION_COOKIE = "sid"
ELEVATION_COOKIE = "priv"


# ---------------------------------------------------------------------------
# Cookie mutations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CookieMutation:
    """One Set-Cookie instruction for the transport layer.

    A clear is expressed as an empty value with max_age=0 and the same
    attributes the cookie was set with, so browsers match and drop it.
    """

    name: str
    value: str
    max_age: int
    same_site: str  # "lax" | "strict"
    http_only: bool = True
    secure: bool = False
    path: str = "/"

    @property
    def is_clear(self) -> bool:
        return self.max_age == 0


@dataclass(frozen=True)
class SessionResolution:
    """Outcome of resolving the `sid` cookie for one request."""

    session: Optional[Token] = None
    account: Optional[Account] = None
    cookies: list[CookieMutation] = field(default_factory=list)

    @property
    def authenticated(self) -> bool:
        return self.session is not None and self.account is not None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Session lifecycle on top of TokenStore.

    Usage:
        sessions = SessionManager(token_store, directory, settings, clock, rng)
        session = sessions.create_session(account.id, user_agent="curl/8")
        cookie = sessions.session_cookie(session)
        resolution = sessions.resolve(request.cookies.get("sid"))
    """

    def __init__(
        self,
        token_store: TokenStore,
        directory: AccountDirectory,
        settings: Settings,
        clock: Clock,
        rng: SecureRandom,
    ) -> None:
        self._tokens = token_store
        self._directory = directory
        self._settings = settings
        self._clock = clock
        self._rng = rng

    # ------------------------------------------------------------------
    # Creation and cookies
    # ------------------------------------------------------------------

    def create_session(self, account_id: str, user_agent: str = "") -> Token:
        expires = self._clock.now() + self._settings.session_timeout_ms
        return self._tokens.create(account_id, expires, TokenType.SESSION, SessionPayload(user_agent=user_agent))

    def session_cookie(self, session: Token) -> CookieMutation:
        """Cookie carrying the session id; max_age mirrors the token's remaining TTL."""
        remaining_ms = max(0, session.expires - self._clock.now())
        return CookieMutation(
            name=SESSION_COOKIE,
            value=session.id,
            max_age=remaining_ms // 1000,
            same_site="lax",
            secure=self._settings.secure_cookies,
        )

    def clear_session_cookie(self) -> CookieMutation:
        return CookieMutation(
            name=SESSION_COOKIE, value="", max_age=0, same_site="lax", secure=self._settings.secure_cookies
        )

    def clear_elevation_cookie(self) -> CookieMutation:
        return CookieMutation(
            name=ELEVATION_COOKIE, value="", max_age=0, same_site="strict", secure=self._settings.secure_cookies
        )

    # ------------------------------------------------------------------
    # Per-request resolution
    # ------------------------------------------------------------------

    def resolve(self, raw_cookie: Optional[str]) -> SessionResolution:
        """Resolve the `sid` cookie into (session, account) plus cookie mutations.

        Every failure path is unauthenticated and clears the stale cookie, so
        the client does not keep presenting a dead session id.
        """
        if not raw_cookie:
            return SessionResolution()

        clear = [self.clear_session_cookie()]
        if not is_valid_token(raw_cookie):
            return SessionResolution(cookies=clear)

        session = self._tokens.get(raw_cookie, TokenType.SESSION, include_expired=True)
        if session is None:
            return SessionResolution(cookies=clear)

        if session.is_expired(self._clock.now()):
            self._tokens.delete(session.id, TokenType.SESSION)
            return SessionResolution(cookies=clear)

        account = self._directory.get_by_id(session.account_id)
        if account is None:
            # Orphaned session: the account is gone. Purge the row.
            logger.info("Purging session %s... for missing account", session.id[:6])
            self._tokens.delete(session.id, TokenType.SESSION)
            return SessionResolution(cookies=clear)

        return SessionResolution(session=session, account=account)

    def logout(self, session: Token) -> list[CookieMutation]:
        self._tokens.delete(session.id, TokenType.SESSION)
        return [self.clear_session_cookie(), self.clear_elevation_cookie()]

    def list_sessions(self, account_id: str) -> list[Token]:
        return self._tokens.list_for_account(account_id, TokenType.SESSION)

    def revoke_session(self, account_id: str, session_id: str) -> bool:
        """Delete one session of account_id. Refuses ids owned by other accounts [IDOR guard]."""
        target = self._tokens.get(session_id, TokenType.SESSION)
        if target is None or target.account_id != account_id:
            return False
        self._tokens.delete(session_id, TokenType.SESSION)
        return True

    # ------------------------------------------------------------------
    # Privilege elevation
    # ------------------------------------------------------------------

    def elevate_privilege(self, session: Token) -> tuple[Token, CookieMutation]:
        """Start a step-up window. Call only after the user re-authenticated."""
        elevation_token = generate_secure_token(self._rng)
        now = self._clock.now()
        updated = self._update(
            session,
            lambda p: replace(p, privilege_elevation_token=elevation_token, privilege_elevated_at=now),
        )
        cookie = CookieMutation(
            name=ELEVATION_COOKIE,
            value=elevation_token,
            max_age=self._settings.privilege_elevation_timeout_seconds,
            same_site="strict",
            secure=self._settings.secure_cookies,
        )
        return updated, cookie

    def is_elevated(self, session: Optional[Token], cookie_token: Optional[str]) -> bool:
        if session is None or session.payload is None:
            return False
        stored = session.payload.privilege_elevation_token
        if not stored or not cookie_token:
            return False
        if not constant_time_equals(stored, cookie_token):
            return False
        elapsed = self._clock.now() - session.payload.privilege_elevated_at
        return elapsed <= self._settings.privilege_elevation_timeout_ms

    def remaining_elevation(self, session: Optional[Token]) -> int:
        """Milliseconds left in the step-up window, 0 if none."""
        if session is None or session.payload is None or not session.payload.privilege_elevation_token:
            return 0
        elapsed = self._clock.now() - session.payload.privilege_elevated_at
        return max(0, self._settings.privilege_elevation_timeout_ms - elapsed)

    def clear_elevation(self, session: Token) -> tuple[Token, CookieMutation]:
        updated = self._update(session, lambda p: replace(p, privilege_elevation_token=None, privilege_elevated_at=0))
        return updated, self.clear_elevation_cookie()

    # ------------------------------------------------------------------
    # Activity tracking
    # ------------------------------------------------------------------

    def touch_activity(self, session: Token) -> Token:
        """Record activity now; roll a stale last activity into previous_visit.

        previous_visit only moves when the gap since the last activity
        exceeds the inactivity window, so it answers "when was your last
        distinct visit" rather than "when was your last request".
        """
        now = self._clock.now()
        refresh_ms = self._settings.inactivity_refresh_ms

        def _touch(payload: SessionPayload) -> SessionPayload:
            last = payload.last_activity
            if last > 0 and last < now - refresh_ms:
                payload = replace(payload, previous_visit=last)
            return replace(payload, last_activity=now)

        return self._update(session, _touch)

    # ------------------------------------------------------------------
    # Flash messages
    # ------------------------------------------------------------------

    def set_flash(self, session: Token, flash_type: str, message: str) -> Token:
        if flash_type not in FLASH_TYPES:
            raise ValueError(f"Unknown flash type {flash_type!r}")
        return self._update(session, lambda p: replace(p, flash=Flash(type=flash_type, message=message)))

    def consume_flash(self, session: Token) -> tuple[Token, Optional[Flash]]:
        """Return the pending flash (if any) and remove it in the same step."""
        current = self._current(session)
        payload = current.payload or SessionPayload()
        if payload.flash is None:
            return current, None
        updated = self._persist(current, replace(payload, flash=None))
        return updated, payload.flash

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _current(self, session: Token) -> Token:
        # Prefer the stored value so a stale in-memory copy never overwrites
        # a change made by another request.
        return self._tokens.get(session.id, TokenType.SESSION, include_expired=True) or session

    def _update(self, session: Token, change: Callable[[SessionPayload], SessionPayload]) -> Token:
        current = self._current(session)
        return self._persist(current, change(current.payload or SessionPayload()))

    def _persist(self, session: Token, payload: SessionPayload) -> Token:
        if not self._tokens.update_payload(session.id, TokenType.SESSION, payload):
            logger.debug("Session %s... no longer stored; payload change not persisted", session.id[:6])
        return replace(session, payload=payload)
