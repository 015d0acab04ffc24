"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

The session-binding middleware in api/main.py resolves the `sid` cookie once
per request through SessionManager.resolve() and stores the outcome on
request.state:

  request.state.session   Token | None
  request.state.account   Account | None
  request.state.cookies   list[CookieMutation] -- applied to the response in
                          order after the route returns; routes append their
                          own mutations (login, logout, elevate) to the list

get_current_account() raises HTTP 401 if the request is not authenticated.
require_admin() wraps it and raises HTTP 403 if the role is not admin.
require_elevation() wraps it and raises HTTP 403 `elevation_required` unless
the request carries a live step-up (session payload + `priv` cookie).
require_verified_email() wraps it and raises HTTP 403 `email_unverified` until
the account has confirmed its email address.

Layer rule: may import from fastapi (Depends/HTTPException/Request) because
this module is part of the FastAPI dependency injection system. No imports
from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, Response

from auth.accounts import AccountDirectory
from auth.audit import AuditTrail
from auth.mailer import Mailer
from auth.models import Account, Token
from auth.service import AccountService
from auth.session import ELEVATION_COOKIE, CookieMutation, SessionManager
from auth.store import Database
from core.config import Settings


@dataclass
class Services:
    """The component graph built by the lifespan, as seen by route handlers."""

    settings: Settings
    db: Database
    directory: AccountDirectory
    sessions: SessionManager
    accounts: AccountService
    audit: AuditTrail
    mailer: Mailer


def get_services(request: Request) -> Services:
    return request.app.state.services


def apply_cookies(response: Response, mutations: list[CookieMutation]) -> None:
    """Write CookieMutations as Set-Cookie headers, in order.

    A clear is sent as an expired cookie with the same name, path and flags
    so the browser matches and drops it.
    """
    for m in mutations:
        if m.is_clear:
            response.delete_cookie(
                m.name,
                path=m.path,
                secure=m.secure,
                httponly=m.http_only,
                samesite=m.same_site,
            )
        else:
            response.set_cookie(
                m.name,
                m.value,
                max_age=m.max_age,
                path=m.path,
                secure=m.secure,
                httponly=m.http_only,
                samesite=m.same_site,
            )


def add_cookies(request: Request, *mutations: CookieMutation) -> None:
    """Queue cookie mutations for the session middleware to apply."""
    request.state.cookies.extend(mutations)


def try_get_session(request: Request) -> Optional[Token]:
    return getattr(request.state, "session", None)


def try_get_current_account(request: Request) -> Optional[Account]:
    """Return the account bound by the session middleware, or None. Never raises."""
    return getattr(request.state, "account", None)


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None or try_get_session(request) is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return account


def require_admin(request: Request) -> Account:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    account = get_current_account(request)
    if not account.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return account


def require_elevation(request: Request) -> Account:
    """Require a live privilege elevation. Raises HTTP 401 / HTTP 403.

    Both halves must be present: the token stored in the session payload and
    the `priv` cookie. Clients get 403 elevation_required and are expected to
    POST /account/elevate with their password, then retry.
    """
    account = get_current_account(request)
    sessions = get_services(request).sessions
    if not sessions.is_elevated(try_get_session(request), request.cookies.get(ELEVATION_COOKIE)):
        raise HTTPException(
            status_code=403,
            detail={"code": "elevation_required", "message": "Please confirm your password to continue."},
        )
    return account


def require_verified_email(request: Request) -> Account:
    """Require a confirmed email address. Raises HTTP 401 / HTTP 403."""
    account = get_current_account(request)
    if not account.is_verified:
        raise HTTPException(
            status_code=403,
            detail={"code": "email_unverified", "message": "Please verify your email address to continue."},
        )
    return account
