"""
api/routes/v1/account.py -- Account and session REST endpoints.

Routes:
  POST   /api/v1/account/signup                  -- create account; starts a session
  POST   /api/v1/account/login                   -- password login; starts a session
  POST   /api/v1/account/logout                  -- end this session; clears sid + priv
  POST   /api/v1/account/logout-all              -- end every session of the account
  GET    /api/v1/account/me                      -- identity, previous visit, flash (requires auth)
  GET    /api/v1/account/sessions                -- active sessions (requires auth)
  DELETE /api/v1/account/sessions/{id}           -- revoke one session (requires auth, ownership checked)
  POST   /api/v1/account/elevate                 -- re-authenticate; sets priv cookie (requires auth)
  GET    /api/v1/account/elevation               -- step-up status (requires auth)
  POST   /api/v1/account/change-password         -- requires elevation; new session starts elevated
  POST   /api/v1/account/change-email            -- requires elevation
  DELETE /api/v1/account                         -- requires elevation; tombstones the account
  GET    /api/v1/account/verified                -- requires a verified email address
  POST   /api/v1/account/request-verification    -- resend verification mail (requires auth)
  POST   /api/v1/account/verify-email            -- consume verify-email token (public)
  POST   /api/v1/account/reset-password/request  -- mail a reset link (public)
  POST   /api/v1/account/reset-password          -- consume reset token; starts a session (public)
  POST   /api/v1/account/login-link/request      -- mail a single-use login link (public)
  POST   /api/v1/account/login-link              -- consume login link; starts a session (public)

Security:
  Sensitive changes (password, email, deletion) need a live step-up: the
    session payload token and the `priv` cookie must match and be younger
    than the elevation TTL (require_elevation).
  Verified-only pages reject accounts whose email is unconfirmed
    (require_verified_email).
  Every session start first ends the session the client already presented,
    so a fixed session id is never upgraded into an authenticated one.
  Cache-Control: no-store on every response that sets a session cookie.
  IDOR guard: DELETE /sessions/{id} passes the caller's account id to
    SessionManager.revoke_session(), which refuses sessions of other accounts.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import (
    AccountResponse,
    ChangePasswordRequest,
    ElevationResponse,
    EmailRequest,
    FlashResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    PasswordRequest,
    ResetPasswordRequest,
    SessionResponse,
    SignupRequest,
    TokenRequest,
)
from auth.dependencies import (
    Services,
    add_cookies,
    get_current_account,
    get_services,
    require_elevation,
    require_verified_email,
    try_get_session,
)
from auth.models import Account
from auth.session import ELEVATION_COOKIE
from core.result import Err

router = APIRouter()

# Error code -> HTTP status. Codes not listed map to 400.
_STATUS = {
    "email_exists": 409,
    "email_in_use": 409,
    "already_verified": 409,
    "account_not_found": 404,
    "token_not_found": 404,
    "invalid_password": 400,
    "update_failed": 500,
    "error_creating_account": 500,
    "delete_failed": 500,
}

_USER_AGENT_MAX = 512


def _fail(result: Err, status_code: int | None = None) -> HTTPException:
    code = result.error.value
    return HTTPException(
        status_code=status_code or _STATUS.get(code, 400),
        detail={"code": code, "message": result.message},
    )


def _user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")[:_USER_AGENT_MAX]


def _start_session(request: Request, response: Response, services: Services, account: Account) -> None:
    """End the presented session (if any) and bind a fresh one to the client."""
    current = try_get_session(request)
    if current is not None:
        add_cookies(request, *services.sessions.logout(current))
    session = services.sessions.create_session(account.id, user_agent=_user_agent(request))
    add_cookies(request, services.sessions.session_cookie(session))
    request.state.session = session
    request.state.account = account
    response.headers["Cache-Control"] = "no-store"


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/account/signup", response_model=AccountResponse, status_code=201)
def signup(
    request: Request,
    response: Response,
    body: SignupRequest,
    services: Services = Depends(get_services),
) -> AccountResponse:
    result = services.accounts.signup(body.email, body.password)
    if not result.ok:
        raise _fail(result)
    _start_session(request, response, services, result.value)
    return AccountResponse.from_account(result.value)


@router.post("/account/login", response_model=AccountResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    services: Services = Depends(get_services),
) -> AccountResponse:
    """Authenticate with email and password; set the session cookie.

    Unknown email and wrong password are reported separately
    (account_not_found / invalid_password).
    """
    result = services.accounts.login(body.email, body.password)
    if not result.ok:
        raise _fail(result, 401 if result.error.value == "invalid_password" else None)
    _start_session(request, response, services, result.value)
    return AccountResponse.from_account(result.value)


@router.post("/account/logout", response_model=MessageResponse)
def logout(request: Request, services: Services = Depends(get_services)) -> MessageResponse:
    """End the current session. Succeeds without a session too."""
    session = try_get_session(request)
    if session is not None:
        add_cookies(request, *services.sessions.logout(session))
    return MessageResponse(message="Logged out.")


@router.post("/account/verify-email", response_model=AccountResponse)
def verify_email(body: TokenRequest, services: Services = Depends(get_services)) -> AccountResponse:
    result = services.accounts.verify_email(body.token)
    if not result.ok:
        raise _fail(result)
    return AccountResponse.from_account(result.value)


@router.post("/account/reset-password/request", response_model=MessageResponse)
def request_password_reset(
    request: Request,
    body: EmailRequest,
    services: Services = Depends(get_services),
) -> MessageResponse:
    result = services.accounts.request_password_reset(body.email, _user_agent(request))
    if not result.ok:
        raise _fail(result)
    return MessageResponse(message="A password reset link has been sent.")


@router.post("/account/reset-password", response_model=AccountResponse)
def reset_password(
    request: Request,
    response: Response,
    body: ResetPasswordRequest,
    services: Services = Depends(get_services),
) -> AccountResponse:
    result = services.accounts.reset_password(body.token, body.new_password)
    if not result.ok:
        raise _fail(result)
    _start_session(request, response, services, result.value)
    return AccountResponse.from_account(result.value)


@router.post("/account/login-link/request", response_model=MessageResponse)
def request_login_link(
    request: Request,
    body: EmailRequest,
    services: Services = Depends(get_services),
) -> MessageResponse:
    result = services.accounts.request_login_link(body.email, _user_agent(request))
    if not result.ok:
        raise _fail(result)
    return MessageResponse(message="A sign-in link has been sent.")


@router.post("/account/login-link", response_model=AccountResponse)
def login_with_link(
    request: Request,
    response: Response,
    body: TokenRequest,
    services: Services = Depends(get_services),
) -> AccountResponse:
    result = services.accounts.login_with_token(body.token)
    if not result.ok:
        raise _fail(result)
    _start_session(request, response, services, result.value)
    return AccountResponse.from_account(result.value)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/account/me", response_model=MeResponse)
def me(
    request: Request,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
) -> MeResponse:
    """Identity plus session state. Records activity and consumes the pending flash."""
    sessions = services.sessions
    session = sessions.touch_activity(try_get_session(request))
    session, flash = sessions.consume_flash(session)
    request.state.session = session
    return MeResponse(
        account=AccountResponse.from_account(account),
        previous_visit=session.payload.previous_visit if session.payload is not None else 0,
        elevation_remaining_ms=sessions.remaining_elevation(session),
        flash=FlashResponse(type=flash.type, message=flash.message) if flash is not None else None,
    )


@router.post("/account/logout-all", response_model=MessageResponse)
def logout_all(
    request: Request,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
) -> MessageResponse:
    count = services.directory.terminate_all_sessions(account.id)
    add_cookies(request, services.sessions.clear_session_cookie(), services.sessions.clear_elevation_cookie())
    return MessageResponse(message=f"Ended {count} session(s).")


@router.get("/account/sessions", response_model=list[SessionResponse])
def list_sessions(
    request: Request,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
) -> list[SessionResponse]:
    current = try_get_session(request)
    current_id = current.id if current is not None else None
    return [SessionResponse.from_token(t, current_id) for t in services.sessions.list_sessions(account.id)]


@router.delete("/account/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
) -> Response:
    """Revoke one session. Ownership is verified by the session manager [IDOR guard]."""
    if not services.sessions.revoke_session(account.id, session_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    current = try_get_session(request)
    if current is not None and current.id == session_id:
        add_cookies(request, services.sessions.clear_session_cookie(), services.sessions.clear_elevation_cookie())
    return Response(status_code=204)


@router.post("/account/elevate", response_model=ElevationResponse)
def elevate(
    request: Request,
    body: PasswordRequest,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
) -> ElevationResponse:
    """Confirm the password and open a step-up window for sensitive actions."""
    result = services.accounts.login(account.email, body.password)
    if not result.ok:
        raise _fail(result, 401)
    session, cookie = services.sessions.elevate_privilege(try_get_session(request))
    request.state.session = session
    add_cookies(request, cookie)
    return ElevationResponse(elevated=True, remaining_ms=services.sessions.remaining_elevation(session))


@router.get("/account/elevation", response_model=ElevationResponse)
def elevation_status(
    request: Request,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
) -> ElevationResponse:
    session = try_get_session(request)
    elevated = services.sessions.is_elevated(session, request.cookies.get(ELEVATION_COOKIE))
    return ElevationResponse(
        elevated=elevated,
        remaining_ms=services.sessions.remaining_elevation(session) if elevated else 0,
    )


@router.post("/account/request-verification", response_model=MessageResponse)
def request_verification(
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
) -> MessageResponse:
    result = services.accounts.request_verification_email(account.id)
    if not result.ok:
        raise _fail(result)
    return MessageResponse(message="A verification link has been sent.")


@router.get("/account/verified", response_model=MessageResponse)
def verified_only(account: Account = Depends(require_verified_email)) -> MessageResponse:
    """Page reserved for accounts with a confirmed email address."""
    return MessageResponse(message=f"Welcome, {account.email}. Your email address is verified.")


# ---------------------------------------------------------------------------
# Step-up protected endpoints
# ---------------------------------------------------------------------------


@router.post("/account/change-password", response_model=AccountResponse)
def change_password(
    request: Request,
    response: Response,
    body: ChangePasswordRequest,
    account: Account = Depends(require_elevation),
    services: Services = Depends(get_services),
) -> AccountResponse:
    """Set a new password. Every existing session ends; this client gets a fresh one.

    The fresh session starts elevated and gets a new `priv` cookie.
    """
    result = services.accounts.set_password(account, body.new_password)
    if not result.ok:
        raise _fail(result)
    # set_password already removed the presented session.
    request.state.session = None
    _start_session(request, response, services, result.value)
    session, cookie = services.sessions.elevate_privilege(request.state.session)
    add_cookies(request, cookie)
    request.state.session = services.sessions.set_flash(session, "success", "Your password has been changed.")
    return AccountResponse.from_account(result.value)


@router.post("/account/change-email", response_model=MessageResponse)
def change_email(
    request: Request,
    body: EmailRequest,
    account: Account = Depends(require_elevation),
    services: Services = Depends(get_services),
) -> MessageResponse:
    result = services.accounts.change_email(account.id, body.email)
    if not result.ok:
        raise _fail(result)
    services.sessions.set_flash(try_get_session(request), "info", "Please confirm your new email address.")
    return MessageResponse(message="Email changed. A verification link has been sent.")


@router.delete("/account", response_model=MessageResponse)
def delete_account(
    request: Request,
    account: Account = Depends(require_elevation),
    services: Services = Depends(get_services),
) -> MessageResponse:
    result = services.accounts.delete_account(account)
    if not result.ok:
        raise _fail(result)
    add_cookies(request, services.sessions.clear_session_cookie(), services.sessions.clear_elevation_cookie())
    return MessageResponse(message="Account deleted.")
