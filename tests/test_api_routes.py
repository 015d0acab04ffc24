"""
tests/test_api_routes.py -- Integration tests for the /api/v1 endpoints.

Covers:
  - GET /health is public and reports the version
  - signup / login set a lax httpOnly `sid` cookie and Cache-Control: no-store
  - GET /account/me: 401 without a session, identity + flash with one
  - Dead `sid` cookies (unknown, expired) are cleared on the response
  - Step-up: sensitive routes answer 403 elevation_required until /elevate
  - change-password ends every old session and issues a new, elevated one
  - GET /account/verified: 401 anonymous, 403 until the email is verified
  - DELETE /account/sessions/{id} refuses other accounts' sessions [IDOR guard]
  - logout clears both cookies
  - Admin routes: 401 anonymous, 403 for users, 200 for admins
  - Cron sweep: Bearer key required
  - Validation errors use the error envelope
"""

from __future__ import annotations

from auth.models import AuditEventType, Role, TokenType
from auth.session import ELEVATION_COOKIE, SESSION_COOKIE
from core.clock import DAYS, MINUTES

CRON_KEY = "test-cron-key-0123456789abcdef0123456789"
PASSWORD = "correct horse battery staple"


def _login(client, email="ada@example.com", password=PASSWORD):
    return client.post("/api/v1/account/login", json={"email": email, "password": password})


def _set_cookie_headers(resp) -> list[str]:
    return resp.headers.get_list("set-cookie")


# ---------------------------------------------------------------------------
# Public surface
# ---------------------------------------------------------------------------


def test_health_is_public(api_client):
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["version"]


def test_docs_require_session(api_client):
    client, _, _ = api_client
    resp = client.get("/docs")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_validation_error_envelope(api_client):
    client, _, _ = api_client
    resp = client.post("/api/v1/account/login", json={"email": "ada@example.com"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


# ---------------------------------------------------------------------------
# Signup and login
# ---------------------------------------------------------------------------


def test_signup_starts_session(api_client):
    client, services, mailer = api_client
    resp = client.post("/api/v1/account/signup", json={"email": "ada@example.com", "password": PASSWORD})
    assert resp.status_code == 201
    assert resp.json()["email"] == "ada@example.com"
    assert resp.headers["cache-control"] == "no-store"

    cookie = next(h for h in _set_cookie_headers(resp) if h.startswith(f"{SESSION_COOKIE}="))
    assert "HttpOnly" in cookie
    assert "SameSite=lax" in cookie
    assert client.cookies.get(SESSION_COOKIE)
    assert [to for to, _, _ in mailer.sent] == ["ada@example.com"]

    me = client.get("/api/v1/account/me")
    assert me.status_code == 200
    assert me.json()["account"]["email"] == "ada@example.com"


def test_signup_invalid_email(api_client):
    client, services, mailer = api_client
    resp = client.post("/api/v1/account/signup", json={"email": "not-an-email", "password": PASSWORD})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_email"
    assert client.cookies.get(SESSION_COOKIE) is None
    assert mailer.sent == []


def test_signup_duplicate_email_conflicts(api_client):
    client, services, _ = api_client
    services.directory.create("ada@example.com", PASSWORD)
    resp = client.post("/api/v1/account/signup", json={"email": "ADA@example.com", "password": PASSWORD})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "email_exists"


def test_login_errors(api_client):
    client, services, _ = api_client
    services.directory.create("ada@example.com", PASSWORD)

    wrong = _login(client, password="not the password")
    assert wrong.status_code == 401
    assert wrong.json()["error"]["code"] == "invalid_password"

    unknown = _login(client, email="ghost@example.com")
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "account_not_found"
    assert client.cookies.get(SESSION_COOKIE) is None


def test_login_replaces_presented_session(api_client):
    client, services, _ = api_client
    account = services.directory.create("ada@example.com", PASSWORD)
    assert _login(client).status_code == 200
    first = client.cookies.get(SESSION_COOKIE)

    assert _login(client).status_code == 200
    second = client.cookies.get(SESSION_COOKIE)
    assert second != first
    assert [s.id for s in services.sessions.list_sessions(account.id)] == [second]


# ---------------------------------------------------------------------------
# Session resolution
# ---------------------------------------------------------------------------


def test_me_requires_session(api_client):
    client, _, _ = api_client
    resp = client.get("/api/v1/account/me")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_unknown_session_cookie_is_cleared(api_client):
    client, _, _ = api_client
    client.cookies.set(SESSION_COOKIE, "A" * 32)
    resp = client.get("/api/v1/account/me")
    assert resp.status_code == 401
    assert any(h.startswith(f"{SESSION_COOKIE}=") and "Max-Age=0" in h for h in _set_cookie_headers(resp))


def test_expired_session_is_rejected_and_cleared(api_client, clock):
    client, services, _ = api_client
    services.directory.create("ada@example.com", PASSWORD)
    _login(client)
    clock.advance(30 * DAYS)
    resp = client.get("/api/v1/account/me")
    assert resp.status_code == 401
    assert client.cookies.get(SESSION_COOKIE) is None


def test_logout_clears_both_cookies(api_client):
    client, services, _ = api_client
    account = services.directory.create("ada@example.com", PASSWORD)
    _login(client)
    resp = client.post("/api/v1/account/logout")
    assert resp.status_code == 200
    cleared = [h.split("=", 1)[0] for h in _set_cookie_headers(resp) if "Max-Age=0" in h]
    assert set(cleared) == {SESSION_COOKIE, ELEVATION_COOKIE}
    assert services.sessions.list_sessions(account.id) == []
    assert client.get("/api/v1/account/me").status_code == 401


def test_logout_without_session(api_client):
    client, _, _ = api_client
    assert client.post("/api/v1/account/logout").status_code == 200


def test_logout_all(api_client):
    client, services, _ = api_client
    account = services.directory.create("ada@example.com", PASSWORD)
    services.sessions.create_session(account.id)
    _login(client)
    resp = client.post("/api/v1/account/logout-all")
    assert resp.json()["message"] == "Ended 2 session(s)."
    assert services.sessions.list_sessions(account.id) == []


# ---------------------------------------------------------------------------
# Sessions listing and revocation
# ---------------------------------------------------------------------------


def test_list_sessions_marks_current(api_client):
    client, services, _ = api_client
    account = services.directory.create("ada@example.com", PASSWORD)
    other = services.sessions.create_session(account.id, user_agent="phone")
    _login(client)
    body = client.get("/api/v1/account/sessions").json()
    assert {s["id"]: s["current"] for s in body} == {
        other.id: False,
        client.cookies.get(SESSION_COOKIE): True,
    }


def test_revoke_other_accounts_session_is_404(api_client):
    """IDOR guard: a session id belonging to someone else is not revocable."""
    client, services, _ = api_client
    services.directory.create("ada@example.com", PASSWORD)
    eve = services.directory.create("eve@example.com", PASSWORD)
    eve_session = services.sessions.create_session(eve.id)
    _login(client)

    resp = client.delete(f"/api/v1/account/sessions/{eve_session.id}")
    assert resp.status_code == 404
    assert services.sessions.resolve(eve_session.id).authenticated


def test_revoke_own_other_session(api_client):
    client, services, _ = api_client
    account = services.directory.create("ada@example.com", PASSWORD)
    other = services.sessions.create_session(account.id)
    _login(client)
    assert client.delete(f"/api/v1/account/sessions/{other.id}").status_code == 204
    assert not services.sessions.resolve(other.id).authenticated
    assert client.get("/api/v1/account/me").status_code == 200


# ---------------------------------------------------------------------------
# Step-up elevation
# ---------------------------------------------------------------------------


def test_sensitive_route_requires_elevation(api_client):
    client, services, _ = api_client
    services.directory.create("ada@example.com", PASSWORD)
    _login(client)
    resp = client.post("/api/v1/account/change-email", json={"email": "ada@new.example"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "elevation_required"


def test_elevate_with_wrong_password(api_client):
    client, services, _ = api_client
    services.directory.create("ada@example.com", PASSWORD)
    _login(client)
    resp = client.post("/api/v1/account/elevate", json={"password": "not the password"})
    assert resp.status_code == 401
    assert client.cookies.get(ELEVATION_COOKIE) is None
    assert client.get("/api/v1/account/elevation").json() == {"elevated": False, "remaining_ms": 0}


def test_elevation_window(api_client, clock):
    client, services, _ = api_client
    services.directory.create("ada@example.com", PASSWORD)
    _login(client)
    resp = client.post("/api/v1/account/elevate", json={"password": PASSWORD})
    assert resp.status_code == 200
    assert resp.json() == {"elevated": True, "remaining_ms": 10 * MINUTES}
    priv = next(h for h in _set_cookie_headers(resp) if h.startswith(f"{ELEVATION_COOKIE}="))
    assert "SameSite=strict" in priv
    assert "HttpOnly" in priv

    clock.advance(10 * MINUTES + 1)
    assert client.get("/api/v1/account/elevation").json()["elevated"] is False


def test_elevation_needs_priv_cookie(api_client):
    client, services, _ = api_client
    services.directory.create("ada@example.com", PASSWORD)
    _login(client)
    client.post("/api/v1/account/elevate", json={"password": PASSWORD})
    client.cookies.delete(ELEVATION_COOKIE)
    resp = client.post("/api/v1/account/change-email", json={"email": "ada@new.example"})
    assert resp.status_code == 403


def test_change_password_rotates_sessions(api_client):
    client, services, _ = api_client
    account = services.directory.create("ada@example.com", PASSWORD)
    elsewhere = services.sessions.create_session(account.id)
    _login(client)
    old_sid = client.cookies.get(SESSION_COOKIE)
    client.post("/api/v1/account/elevate", json={"password": PASSWORD})
    old_priv = client.cookies.get(ELEVATION_COOKIE)

    resp = client.post("/api/v1/account/change-password", json={"new_password": "a brand new passphrase"})
    assert resp.status_code == 200
    new_sid = client.cookies.get(SESSION_COOKIE)
    assert new_sid and new_sid != old_sid
    assert not services.sessions.resolve(old_sid).authenticated
    assert not services.sessions.resolve(elsewhere.id).authenticated
    new_priv = client.cookies.get(ELEVATION_COOKIE)
    assert new_priv and new_priv != old_priv
    assert client.get("/api/v1/account/elevation").json()["elevated"] is True

    me = client.get("/api/v1/account/me").json()
    assert me["flash"] == {"type": "success", "message": "Your password has been changed."}
    assert client.get("/api/v1/account/me").json()["flash"] is None
    assert _login(client, password="a brand new passphrase").status_code == 200


def test_change_password_rejects_short_password(api_client):
    client, services, _ = api_client
    services.directory.create("ada@example.com", PASSWORD)
    _login(client)
    client.post("/api/v1/account/elevate", json={"password": PASSWORD})
    resp = client.post("/api/v1/account/change-password", json={"new_password": "short"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_password"
    assert client.get("/api/v1/account/me").status_code == 200


def test_change_email_conflict(api_client):
    client, services, _ = api_client
    account = services.directory.create("ada@example.com", PASSWORD)
    services.directory.create("eve@example.com", PASSWORD)
    _login(client)
    client.post("/api/v1/account/elevate", json={"password": PASSWORD})
    resp = client.post("/api/v1/account/change-email", json={"email": "eve@example.com"})
    assert resp.status_code == 409
    assert services.directory.get_by_id(account.id).email == "ada@example.com"


def test_delete_account(api_client):
    client, services, _ = api_client
    account = services.directory.create("ada@example.com", PASSWORD)
    _login(client)
    client.post("/api/v1/account/elevate", json={"password": PASSWORD})
    resp = client.delete("/api/v1/account")
    assert resp.status_code == 200
    assert services.directory.get_by_id(account.id) is None
    assert services.directory.get_tombstone(account.id) is not None
    assert client.cookies.get(SESSION_COOKIE) is None
    assert client.get("/api/v1/account/me").status_code == 401


# ---------------------------------------------------------------------------
# Token flows
# ---------------------------------------------------------------------------


def test_verify_email_flow(api_client):
    client, services, mailer = api_client
    client.post("/api/v1/account/signup", json={"email": "ada@example.com", "password": PASSWORD})
    token = mailer.last_token()
    resp = client.post("/api/v1/account/verify-email", json={"token": token})
    assert resp.status_code == 200
    assert resp.json()["email_verified"] > 0

    again = client.post("/api/v1/account/verify-email", json={"token": token})
    assert again.status_code == 404
    assert again.json()["error"]["code"] == "token_not_found"
    assert client.post("/api/v1/account/request-verification").status_code == 409


def test_verified_page_requires_confirmed_email(api_client):
    client, _, mailer = api_client
    assert client.get("/api/v1/account/verified").status_code == 401

    client.post("/api/v1/account/signup", json={"email": "ada@example.com", "password": PASSWORD})
    resp = client.get("/api/v1/account/verified")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "email_unverified"

    client.post("/api/v1/account/verify-email", json={"token": mailer.last_token()})
    resp = client.get("/api/v1/account/verified")
    assert resp.status_code == 200
    assert "ada@example.com" in resp.json()["message"]


def test_password_reset_flow(api_client):
    client, services, mailer = api_client
    services.directory.create("ada@example.com", PASSWORD)
    assert client.post("/api/v1/account/reset-password/request", json={"email": "ada@example.com"}).status_code == 200
    token = mailer.last_token("ada@example.com")

    resp = client.post("/api/v1/account/reset-password", json={"token": token, "new_password": "a fresh passphrase"})
    assert resp.status_code == 200
    assert client.cookies.get(SESSION_COOKIE)
    assert client.get("/api/v1/account/me").status_code == 200


def test_login_link_is_single_use(api_client):
    client, services, mailer = api_client
    services.directory.create("ada@example.com", PASSWORD)
    client.post("/api/v1/account/login-link/request", json={"email": "ada@example.com"})
    token = mailer.last_token()

    assert client.post("/api/v1/account/login-link", json={"token": token}).status_code == 200
    assert client.get("/api/v1/account/me").status_code == 200
    assert client.post("/api/v1/account/login-link", json={"token": token}).status_code == 404


def test_malformed_token_is_400(api_client):
    client, _, _ = api_client
    resp = client.post("/api/v1/account/login-link", json={"token": "not a token!"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_token"


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


def test_admin_routes_require_admin(api_client):
    client, services, _ = api_client
    assert client.get("/api/v1/admin/accounts").status_code == 401
    services.directory.create("ada@example.com", PASSWORD)
    _login(client)
    resp = client.get("/api/v1/admin/accounts")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_admin_lists_accounts_and_events(api_client):
    client, services, _ = api_client
    ada = services.directory.create("ada@example.com", PASSWORD)
    services.directory.create("root@example.com", PASSWORD, role=Role.ADMIN)
    _login(client, password="wrong password here")
    _login(client, email="root@example.com")

    page = client.get("/api/v1/admin/accounts", params={"q": "ada"}).json()
    assert page["total"] == 1
    assert page["accounts"][0]["id"] == ada.id

    services.audit.drain()
    events = client.get(f"/api/v1/admin/accounts/{ada.id}/events").json()
    assert [e["type"] for e in events] == [AuditEventType.ACCOUNT_INVALID_PASSWORD.value]


def test_admin_reports_deleted_account(api_client):
    client, services, _ = api_client
    ada = services.directory.create("ada@example.com", PASSWORD)
    services.directory.create("root@example.com", PASSWORD, role=Role.ADMIN)
    services.directory.delete_and_tombstone(ada)
    _login(client, email="root@example.com")
    resp = client.get(f"/api/v1/admin/accounts/{ada.id}")
    assert resp.status_code == 404
    assert resp.json()["error"]["message"] == "Account was deleted."


# ---------------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------------


def test_cron_requires_key(api_client):
    client, _, _ = api_client
    assert client.post("/api/v1/cron/delete-expired-tokens").status_code == 401
    resp = client.post("/api/v1/cron/delete-expired-tokens", headers={"Authorization": "Bearer wrong"})
    assert resp.status_code == 401


def test_cron_sweeps_expired_tokens(api_client, clock):
    client, services, _ = api_client
    account = services.directory.create("ada@example.com", PASSWORD)
    services.accounts.request_login_link("ada@example.com")
    clock.advance(15 * MINUTES)
    resp = client.post("/api/v1/cron/delete-expired-tokens", headers={"Authorization": f"Bearer {CRON_KEY}"})
    assert resp.status_code == 200
    assert resp.json() == {"deleted": 1}
    assert services.accounts._tokens.list_for_account(account.id, TokenType.LOGIN) == []
