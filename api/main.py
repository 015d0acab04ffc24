"""
api/main.py -- FastAPI application entry point for keyhold.

Exposes the account and session flows over a JSON API. The HTTP layer owns no
authentication logic: it resolves the session cookie, calls the auth/
components, and maps their results onto responses and cookie mutations.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware   -- adds CORS headers for allowed browser origins
  2. log_requests     -- one access log line per request with latency
  3. bind_session     -- resolves `sid` into request.state and applies the
                         queued cookie mutations to the response

Lifespan builds the component graph from settings, starts the audit worker,
and on shutdown stops the worker and drains whatever is still queued.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.account import router as account_router
from api.routes.v1.admin import router as admin_router
from api.routes.v1.cron import router as cron_router
from auth.accounts import AccountDirectory
from auth.audit import AuditTrail, HandlerRegistry, failed_login_watch
from auth.dependencies import Services, apply_cookies, get_current_account
from auth.mailer import Mailer, build_mailer
from auth.models import Account, AuditEventType
from auth.passwords import BreachList, PasswordPolicyEngine
from auth.service import AccountService
from auth.session import SESSION_COOKIE, SessionManager
from auth.store import Database
from auth.token_store import TokenStore
from core.clock import Clock, SecureRandom
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keyhold.api")


# ---------------------------------------------------------------------------
# Component graph
# ---------------------------------------------------------------------------


def build_services(
    settings: Settings,
    db: Optional[Database] = None,
    clock: Optional[Clock] = None,
    rng: Optional[SecureRandom] = None,
    mailer: Optional[Mailer] = None,
) -> Services:
    """Wire every auth component from one Settings instance.

    Leaves first: storage, then repositories, then the service. Tests pass
    their own db/clock/mailer and get the same wiring as production.
    """
    db = db or Database(settings.db_url)
    clock = clock or Clock()
    rng = rng or SecureRandom()

    token_store = TokenStore(db, clock, rng)
    directory = AccountDirectory(db, token_store, clock, rng, bcrypt_rounds=settings.bcrypt_rounds)
    sessions = SessionManager(token_store, directory, settings, clock, rng)

    registry = HandlerRegistry()
    audit = AuditTrail(db, clock, registry)
    registry.register(AuditEventType.ACCOUNT_INVALID_PASSWORD, failed_login_watch(audit, clock))

    mailer = mailer or build_mailer(settings)
    accounts = AccountService(
        directory,
        token_store,
        PasswordPolicyEngine(BreachList(db)),
        audit,
        mailer,
        settings,
        clock,
    )
    return Services(
        settings=settings,
        db=db,
        directory=directory,
        sessions=sessions,
        accounts=accounts,
        audit=audit,
        mailer=mailer,
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- a missing CRON_API_KEY in production stops here.
      2. Component graph second -- creates the schema if needed.
      3. Audit worker last -- references services.audit.

    Shutdown cancels the worker, then drains the queue once more so events
    recorded by the last requests are persisted.
    """
    settings = get_settings()
    logger.info("keyhold API starting up (debug=%s)", settings.debug)
    services = build_services(settings)
    app.state.services = services
    app.state.audit_task = asyncio.create_task(services.audit.run(settings.audit_poll_interval_seconds))
    logger.info("Audit worker started (poll every %.1fs)", settings.audit_poll_interval_seconds)

    yield

    app.state.audit_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await app.state.audit_task
    flushed = services.audit.drain()
    services.mailer.close()
    services.db.close()
    logger.info("keyhold API shutdown complete (%d audit events flushed)", flushed)


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="keyhold API",
    description="Token-based authentication, sessions with step-up elevation, and account lifecycle.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below by authenticated routes.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# @app.middleware("http") functions wrap each other in reverse registration
# order: the last one registered runs first. bind_session is registered
# first so it sits innermost, closest to the routes.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def bind_session(request: Request, call_next):
    """Resolve the session cookie and apply cookie mutations to the response.

    The resolver's own mutations (clearing a dead `sid`) go first; mutations
    queued by the route follow, so a route that starts a new session wins.
    """
    sessions = request.app.state.services.sessions
    resolution = await run_in_threadpool(sessions.resolve, request.cookies.get(SESSION_COOKIE))
    request.state.session = resolution.session
    request.state.account = resolution.account
    request.state.cookies = list(resolution.cookies)
    response = await call_next(request)
    apply_cookies(response, request.state.cookies)
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. We capture wall-clock time
# before and after call_next so we can report latency on every response.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(account_router, prefix="/api/v1", tags=["Account"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(cron_router, prefix="/api/v1", tags=["Maintenance"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(account: Account = Depends(get_current_account)):
    """Swagger UI -- requires a session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="keyhold API")


@app.get("/redoc", include_in_schema=False)
async def redoc(account: Account = Depends(get_current_account)):
    """ReDoc UI -- requires a session."""
    return get_redoc_html(openapi_url="/openapi.json", title="keyhold API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code", "message"}. When
    detail is already a structured dict, use it directly as the error field
    rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
