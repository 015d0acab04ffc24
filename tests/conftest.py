"""
tests/conftest.py -- Shared test fixtures for keyhold unit and integration tests.

This module provides:
  - ManualClock: a Clock the test advances by hand (no sleeping)
  - RecordingMailer: a Mailer that keeps every message for inspection
  - settings / clock / mailer / db / services: a fresh component graph per
    test over an in-memory SQLite database, bcrypt at the minimum cost
  - api_client: TestClient over the real FastAPI app with the lifespan
    patched to inject a test component graph

Design: API tests use named shared-memory SQLite URIs (not plain :memory:)
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG is set before any keyhold import so get_settings() auto-generates
CRON_API_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Optional

# CRITICAL: Set DEBUG before any keyhold import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from auth.dependencies import Services
from auth.mailer import Mailer
from auth.models import Account, Role
from auth.store import Database
from core.clock import Clock
from core.config import Settings

CRON_KEY = "test-cron-key-0123456789abcdef0123456789"
PASSWORD = "correct horse battery staple"
START_MS = 1_700_000_000_000

_TOKEN_IN_LINK = re.compile(r"token=([0-9A-Za-z_-]+)")


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class ManualClock(Clock):
    """Clock frozen at `start` until advance() is called."""

    def __init__(self, start: int = START_MS) -> None:
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, ms: int) -> None:
        self._now += ms


class RecordingMailer(Mailer):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))

    def last_token(self, to: Optional[str] = None) -> str:
        """Token id from the newest message (optionally to one recipient)."""
        for recipient, _subject, body in reversed(self.sent):
            if to is None or recipient == to:
                match = _TOKEN_IN_LINK.search(body)
                if match:
                    return match.group(1)
        raise AssertionError(f"no mail with a token sent to {to or 'anyone'}")


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(debug=True, bcrypt_rounds=4, cron_api_key=CRON_KEY, base_url="http://keyhold.test")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database("sqlite:///:memory:")
    yield database
    database.close()


@pytest.fixture
def services(settings, db, clock, mailer) -> Services:
    return build_services(settings, db=db, clock=clock, mailer=mailer)


@pytest.fixture
def make_account(services):
    """Factory: make_account(email, password=PASSWORD, role=Role.USER) -> Account."""

    def _make(email: str = "ada@example.com", password: Optional[str] = PASSWORD, role: Role = Role.USER) -> Account:
        return services.directory.create(email, password, role=role)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test graph into app.state. No audit worker is
    started; tests call services.audit.drain() when they inspect events.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        yield
        services.audit.drain()

    return test_lifespan


@pytest.fixture
def api_client(settings, clock, mailer) -> Generator[tuple[TestClient, Services, RecordingMailer], None, None]:
    """Yield (client, services, mailer) over an isolated shared-memory database.

    The TestClient keeps cookies between requests like a browser, so a
    login followed by a GET /me carries the `sid` cookie automatically.
    """
    db = Database(f"sqlite:///file:test_api_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    graph = build_services(settings, db=db, clock=clock, mailer=mailer)
    app.router.lifespan_context = _patch_lifespan(graph)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, graph, mailer

    db.close()
