"""
core/clock.py -- Injectable time and randomness sources.

Every expiry decision in auth/ goes through Clock.now() so tests can drive
session, elevation, and token lifetimes with a manual clock instead of
sleeping. SecureRandom is the single source of bytes for token ids.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import secrets
import time


class Clock:
    """Wall clock in integer milliseconds since the epoch."""

    def now(self) -> int:
        return int(time.time() * 1000)


class SecureRandom:
    """Cryptographically secure byte source backed by the OS CSPRNG."""

    def bytes(self, n: int) -> bytes:
        return secrets.token_bytes(n)


# ---------------------------------------------------------------------------
# Duration helpers (milliseconds)
# ---------------------------------------------------------------------------

SECONDS = 1000
MINUTES = 60 * SECONDS
HOURS = 60 * MINUTES
DAYS = 24 * HOURS
