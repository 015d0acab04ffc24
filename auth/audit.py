"""
auth/audit.py -- Append-only audit trail decoupled from the request path.

record() does two things:
  1. Writes one log line immediately, synchronously. This is the durability
     floor: even if everything after it fails, the operational log has the
     event.
  2. Puts the event on an outbound queue. A worker (run(), started by the
     application lifespan) drains the queue: it persists each event row and
     then calls the handlers registered for that event type.

Nothing after step 1 can fail the caller. A persistence error is logged and
the event is skipped; a handler error is logged and the remaining handlers
still run. Queued events are never cancelled -- shutdown drains whatever is
left.

Handlers are registered on an explicit HandlerRegistry built at startup and
passed in, so there is no module-level table and initialization order is
visible in one place.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
from typing import Any, Callable, Optional

from sqlalchemy import and_, func, select

from auth.models import AuditEvent, AuditEventType, AuditLevel
from auth.store import Database, audit_events
from core.clock import Clock

logger = logging.getLogger("keyhold.audit")

Handler = Callable[[AuditEvent], None]

_LOG_LEVELS: dict[AuditLevel, int] = {
    AuditLevel.OK: logging.INFO,
    AuditLevel.INFO: logging.INFO,
    AuditLevel.WARN: logging.WARNING,
    AuditLevel.ERROR: logging.ERROR,
    AuditLevel.CRITICAL: logging.CRITICAL,
}

DEFAULT_PAGE_SIZE = 50


class HandlerRegistry:
    """Type-keyed reactions to audit events (e.g. brute-force counters).

    Usage:
        registry = HandlerRegistry()
        trail = AuditTrail(db, clock, registry)
        registry.register(AuditEventType.ACCOUNT_INVALID_PASSWORD, failed_login_watch(trail, clock))
    """

    def __init__(self) -> None:
        self._handlers: dict[AuditEventType, list[Handler]] = {}

    def register(self, event_type: AuditEventType, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def handlers_for(self, event_type: AuditEventType) -> tuple[Handler, ...]:
        return tuple(self._handlers.get(event_type, ()))


class AuditTrail:
    def __init__(self, db: Database, clock: Clock, registry: Optional[HandlerRegistry] = None) -> None:
        self._db = db
        self._clock = clock
        self._registry = registry or HandlerRegistry()
        self._queue: "queue.SimpleQueue[AuditEvent]" = queue.SimpleQueue()
        self._drain_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def record(
        self,
        event_type: AuditEventType,
        account_id: Optional[str],
        level: AuditLevel,
        data: Optional[dict[str, Any]] = None,
    ) -> AuditEvent:
        """Log the event now and queue it for persistence and handlers."""
        event = AuditEvent(
            type=event_type,
            level=level,
            created=self._clock.now(),
            account_id=account_id,
            data=dict(data or {}),
        )
        prefix = f"[audit] [{level.name.lower()}]" if level >= AuditLevel.WARN else "[audit]"
        logger.log(_LOG_LEVELS[level], "%s %s account=%s data=%r", prefix, event_type.value, account_id, event.data)
        self._queue.put(event)
        return event

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> int:
        """Persist and dispatch every queued event. Returns events processed."""
        processed = 0
        with self._drain_lock:
            while True:
                try:
                    event = self._queue.get_nowait()
                except queue.Empty:
                    return processed
                processed += 1
                try:
                    event.id = self._persist(event)
                except Exception:
                    logger.exception("[audit] Failed to persist %s", event.type.value)
                    continue
                self._dispatch(event)

    async def run(self, poll_interval: float = 0.5) -> None:
        """Drain the queue forever. Started as an asyncio task by the lifespan.

        Each drain runs in a worker thread so slow handlers and database
        writes never stall the event loop. A drain already in flight when the
        task is cancelled finishes in its thread; the lifespan's final drain()
        waits for it on the drain lock.
        """
        while True:
            await asyncio.to_thread(self.drain)
            await asyncio.sleep(poll_interval)

    def _persist(self, event: AuditEvent) -> int:
        with self._db.connect() as conn:
            result = conn.execute(
                audit_events.insert().values(
                    accountId=event.account_id,
                    type=event.type.value,
                    level=int(event.level),
                    data=json.dumps(event.data, default=str),
                    created=event.created,
                )
            )
            conn.commit()
        return result.inserted_primary_key[0]

    def _dispatch(self, event: AuditEvent) -> None:
        for handler in self._registry.handlers_for(event.type):
            try:
                handler(event)
            except Exception:
                logger.exception("[audit] Handler error for %s", event.type.value)

    # ------------------------------------------------------------------
    # Query API (admin dashboard)
    # ------------------------------------------------------------------

    def query_for_account(
        self, account_id: str, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> list[AuditEvent]:
        """Events for one account, newest first."""
        return self._query(audit_events.c.accountId == account_id, limit, offset)

    def query_system(self, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> list[AuditEvent]:
        """Events without an account, newest first."""
        return self._query(audit_events.c.accountId.is_(None), limit, offset)

    def count_recent(self, event_type: AuditEventType, account_id: Optional[str], since: int) -> int:
        """Count events of a type for an account (or system-wide when None) created after `since`."""
        owner = audit_events.c.accountId.is_(None) if account_id is None else audit_events.c.accountId == account_id
        stmt = (
            select(func.count())
            .select_from(audit_events)
            .where(and_(audit_events.c.type == event_type.value, owner, audit_events.c.created > since))
        )
        with self._db.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    def _query(self, condition, limit: int, offset: int) -> list[AuditEvent]:
        stmt = (
            audit_events.select()
            .where(condition)
            .order_by(audit_events.c.created.desc(), audit_events.c.id.desc())
            .limit(max(0, limit))
            .offset(max(0, offset))
        )
        with self._db.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_event(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_event(row) -> AuditEvent:
    try:
        data = json.loads(row.data) if row.data else {}
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    return AuditEvent(
        id=row.id,
        account_id=row.accountId,
        type=AuditEventType(row.type),
        level=AuditLevel(row.level),
        data=data,
        created=row.created,
    )


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


def failed_login_watch(trail: AuditTrail, clock: Clock, threshold: int = 5, window_ms: int = 15 * 60 * 1000) -> Handler:
    """Handler that warns when one account collects repeated wrong passwords.

    Register for ACCOUNT_INVALID_PASSWORD. It only logs; blocking is left to
    the deployment (rate limiting is not done here).
    """

    def _check(event: AuditEvent) -> None:
        if event.account_id is None:
            return
        failures = trail.count_recent(event.type, event.account_id, clock.now() - window_ms)
        if failures >= threshold:
            logger.warning(
                "[audit] [warn] %d failed logins for account=%s in the last %d minutes",
                failures,
                event.account_id,
                window_ms // 60000,
            )

    return _check
