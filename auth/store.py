"""
auth/store.py -- SQLAlchemy Core schema and the injectable storage handle.

Pattern: one Database object per process (or per test) owns the engine and
the schema. Every repository-style component (TokenStore, AccountDirectory,
AuditTrail, BreachList) receives it at construction. There is no module-level
connection, so a test can build an isolated in-memory Database and nothing
leaks between runs.

Security:
  All queries use bound parameters. No f-strings in SQL.

  accounts.email uses the SQLite NOCASE collation, so both the UNIQUE
  constraint and equality lookups are case-insensitive. "A@x.io" and
  "a@x.io" cannot both be registered.

DB path: keyhold.db at the repository root unless DB_URL says otherwise.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Connection, Engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("created", BigInteger, nullable=False),
    Column("updated", BigInteger, nullable=False, server_default="0"),
    Column("email", String(255, collation="NOCASE"), nullable=False, unique=True),
    Column("password", Text, nullable=False),  # bcrypt hash
    Column("emailVerified", BigInteger, nullable=False, server_default="0"),
    Column("role", String(16), nullable=False, server_default="user"),
)

tokens = Table(
    "tokens",
    metadata,
    Column("id", String(256), primary_key=True),
    Column("created", BigInteger, nullable=False),
    Column("expires", BigInteger, nullable=False, index=True),
    Column("accountId", String(32), nullable=False, index=True),
    Column("type", String(32), nullable=False),
    Column("payload", Text, nullable=False, server_default=""),  # JSON, "" = no payload
)

tombstones = Table(
    "tombstones",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255)),
    Column("reason", String(64)),
    Column("created", BigInteger, nullable=False),
    Column("deleted", BigInteger, nullable=False),
    Column("pruned", BigInteger, nullable=False, server_default="0"),
)

audit_events = Table(
    "audit_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("accountId", String(32), index=True),  # NULL = system event
    Column("type", String(64), nullable=False),
    Column("level", Integer, nullable=False),
    Column("data", Text, nullable=False, server_default="{}"),  # JSON object
    Column("created", BigInteger, nullable=False, index=True),
)

# Breach corpus, lowercased. Filled by an external bulk loader.
trivial_passwords = Table(
    "trivial_passwords",
    metadata,
    Column("password", String(255), primary_key=True),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Storage handle
# ---------------------------------------------------------------------------


class Database:
    """Engine + schema. Pass one instance to every component.

    Usage:
        db = Database("sqlite:///keyhold.db")
        token_store = TokenStore(db, clock, rng)
        ...
        db.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    def connect(self) -> Connection:
        return self.engine.connect()

    def begin(self):
        """Open a connection inside one transaction.

        Commits when the with-block exits cleanly, rolls back if it raises.
        Use for multi-statement operations that must be all-or-nothing.
        """
        return self.engine.begin()

    def close(self) -> None:
        self.engine.dispose()
