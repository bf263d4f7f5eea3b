"""Durable storage for the gate: one SQLite file, three append-mostly tables.

- usage_events:    metering log, appended by the usage writer pool
- gate_decisions:  audit facts, appended by SqliteAuditSink
- subscriptions:   billing state, written by the billing collaborator and
                   only read by the gate

The usage tracker reads and writes from its own worker threads, so every
thread gets its own connection; ``close()`` closes all of them.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path


class Database:
    """Per-thread SQLite connections over one WAL-mode file.

    Reads run concurrently; writes are serialized by a process-wide lock so
    a busy usage writer pool never trips ``database is locked``.
    """

    def __init__(self, db_path: str | Path, timeout: float = 5.0) -> None:
        self._db_path = str(db_path)
        self._timeout = timeout
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._open: set[sqlite3.Connection] = set()
        self._open_lock = threading.Lock()

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        with self._open_lock:
            if conn is not None and conn in self._open:
                return conn
            conn = sqlite3.connect(self._db_path, timeout=self._timeout, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.row_factory = sqlite3.Row
            self._open.add(conn)
        self._local.conn = conn
        return conn

    def fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        return self._conn().execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self._conn().execute(sql, params).fetchall()

    def write(self, sql: str, params: tuple = ()) -> None:
        """Run one statement and commit it."""
        with self._write_lock:
            conn = self._conn()
            conn.execute(sql, params)
            conn.commit()

    def migrate(self, version: int, script: str) -> None:
        """Apply one schema migration and record *version* in a single transaction."""
        with self._write_lock:
            self._conn().executescript(
                f"BEGIN;\n{script}\nUPDATE schema_version SET version = {int(version)};\nCOMMIT;"
            )

    def close(self) -> None:
        """Close every connection opened by any thread. Later calls reconnect."""
        with self._open_lock:
            conns, self._open = self._open, set()
        for conn in conns:
            conn.close()


MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        );
        INSERT INTO schema_version (version) VALUES (0);

        CREATE TABLE IF NOT EXISTS usage_events (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            record_id       TEXT UNIQUE NOT NULL,
            principal_id    TEXT NOT NULL,
            event_timestamp TEXT NOT NULL,
            weight          INTEGER NOT NULL,
            endpoint        TEXT NOT NULL DEFAULT 'api'
        );

        CREATE INDEX IF NOT EXISTS idx_usage_events_principal_ts
            ON usage_events(principal_id, event_timestamp);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS gate_decisions (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            gate_id      TEXT UNIQUE NOT NULL,
            kind         TEXT NOT NULL,
            passed       INTEGER NOT NULL,
            reason       TEXT NOT NULL,
            principal_id TEXT NOT NULL,
            plan_id      TEXT NOT NULL,
            timestamp    TEXT NOT NULL,
            metadata     TEXT NOT NULL DEFAULT '{}'
        );

        CREATE INDEX IF NOT EXISTS idx_gate_decisions_principal
            ON gate_decisions(principal_id, timestamp);
        """,
    ),
    (
        3,
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            principal_id TEXT NOT NULL,
            plan_id      TEXT NOT NULL,
            status       TEXT NOT NULL,
            period_start TEXT NOT NULL,
            period_end   TEXT NOT NULL,
            created_at   TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_subscriptions_principal
            ON subscriptions(principal_id, created_at);
        """,
    ),
]


def get_schema_version(db: Database) -> int:
    """Return the current schema version, or 0 if uninitialized."""
    try:
        row = db.fetchone("SELECT version FROM schema_version")
    except sqlite3.OperationalError:
        return 0
    return int(row["version"]) if row else 0


def run_migrations(db: Database) -> int:
    """Bring *db* up to the newest schema version and return it.

    Each migration commits together with its version bump, so an interrupted
    run resumes at the first migration that did not land.
    """
    current = get_schema_version(db)
    for version, sql in MIGRATIONS:
        if version <= current:
            continue
        db.migrate(version, sql)
    return get_schema_version(db)


def open_database(db_path: str | Path, timeout: float = 5.0) -> Database:
    """Open (creating if needed) a gate database and bring its schema up to date."""
    db = Database(db_path, timeout=timeout)
    run_migrations(db)
    return db
