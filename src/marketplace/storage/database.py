"""SQLite database with WAL mode and guarded transactions."""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


def utcnow() -> str:
    return datetime.now(UTC).isoformat()


class Database:
    """SQLite storage layer with WAL mode for the marketplace engine."""

    BUSY_TIMEOUT = 30.0  # seconds a writer waits for the lock

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or Path.home() / ".marketplace"
        self.db_path = self.data_dir / "data" / "marketplace.db"

    def _ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "data").mkdir(exist_ok=True)

    def _open(self, isolation_level: str | None = "") -> sqlite3.Connection:
        self._ensure_dirs()
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.BUSY_TIMEOUT,
            isolation_level=isolation_level,
            check_same_thread=False,
        )
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection; commits on success, rolls back on error."""
        conn = self._open()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Exclusive write transaction (BEGIN IMMEDIATE).

        Every read inside the block sees a state no other writer can change
        until the block exits, so read-check-write sequences are atomic.
        """
        conn = self._open(isolation_level=None)
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def ensure_tables(self) -> None:
        """Create all tables if they don't exist."""
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        """Execute a query and return results."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.fetchall()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS firms (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    verification_status TEXT NOT NULL DEFAULT 'PENDING',
    verified_at TEXT,
    commission_percent TEXT NOT NULL DEFAULT '0',
    independent_work_policy TEXT NOT NULL DEFAULT 'NO_INDEPENDENT_WORK',
    minimum_ca_required INTEGER,
    restricted_clients TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS providers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    specializations TEXT NOT NULL DEFAULT '[]',
    experience_years INTEGER NOT NULL DEFAULT 0,
    hourly_rate TEXT NOT NULL DEFAULT '0',
    verification_status TEXT NOT NULL DEFAULT 'PENDING',
    verified_at TEXT,
    reputation_score REAL NOT NULL DEFAULT 5.0,
    abandonment_count INTEGER NOT NULL DEFAULT 0,
    average_rating REAL NOT NULL DEFAULT 0.0,
    rating_count INTEGER NOT NULL DEFAULT 0,
    firm_id TEXT REFERENCES firms(id),
    max_capacity INTEGER NOT NULL DEFAULT 5,
    current_workload INTEGER NOT NULL DEFAULT 0,
    withholding_exempt INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    CHECK (reputation_score BETWEEN 0.0 AND 5.0),
    CHECK (average_rating BETWEEN 0.0 AND 5.0),
    CHECK (current_workload >= 0),
    CHECK (abandonment_count >= 0)
);

CREATE TABLE IF NOT EXISTS firm_memberships (
    firm_id TEXT NOT NULL REFERENCES firms(id),
    provider_id TEXT NOT NULL REFERENCES providers(id),
    role TEXT NOT NULL DEFAULT 'ASSOCIATE',
    independent_work_policy TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    joined_at TEXT NOT NULL,
    PRIMARY KEY (firm_id, provider_id)
);

CREATE TABLE IF NOT EXISTS independent_work_approvals (
    firm_id TEXT NOT NULL,
    provider_id TEXT NOT NULL,
    requester_id TEXT NOT NULL,
    approved_by TEXT NOT NULL,
    approved_at TEXT NOT NULL,
    PRIMARY KEY (firm_id, provider_id, requester_id)
);

CREATE TABLE IF NOT EXISTS service_requests (
    id TEXT PRIMARY KEY,
    requester_id TEXT NOT NULL,
    category TEXT NOT NULL,
    description TEXT NOT NULL,
    assignment_method TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    budget TEXT,
    deadline TEXT,
    allow_firm_assignment INTEGER NOT NULL DEFAULT 0,
    explicit_provider_id TEXT,
    explicit_firm_id TEXT,
    assigned_provider_id TEXT,
    assigned_firm_id TEXT,
    assigned_by TEXT,
    assignment_score REAL,
    excluded_provider_ids TEXT NOT NULL DEFAULT '[]',
    amount TEXT,
    cancellation_reason TEXT,
    cancelled_from TEXT,
    cancelled_by TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    accepted_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    cancelled_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_requests_status ON service_requests(status);
CREATE INDEX IF NOT EXISTS idx_requests_provider ON service_requests(assigned_provider_id);

CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    request_id TEXT UNIQUE NOT NULL REFERENCES service_requests(id),
    gross_amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    external_reference TEXT NOT NULL,
    capture_status TEXT NOT NULL DEFAULT 'CAPTURED',
    escrow_status TEXT NOT NULL DEFAULT 'HELD',
    captured_at TEXT NOT NULL,
    released_at TEXT,
    refunded_at TEXT
);

CREATE TABLE IF NOT EXISTS distributions (
    id TEXT PRIMARY KEY,
    payment_id TEXT UNIQUE NOT NULL REFERENCES payments(id),
    request_id TEXT NOT NULL,
    provider_id TEXT NOT NULL,
    firm_id TEXT,
    gross_amount TEXT NOT NULL,
    platform_fee TEXT NOT NULL,
    firm_commission TEXT NOT NULL,
    provider_net TEXT NOT NULL,
    withholding TEXT NOT NULL,
    net_payout TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS refunds (
    id TEXT PRIMARY KEY,
    payment_id TEXT UNIQUE NOT NULL REFERENCES payments(id),
    authorized_by TEXT NOT NULL,
    percentage TEXT NOT NULL,
    refund_amount TEXT NOT NULL,
    processing_fee TEXT NOT NULL,
    net_refund TEXT NOT NULL,
    retained_amount TEXT NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settlement_jobs (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    payment_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'QUEUED',
    attempts INTEGER NOT NULL DEFAULT 0,
    next_run_at REAL NOT NULL,
    last_error TEXT,
    queue TEXT NOT NULL DEFAULT 'settlement',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (kind, payment_id)
);

CREATE INDEX IF NOT EXISTS idx_jobs_due ON settlement_jobs(status, next_run_at);

CREATE TABLE IF NOT EXISTS lifecycle_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    subject_id TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""
