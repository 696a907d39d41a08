"""Durable settlement job queue with bounded retry and a dead-letter state."""

from __future__ import annotations

import logging
import random
import sqlite3
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from marketplace.config import RetryPolicy
from marketplace.errors import NotFound, ValidationFailed
from marketplace.events import EventPublisher
from marketplace.storage.database import Database, utcnow

logger = logging.getLogger(__name__)


class JobKind(StrEnum):
    RELEASE = "RELEASE"
    REFUND = "REFUND"


class JobStatus(StrEnum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    DEAD_LETTER = "DEAD_LETTER"


@dataclass
class SettlementJob:
    id: str
    kind: JobKind
    payment_id: str
    status: JobStatus
    attempts: int
    next_run_at: float
    last_error: str | None
    queue: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "payment_id": self.payment_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "next_run_at": self.next_run_at,
            "last_error": self.last_error,
            "queue": self.queue,
        }


class SettlementQueue:
    """
    Jobs live in ``settlement_jobs``; one row per (kind, payment).

    A claimed job holds a lease. If the worker dies mid-job the lease expires
    and the job becomes claimable again, so a dispatched job always reaches
    SUCCEEDED or DEAD_LETTER.
    """

    QUEUE_NAME = "settlement"
    LEASE_SECONDS = 300.0

    def __init__(
        self,
        db: Database,
        policy: RetryPolicy | None = None,
        events: EventPublisher | None = None,
        clock: Callable[[], float] = time.time,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.db = db
        self.policy = policy or RetryPolicy()
        self.events = events
        self.clock = clock
        self.rand = rand

    def enqueue(
        self,
        kind: JobKind,
        payment_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> SettlementJob:
        """Queue a job; a second enqueue for the same (kind, payment) returns the first."""
        if conn is None:
            with self.db.transaction() as own:
                return self._enqueue(own, kind, payment_id)
        return self._enqueue(conn, kind, payment_id)

    def _enqueue(self, conn: sqlite3.Connection, kind: JobKind, payment_id: str) -> SettlementJob:
        now = utcnow()
        inserted = conn.execute(
            """
            INSERT INTO settlement_jobs
                (id, kind, payment_id, status, attempts, next_run_at, queue, created_at, updated_at)
            VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)
            ON CONFLICT(kind, payment_id) DO NOTHING
            """,
            (
                f"job-{uuid.uuid4().hex[:12]}",
                kind.value,
                payment_id,
                JobStatus.QUEUED.value,
                self.clock(),
                self.QUEUE_NAME,
                now,
                now,
            ),
        ).rowcount
        row = conn.execute(
            "SELECT * FROM settlement_jobs WHERE kind = ? AND payment_id = ?",
            (kind.value, payment_id),
        ).fetchone()
        if inserted:
            logger.info("queued %s job for %s", kind.value, payment_id)
        return _row_to_job(row)

    def claim_due(self, limit: int = 10) -> list[SettlementJob]:
        """Lease up to ``limit`` due jobs and count the attempt."""
        now = self.clock()
        claimed: list[SettlementJob] = []
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM settlement_jobs
                WHERE status IN (?, ?) AND next_run_at <= ?
                ORDER BY next_run_at, created_at
                LIMIT ?
                """,
                (JobStatus.QUEUED.value, JobStatus.RUNNING.value, now, limit),
            ).fetchall()
            for row in rows:
                if row["status"] == JobStatus.RUNNING.value:
                    logger.warning("lease expired on job %s, reclaiming", row["id"])
                conn.execute(
                    """
                    UPDATE settlement_jobs
                    SET status = ?, attempts = attempts + 1, next_run_at = ?, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        JobStatus.RUNNING.value,
                        now + self.LEASE_SECONDS,
                        utcnow(),
                        row["id"],
                        row["status"],
                    ),
                )
                claimed.append(self._get(conn, row["id"]))
        return claimed

    def mark_succeeded(self, job_id: str) -> SettlementJob:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE settlement_jobs SET status = ?, last_error = NULL, updated_at = ? WHERE id = ?",
                (JobStatus.SUCCEEDED.value, utcnow(), job_id),
            )
            job = self._get(conn, job_id)
        logger.info(
            "%s job %s for %s succeeded after %d attempt(s)", job.kind.value, job.id, job.payment_id, job.attempts
        )
        return job

    def mark_failed(self, job_id: str, error: str, retryable: bool = True) -> SettlementJob:
        """Schedule a retry with backoff, or dead-letter when not retryable or out of attempts."""
        with self.db.transaction() as conn:
            job = self._get(conn, job_id)
            if not retryable or self.policy.exhausted(job.attempts):
                conn.execute(
                    """
                    UPDATE settlement_jobs
                    SET status = ?, last_error = ?, queue = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (JobStatus.DEAD_LETTER.value, error, self.policy.dead_letter_queue, utcnow(), job_id),
                )
                if self.events is not None:
                    self.events.publish(
                        "settlement.dead_lettered",
                        job.payment_id,
                        {"job_id": job_id, "kind": job.kind.value, "attempts": job.attempts, "error": error},
                        conn=conn,
                    )
                job = self._get(conn, job_id)
                logger.error(
                    "%s job %s for %s dead-lettered after %d attempt(s): %s",
                    job.kind.value,
                    job_id,
                    job.payment_id,
                    job.attempts,
                    error,
                )
                return job

            delay = self.policy.delay_for(job.attempts, self.rand)
            conn.execute(
                """
                UPDATE settlement_jobs
                SET status = ?, last_error = ?, next_run_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (JobStatus.QUEUED.value, error, self.clock() + delay, utcnow(), job_id),
            )
            job = self._get(conn, job_id)
        logger.warning(
            "%s job %s attempt %d/%d failed, retry in %.1fs: %s",
            job.kind.value,
            job_id,
            job.attempts,
            self.policy.max_attempts,
            delay,
            error,
        )
        return job

    def requeue(self, job_id: str) -> SettlementJob:
        """Operator action: give a dead-lettered job a fresh set of attempts."""
        with self.db.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE settlement_jobs
                SET status = ?, attempts = 0, next_run_at = ?, queue = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    JobStatus.QUEUED.value,
                    self.clock(),
                    self.QUEUE_NAME,
                    utcnow(),
                    job_id,
                    JobStatus.DEAD_LETTER.value,
                ),
            ).rowcount
            job = self._get(conn, job_id)
            if not updated:
                raise ValidationFailed(f"job {job_id} is {job.status.value}, only DEAD_LETTER jobs can be requeued")
        logger.info("requeued %s job %s", job.kind.value, job_id)
        return job

    def get(self, job_id: str) -> SettlementJob:
        with self.db.connect() as conn:
            return self._get(conn, job_id)

    def dead_letters(self) -> list[SettlementJob]:
        return self.list_jobs(JobStatus.DEAD_LETTER)

    def list_jobs(self, status: JobStatus | None = None) -> list[SettlementJob]:
        if status is None:
            rows = self.db.execute("SELECT * FROM settlement_jobs ORDER BY created_at")
        else:
            rows = self.db.execute(
                "SELECT * FROM settlement_jobs WHERE status = ? ORDER BY created_at", (status.value,)
            )
        return [_row_to_job(row) for row in rows]

    @staticmethod
    def _get(conn: sqlite3.Connection, job_id: str) -> SettlementJob:
        row = conn.execute("SELECT * FROM settlement_jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise NotFound(f"job {job_id} not found")
        return _row_to_job(row)


def _row_to_job(row: Any) -> SettlementJob:
    return SettlementJob(
        id=row["id"],
        kind=JobKind(row["kind"]),
        payment_id=row["payment_id"],
        status=JobStatus(row["status"]),
        attempts=row["attempts"],
        next_run_at=row["next_run_at"],
        last_error=row["last_error"],
        queue=row["queue"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
