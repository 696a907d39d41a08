"""Lifecycle event publication (outbox for the notification collaborator)."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Protocol

from marketplace.storage.database import Database, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LifecycleEvent:
    id: int
    event_type: str
    subject_id: str
    payload: dict[str, Any]
    created_at: str


class EventPublisher(Protocol):
    def publish(
        self,
        event_type: str,
        subject_id: str,
        payload: dict[str, Any],
        conn: sqlite3.Connection | None = None,
    ) -> None: ...


class EventLog:
    """
    Append-only outbox table.

    When ``conn`` is given the event is written inside the caller's
    transaction, so a rolled-back transition never leaves an event behind.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def publish(
        self,
        event_type: str,
        subject_id: str,
        payload: dict[str, Any],
        conn: sqlite3.Connection | None = None,
    ) -> None:
        params = (event_type, subject_id, json.dumps(payload, default=str), utcnow())
        sql = "INSERT INTO lifecycle_events (event_type, subject_id, payload, created_at) VALUES (?, ?, ?, ?)"
        if conn is not None:
            conn.execute(sql, params)
        else:
            with self.db.connect() as own:
                own.execute(sql, params)
        logger.debug("event %s %s", event_type, subject_id)

    def recent(self, limit: int = 50, subject_id: str | None = None) -> list[LifecycleEvent]:
        if subject_id:
            rows = self.db.execute(
                "SELECT * FROM lifecycle_events WHERE subject_id = ? ORDER BY id DESC LIMIT ?",
                (subject_id, limit),
            )
        else:
            rows = self.db.execute("SELECT * FROM lifecycle_events ORDER BY id DESC LIMIT ?", (limit,))
        return [
            LifecycleEvent(
                id=row["id"],
                event_type=row["event_type"],
                subject_id=row["subject_id"],
                payload=json.loads(row["payload"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]
