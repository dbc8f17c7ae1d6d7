"""
HOA Dues Engine -- Dispatch Event Bus

Publish side: ``EventPublisher.publish(subject, event_type, data)``.  The
payload must be a JSON-serializable mapping; anything else is rejected
before it is stored.

Two implementations:
    InMemoryEventBus   list-backed, for tests and dry runs
    OutboxEventBus     SQLite outbox table, drained by ``consume``

Outbox lifecycle:

    pending --handler ok--> delivered
       |
       +--handler raised--> pending (attempt_count += 1, next_attempt_at pushed back)
                              |
                              +--attempt_count >= max_attempts--> parked

A handler that raises is the signal to retry, unless the exception sets
``retryable = False``; those events are parked on the first failure.
Parked events stay in the table for an operator to inspect and requeue.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

DATA_VERSION = "1.0"

STATUS_PENDING = "pending"
STATUS_DELIVERED = "delivered"
STATUS_PARKED = "parked"

DEFAULT_BACKOFF_STEPS = (30, 120, 600)


@dataclass(frozen=True)
class PublishedEvent:
    event_id: str
    subject: str
    event_type: str
    data: dict[str, Any]
    data_version: str = DATA_VERSION
    created_at: str = ""
    attempt_count: int = 0


@dataclass
class ConsumeReport:
    """Outcome of one ``consume`` pass."""
    delivered: int = 0
    retried: int = 0
    parked: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.delivered + self.retried + self.parked


Handler = Callable[[PublishedEvent], Any]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def validate_event(subject: str, event_type: str, data: Any) -> str:
    """Check an event before publishing; return its JSON payload."""
    if not subject or not isinstance(subject, str):
        raise ValueError("subject must be a non-empty string")
    if not event_type or not isinstance(event_type, str):
        raise ValueError("event_type must be a non-empty string")
    if not isinstance(data, Mapping):
        raise ValueError("data must be a mapping")
    try:
        return json.dumps(dict(data))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"data must be JSON-serializable: {exc}") from exc


def backoff_seconds(attempt: int, steps: tuple[int, ...] = DEFAULT_BACKOFF_STEPS) -> int:
    idx = min(max(attempt - 1, 0), len(steps) - 1) if steps else 0
    return steps[idx] if steps else 30


@runtime_checkable
class EventPublisher(Protocol):
    def publish(self, subject: str, event_type: str, data: Mapping[str, Any]) -> str: ...


# ---------------------------------------------------------------------------
# In-memory bus
# ---------------------------------------------------------------------------

class InMemoryEventBus:
    """Collects published events in a list."""

    def __init__(self) -> None:
        self.events: list[PublishedEvent] = []

    def publish(self, subject: str, event_type: str, data: Mapping[str, Any]) -> str:
        payload = validate_event(subject, event_type, data)
        event = PublishedEvent(
            event_id=str(uuid.uuid4()),
            subject=subject,
            event_type=event_type,
            data=json.loads(payload),
            created_at=_now().isoformat(),
        )
        self.events.append(event)
        logger.debug("Published %s/%s %s", subject, event_type, event.event_id)
        return event.event_id

    def drain(self) -> list[PublishedEvent]:
        events, self.events = self.events, []
        return events


# ---------------------------------------------------------------------------
# SQLite outbox
# ---------------------------------------------------------------------------

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
]

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS outbox_events (
    event_id        TEXT PRIMARY KEY,
    subject         TEXT NOT NULL,
    event_type      TEXT NOT NULL,
    data_version    TEXT NOT NULL DEFAULT '1.0',
    payload_json    TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'pending',
    attempt_count   INTEGER NOT NULL DEFAULT 0,
    last_error      TEXT NOT NULL DEFAULT '',
    next_attempt_at TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_outbox_status ON outbox_events(status, created_at);
"""


class OutboxEventBus:
    """Durable event bus on a SQLite outbox table."""

    def __init__(
        self,
        db_path: str | Path,
        max_attempts: int = 5,
        backoff_steps: tuple[int, ...] = DEFAULT_BACKOFF_STEPS,
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_attempts = max_attempts
        self.backoff_steps = backoff_steps
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> PublishedEvent:
        return PublishedEvent(
            event_id=row["event_id"],
            subject=row["subject"],
            event_type=row["event_type"],
            data=json.loads(row["payload_json"]),
            data_version=row["data_version"],
            created_at=row["created_at"],
            attempt_count=row["attempt_count"],
        )

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def publish(self, subject: str, event_type: str, data: Mapping[str, Any]) -> str:
        payload = validate_event(subject, event_type, data)
        event_id = str(uuid.uuid4())
        now = _now().isoformat()
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO outbox_events
                   (event_id, subject, event_type, data_version, payload_json,
                    status, attempt_count, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                (event_id, subject, event_type, DATA_VERSION, payload, STATUS_PENDING, now, now),
            )
            conn.commit()
        finally:
            conn.close()
        logger.debug("Enqueued %s/%s %s", subject, event_type, event_id)
        return event_id

    # ------------------------------------------------------------------
    # Inspect
    # ------------------------------------------------------------------

    def get(self, event_id: str) -> Optional[dict[str, Any]]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM outbox_events WHERE event_id = ?", (event_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def due(self, limit: int = 100, now: Optional[datetime] = None) -> list[PublishedEvent]:
        """Pending events whose retry time has come, oldest first."""
        now_iso = (now or _now()).isoformat()
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT * FROM outbox_events
                   WHERE status = ?
                     AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                   ORDER BY created_at, rowid
                   LIMIT ?""",
                (STATUS_PENDING, now_iso, limit),
            ).fetchall()
            return [self._row_to_event(r) for r in rows]
        finally:
            conn.close()

    def count(self, status: Optional[str] = None) -> int:
        conn = self._get_conn()
        try:
            if status:
                row = conn.execute(
                    "SELECT COUNT(*) FROM outbox_events WHERE status = ?", (status,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM outbox_events").fetchone()
            return row[0]
        finally:
            conn.close()

    def requeue(self, event_id: str) -> bool:
        """Move a parked event back to pending with a fresh attempt count."""
        conn = self._get_conn()
        try:
            result = conn.execute(
                """UPDATE outbox_events
                   SET status = ?, attempt_count = 0, next_attempt_at = NULL, updated_at = ?
                   WHERE event_id = ? AND status = ?""",
                (STATUS_PENDING, _now().isoformat(), event_id, STATUS_PARKED),
            )
            conn.commit()
            return result.rowcount > 0
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume(self, handler: Handler, limit: int = 100, now: Optional[datetime] = None) -> ConsumeReport:
        """Run ``handler`` over due events.

        A handler that returns marks the event delivered.  A handler that
        raises leaves it pending with a later retry time, or parks it once
        ``max_attempts`` is reached or the error is not retryable.
        """
        now = now or _now()
        report = ConsumeReport()
        for event in self.due(limit=limit, now=now):
            try:
                handler(event)
            except Exception as exc:  # transport boundary: record, retry or park
                attempts = event.attempt_count + 1
                error = f"{type(exc).__name__}: {exc}"
                report.errors.append(f"{event.event_id}: {error}")
                if attempts >= self.max_attempts or not getattr(exc, "retryable", True):
                    self._mark(event.event_id, STATUS_PARKED, attempts, error, None)
                    report.parked += 1
                    logger.error(
                        "Parked event %s after %d attempts: %s", event.event_id, attempts, error,
                    )
                else:
                    retry_at = now + timedelta(seconds=backoff_seconds(attempts, self.backoff_steps))
                    self._mark(event.event_id, STATUS_PENDING, attempts, error, retry_at.isoformat())
                    report.retried += 1
                    logger.warning(
                        "Event %s failed (attempt %d/%d), retry at %s: %s",
                        event.event_id, attempts, self.max_attempts, retry_at.isoformat(), error,
                    )
                continue
            self._mark(event.event_id, STATUS_DELIVERED, event.attempt_count + 1, "", None)
            report.delivered += 1
        return report

    def _mark(
        self,
        event_id: str,
        status: str,
        attempt_count: int,
        last_error: str,
        next_attempt_at: Optional[str],
    ) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """UPDATE outbox_events
                   SET status = ?, attempt_count = ?, last_error = ?,
                       next_attempt_at = ?, updated_at = ?
                   WHERE event_id = ?""",
                (status, attempt_count, last_error, next_attempt_at, _now().isoformat(), event_id),
            )
            conn.commit()
        finally:
            conn.close()
