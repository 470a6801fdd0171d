"""SQLite implementation of QueueBackend.

This module provides the local-first, crash-safe queue backend using:
- sqlite-utils for schema management and inserts
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic claim
- Exponential backoff retry for database lock handling
- available_at timestamps for delayed (retry) delivery
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional, Set

from sqlite_utils import Database

from ..errors import BackendUnavailableError
from .backends import QueueBackend
from .models import JobKind, QueueMessage

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue_messages (
    message_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    priority INTEGER DEFAULT 0,
    available_at TEXT NOT NULL,
    enqueued_at TEXT NOT NULL,
    claimed_by TEXT,
    claimed_at TEXT,
    delivery_count INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_ready
    ON queue_messages(claimed_by, priority DESC, available_at ASC);
CREATE INDEX IF NOT EXISTS idx_job ON queue_messages(job_id);
"""


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _stamp(value: datetime) -> str:
    # Fixed width so text comparison matches time order
    return value.isoformat(timespec="microseconds")


@contextmanager
def _translate_errors():
    """Surface driver errors (locked file, disk I/O) as BackendUnavailableError."""
    try:
        yield
    except sqlite3.Error as e:
        raise BackendUnavailableError(str(e)) from e


class SQLiteQueue(QueueBackend):
    """SQLite-based queue with atomic claim operations.

    Features:
    - Atomic claim via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Exponential backoff retry for database lock contention
    - Delayed delivery through available_at
    - Claimed rows stay until ack() (at-least-once)
    - release_stale_claims() returns abandoned claims to the queue

    Concurrency safety:
    - One connection shared by worker threads, serialised with a lock
    - BEGIN IMMEDIATE also guards against other processes on the same file
    """

    def __init__(self, db_path: str, poll_interval_s: float = 0.05, busy_timeout_s: float = 5.0):
        """Initialize queue database.

        Args:
            db_path: Path to SQLite database file
            poll_interval_s: Sleep between claim attempts while blocking in pop()
            busy_timeout_s: How long a write waits on a locked file before failing
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.poll_interval_s = poll_interval_s
        self._lock = threading.RLock()
        self._closed = False

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=busy_timeout_s)
        self.db = Database(conn)

        # Enable WAL mode for better concurrent performance
        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")
        self.db.conn.commit()

        self.db.executescript(SCHEMA_SQL)

    def _ensure_open(self) -> None:
        if self._closed:
            raise BackendUnavailableError(f"SQLite queue closed: {self.db_path}")

    def ping(self) -> bool:
        with self._lock, _translate_errors():
            self._ensure_open()
            self.db.execute("SELECT 1").fetchone()
        return True

    def push(self, message: QueueMessage, delay_s: float = 0.0) -> str:
        """Insert message; claimable once available_at has passed."""
        now = _now()
        available_at = now + timedelta(seconds=max(0.0, delay_s))

        with self._lock, _translate_errors():
            self._ensure_open()
            self.db["queue_messages"].insert(
                {
                    "message_id": message.message_id,
                    "job_id": message.job_id,
                    "kind": JobKind(message.kind).value,
                    "priority": message.priority,
                    "available_at": _stamp(available_at),
                    "enqueued_at": _stamp(now),
                    "claimed_by": None,
                    "claimed_at": None,
                    "delivery_count": message.delivery_count,
                },
                pk="message_id",
                replace=True,
            )
        return message.message_id

    def pop(self, worker_id: str, timeout_s: float) -> Optional[QueueMessage]:
        """Poll for a ready message until timeout_s elapses."""
        deadline = time.monotonic() + max(0.0, timeout_s)
        while True:
            message = self._claim_with_retry(worker_id)
            if message is not None:
                return message
            if time.monotonic() >= deadline:
                return None
            time.sleep(self.poll_interval_s)

    def _claim_with_retry(self, worker_id: str, max_retries: int = 3) -> Optional[QueueMessage]:
        """Claim with exponential backoff on SQLITE_BUSY.

        Implementation note:
        - BEGIN IMMEDIATE takes the write lock at transaction start, so two
          workers cannot select the same row before the update
        - Exponential backoff: 100ms, 200ms, 400ms delays
        """
        for attempt in range(max_retries):
            try:
                with self._lock:
                    self._ensure_open()
                    conn = self.db.conn
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        now = _stamp(_now())
                        cursor = conn.execute(
                            """
                            UPDATE queue_messages
                            SET claimed_by = ?,
                                claimed_at = ?,
                                delivery_count = delivery_count + 1
                            WHERE message_id = (
                                SELECT message_id FROM queue_messages
                                WHERE claimed_by IS NULL AND available_at <= ?
                                ORDER BY priority DESC, available_at ASC
                                LIMIT 1
                            )
                            RETURNING message_id, job_id, kind, priority, delivery_count
                            """,
                            (worker_id, now, now),
                        )
                        rows = cursor.fetchall()
                        row = rows[0] if rows else None
                        conn.commit()
                    except Exception:
                        conn.rollback()
                        raise

                if row is None:
                    return None

                message_id, job_id, kind, priority, delivery_count = row
                return QueueMessage(
                    message_id=message_id,
                    job_id=job_id,
                    kind=JobKind(kind),
                    priority=priority,
                    delivery_count=delivery_count,
                )

            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise BackendUnavailableError(str(e)) from e
            except sqlite3.Error as e:
                raise BackendUnavailableError(str(e)) from e

        return None

    def ack(self, message: QueueMessage) -> None:
        with self._lock, _translate_errors():
            self._ensure_open()
            with self.db.conn:
                self.db.execute(
                    "DELETE FROM queue_messages WHERE message_id = ?", [message.message_id]
                )

    def release_stale_claims(self, older_than_s: float) -> int:
        """Return messages claimed more than older_than_s ago to the ready set.

        A worker that died between pop() and ack() leaves its row claimed;
        clearing the claim makes it deliverable again.
        """
        cutoff = _stamp(_now() - timedelta(seconds=max(0.0, older_than_s)))
        with self._lock, _translate_errors():
            self._ensure_open()
            with self.db.conn:
                cursor = self.db.execute(
                    """
                    UPDATE queue_messages
                    SET claimed_by = NULL, claimed_at = NULL
                    WHERE claimed_by IS NOT NULL AND claimed_at < ?
                    """,
                    [cutoff],
                )
        return cursor.rowcount

    def pending_ids(self) -> Set[str]:
        with self._lock, _translate_errors():
            self._ensure_open()
            rows = self.db.execute("SELECT message_id FROM queue_messages").fetchall()
        return {row[0] for row in rows}

    def depth(self) -> Dict[str, int]:
        now = _stamp(_now())
        with self._lock, _translate_errors():
            self._ensure_open()
            waiting, delayed, active = self.db.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN claimed_by IS NULL AND available_at <= ? THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN claimed_by IS NULL AND available_at > ? THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN claimed_by IS NOT NULL THEN 1 ELSE 0 END), 0)
                FROM queue_messages
                """,
                [now, now],
            ).fetchone()
        return {"waiting": waiting, "delayed": delayed, "active": active}

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._closed = True
                self.db.conn.close()
