"""Unit tests for the SQLite queue backend.

Tests cover:
- Push / pop / ack
- Priority then FIFO ordering
- Delayed delivery
- Concurrent claim safety
- Closed-backend errors and locked-file errors
- Releasing abandoned claims
"""

import sqlite3
import threading
import time

import pytest

from internet_id.errors import BackendUnavailableError
from internet_id.queue import create_queue_backend
from internet_id.queue.models import JobKind, QueueMessage
from internet_id.queue.sqlite_backend import SQLiteQueue


def message(job_id="job-1", kind=JobKind.VERIFY, priority=0):
    return QueueMessage(job_id=job_id, kind=kind, priority=priority)


class TestPushPop:
    """Basic delivery."""

    def test_push_then_pop(self, sqlite_queue):
        sent = message()
        message_id = sqlite_queue.push(sent)

        received = sqlite_queue.pop("w1", timeout_s=0)
        assert message_id == sent.message_id
        assert received.message_id == sent.message_id
        assert received.job_id == "job-1"
        assert received.kind == JobKind.VERIFY
        assert received.delivery_count == 1

    def test_pop_empty_times_out(self, sqlite_queue):
        start = time.monotonic()
        assert sqlite_queue.pop("w1", timeout_s=0.1) is None
        assert time.monotonic() - start >= 0.1

    def test_claimed_message_not_redelivered(self, sqlite_queue):
        """A popped message stays in flight until ack()."""
        sqlite_queue.push(message())
        assert sqlite_queue.pop("w1", timeout_s=0) is not None
        assert sqlite_queue.pop("w2", timeout_s=0) is None
        assert sqlite_queue.depth() == {"waiting": 0, "delayed": 0, "active": 1}

    def test_ack_removes_message(self, sqlite_queue):
        sqlite_queue.push(message())
        received = sqlite_queue.pop("w1", timeout_s=0)
        sqlite_queue.ack(received)
        assert sqlite_queue.depth() == {"waiting": 0, "delayed": 0, "active": 0}

    def test_ack_unknown_is_noop(self, sqlite_queue):
        sqlite_queue.ack(message())

    def test_ping(self, sqlite_queue):
        assert sqlite_queue.ping() is True


class TestOrdering:
    """Priority then arrival order."""

    def test_higher_priority_first(self, sqlite_queue):
        sqlite_queue.push(message("proof-job", kind=JobKind.PROOF, priority=0))
        sqlite_queue.push(message("verify-job", priority=1))

        assert sqlite_queue.pop("w1", timeout_s=0).job_id == "verify-job"
        assert sqlite_queue.pop("w1", timeout_s=0).job_id == "proof-job"

    def test_fifo_within_priority(self, sqlite_queue):
        for i in range(3):
            sqlite_queue.push(message(f"job-{i}"))
            time.sleep(0.002)

        order = [sqlite_queue.pop("w1", timeout_s=0).job_id for _ in range(3)]
        assert order == ["job-0", "job-1", "job-2"]


class TestDelayedDelivery:
    """Retry delays."""

    def test_delayed_message_not_ready(self, sqlite_queue):
        sqlite_queue.push(message(), delay_s=60)

        assert sqlite_queue.pop("w1", timeout_s=0) is None
        assert sqlite_queue.depth() == {"waiting": 0, "delayed": 1, "active": 0}

    def test_delayed_message_becomes_ready(self, sqlite_queue):
        sqlite_queue.push(message(), delay_s=0.1)
        received = sqlite_queue.pop("w1", timeout_s=2)
        assert received is not None
        assert received.job_id == "job-1"


class TestConcurrency:
    """Atomic claim."""

    def test_no_double_claim(self, sqlite_queue):
        """Each message is handed to exactly one worker."""
        for i in range(20):
            sqlite_queue.push(message(f"job-{i}"))

        claimed = []
        lock = threading.Lock()

        def worker(name):
            while True:
                received = sqlite_queue.pop(name, timeout_s=0)
                if received is None:
                    return
                with lock:
                    claimed.append(received.job_id)

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(claimed) == sorted(f"job-{i}" for i in range(20))

    def test_second_connection_sees_messages(self, temp_dir, sqlite_queue):
        """Another process on the same file shares the queue."""
        sqlite_queue.push(message())
        other = SQLiteQueue(str(temp_dir / "queue.db"))
        try:
            assert other.pop("w2", timeout_s=0).job_id == "job-1"
        finally:
            other.close()


class TestStaleClaims:
    """release_stale_claims() and pending_ids()."""

    def test_old_claim_released(self, sqlite_queue):
        sent = message()
        sqlite_queue.push(sent)
        sqlite_queue.pop("dead-worker", timeout_s=0)

        assert sqlite_queue.release_stale_claims(older_than_s=0) == 1
        again = sqlite_queue.pop("w2", timeout_s=0)
        assert again.message_id == sent.message_id
        assert again.delivery_count == 2

    def test_recent_claim_kept(self, sqlite_queue):
        sqlite_queue.push(message())
        sqlite_queue.pop("w1", timeout_s=0)

        assert sqlite_queue.release_stale_claims(older_than_s=300) == 0
        assert sqlite_queue.depth()["active"] == 1

    def test_pending_ids_cover_every_state(self, sqlite_queue):
        ready, delayed, claimed = message("a"), message("b"), message("c", priority=5)
        sqlite_queue.push(claimed)
        sqlite_queue.pop("w1", timeout_s=0)
        sqlite_queue.push(ready)
        sqlite_queue.push(delayed, delay_s=60)

        assert sqlite_queue.pending_ids() == {ready.message_id, delayed.message_id, claimed.message_id}


class TestLockedFile:
    """Driver errors surface as BackendUnavailableError."""

    @pytest.fixture
    def locked(self, temp_dir):
        path = temp_dir / "locked.db"
        queue = SQLiteQueue(str(path), busy_timeout_s=0.1)
        queue.push(message("queued"))
        holder = sqlite3.connect(str(path), isolation_level=None)
        holder.execute("BEGIN EXCLUSIVE")
        yield queue
        holder.execute("ROLLBACK")
        holder.close()
        queue.close()

    def test_push_translated(self, locked):
        with pytest.raises(BackendUnavailableError):
            locked.push(message())

    def test_pop_translated(self, locked):
        with pytest.raises(BackendUnavailableError):
            locked.pop("w1", timeout_s=0)

    def test_release_translated(self, locked):
        with pytest.raises(BackendUnavailableError):
            locked.release_stale_claims(older_than_s=0)


class TestClosed:
    """Unavailable backend."""

    def test_closed_queue_raises(self, temp_dir):
        queue = SQLiteQueue(str(temp_dir / "closed.db"))
        queue.close()

        with pytest.raises(BackendUnavailableError):
            queue.ping()
        with pytest.raises(BackendUnavailableError):
            queue.push(message())
        with pytest.raises(BackendUnavailableError):
            queue.pop("w1", timeout_s=0)


class TestFactory:
    """create_queue_backend URL dispatch."""

    def test_empty_url_means_sync(self):
        assert create_queue_backend(None) is None
        assert create_queue_backend("") is None

    def test_sqlite_url(self, temp_dir):
        backend = create_queue_backend(f"sqlite:///{temp_dir / 'q.db'}")
        try:
            assert isinstance(backend, SQLiteQueue)
        finally:
            backend.close()

    def test_unknown_scheme(self):
        with pytest.raises(ValueError):
            create_queue_backend("amqp://localhost")
