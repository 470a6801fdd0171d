"""Tests for the worker pool threads and the stalled-job watchdog."""

import threading
import time

from internet_id.errors import BackendUnavailableError
from internet_id.queue import JobStatus, StalledJobWatchdog, VerificationQueueService, WorkerPool

from conftest import make_config, make_input


def wait_for(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


class RecordingService:
    """Stands in for the queue service; optionally raises on the first calls."""

    def __init__(self, errors=()):
        self.errors = list(errors)
        self.calls = []
        self.workers = set()
        self.recover_calls = []
        self._lock = threading.Lock()

    def process_next(self, worker_id, timeout_s):
        with self._lock:
            self.calls.append(worker_id)
            self.workers.add(worker_id)
            error = self.errors.pop(0) if self.errors else None
        if error:
            raise error
        time.sleep(0.01)
        return None

    def recover_stalled(self, timeout_s):
        self.recover_calls.append(timeout_s)
        if len(self.recover_calls) == 1:
            raise RuntimeError("watchdog hiccup")
        return []


class TestWorkerPool:
    """Thread lifecycle and error containment."""

    def test_workers_start_and_stop(self):
        service = RecordingService()
        pool = WorkerPool(service, size=3, poll_timeout_s=0.01)

        pool.start()
        assert wait_for(lambda: len(service.workers) == 3)
        assert pool.alive == 3

        pool.stop(timeout_s=2)
        assert pool.alive == 0

    def test_context_manager(self):
        service = RecordingService()
        with WorkerPool(service, size=1, poll_timeout_s=0.01) as pool:
            assert wait_for(lambda: service.calls)
            assert pool.alive == 1
        assert pool.alive == 0

    def test_unexpected_error_does_not_kill_worker(self):
        """A crash in one iteration is logged and the loop continues."""
        service = RecordingService(errors=[RuntimeError("boom")])
        pool = WorkerPool(service, size=1, poll_timeout_s=0.01, max_idle_backoff_s=0.05)

        pool.start()
        try:
            assert wait_for(lambda: len(service.calls) >= 3)
            assert pool.alive == 1
        finally:
            pool.stop(timeout_s=2)

    def test_backend_outage_backs_off(self):
        service = RecordingService(errors=[BackendUnavailableError("down")] * 2)
        pool = WorkerPool(service, size=1, poll_timeout_s=0.01, max_idle_backoff_s=0.05)

        pool.start()
        try:
            assert wait_for(lambda: len(service.calls) >= 4)
        finally:
            pool.stop(timeout_s=2)

    def test_backoff_is_capped(self):
        pool = WorkerPool(RecordingService(), max_idle_backoff_s=4.0)
        backoff = 0.0
        steps = []
        for _ in range(6):
            backoff = pool._next_backoff(backoff)
            steps.append(backoff)
        assert steps == [0.5, 1.0, 2.0, 4.0, 4.0, 4.0]


class TestWatchdog:
    def test_runs_periodically_and_survives_errors(self):
        service = RecordingService()
        watchdog = StalledJobWatchdog(service, timeout_s=30, interval_s=0.01)

        watchdog.start()
        try:
            assert wait_for(lambda: len(service.recover_calls) >= 2)
        finally:
            watchdog.stop()
        assert service.recover_calls[0] == 30


class TestEndToEnd:
    """Real service, SQLite backend, worker threads."""

    def test_jobs_processed_in_background(self, service):
        service.start()
        try:
            assert service.running
            job_ids = [service.enqueue_verify(make_input()).job_id for _ in range(4)]

            def all_done():
                return all(service.get_job_status(j).status == JobStatus.COMPLETED for j in job_ids)

            assert wait_for(all_done)
        finally:
            service.stop()
        assert not service.running

    def test_start_without_backend_is_noop(self, sync_service):
        sync_service.start()
        assert not sync_service.running
        sync_service.stop()

    def test_watchdog_started_when_configured(self, store, verifier, sqlite_queue):
        config = make_config(stalled_job_timeout_s=60.0, watchdog_interval_s=0.05)
        svc = VerificationQueueService(store, verifier, sqlite_queue, config)
        svc.start()
        try:
            assert svc._watchdog is not None
        finally:
            svc.stop()
        assert svc._watchdog is None
