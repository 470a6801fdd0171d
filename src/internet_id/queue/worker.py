"""Worker pool implementation using daemon threads.

This module runs verification jobs in the background with:
- A fixed number of worker threads, each looping claim → execute → persist
- Exponential idle backoff while the queue backend is unreachable
- Errors logged per iteration so one bad job never stops a worker
- A stalled-job watchdog thread (optional)
- Graceful shutdown through a shared stop event
"""

import logging
import threading
import time
from typing import List

from ..errors import BackendUnavailableError

logger = logging.getLogger(__name__)

MIN_IDLE_BACKOFF_S = 0.5


class WorkerPool:
    """Thread-based worker pool consuming a VerificationQueueService.

    Verification work is I/O bound (manifest fetch, RPC calls), so threads
    share one process, one store engine and one backend client.
    """

    def __init__(
        self,
        service,
        size: int = 3,
        poll_timeout_s: float = 1.0,
        max_idle_backoff_s: float = 15.0,
    ):
        """Initialize worker pool.

        Args:
            service: Object exposing process_next(worker_id, timeout_s)
            size: Number of worker threads
            poll_timeout_s: How long each pop blocks
            max_idle_backoff_s: Upper bound for the sleep between failed iterations
        """
        self.service = service
        self.size = size
        self.poll_timeout_s = poll_timeout_s
        self.max_idle_backoff_s = max_idle_backoff_s
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()

    def start(self) -> None:
        if self._threads:
            return
        self._stop_event.clear()
        for index in range(self.size):
            worker_id = f"verification-worker-{index + 1}"
            thread = threading.Thread(
                target=self._run, args=(worker_id,), name=worker_id, daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout_s: float = 10.0) -> None:
        """Signal every worker and wait up to timeout_s in total.

        A worker in the middle of a job finishes it first.
        """
        self._stop_event.set()
        deadline = time.monotonic() + timeout_s
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                logger.warning("Worker %s did not stop within %.1fs", thread.name, timeout_s)
        self._threads = []

    @property
    def alive(self) -> int:
        return sum(1 for thread in self._threads if thread.is_alive())

    def _next_backoff(self, current: float) -> float:
        return min(max(current * 2, MIN_IDLE_BACKOFF_S), self.max_idle_backoff_s)

    def _run(self, worker_id: str) -> None:
        logger.debug("%s started", worker_id)
        backoff = 0.0
        while not self._stop_event.is_set():
            try:
                self.service.process_next(worker_id, self.poll_timeout_s)
                backoff = 0.0
            except BackendUnavailableError as e:
                backoff = self._next_backoff(backoff)
                logger.warning("%s: queue backend unavailable (%s); retrying in %.1fs", worker_id, e, backoff)
                self._stop_event.wait(backoff)
            except Exception:
                backoff = self._next_backoff(backoff)
                logger.exception("%s: unexpected error while processing a job", worker_id)
                self._stop_event.wait(backoff)
        logger.debug("%s stopped", worker_id)


class StalledJobWatchdog:
    """Background thread that periodically requeues stalled jobs."""

    def __init__(self, service, timeout_s: float, interval_s: float = 60.0):
        self.service = service
        self.timeout_s = timeout_s
        self.interval_s = interval_s
        self._stop_event = threading.Event()
        self._thread = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="verification-watchdog", daemon=True
        )
        self._thread.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            try:
                recovered = self.service.recover_stalled(self.timeout_s)
                if recovered:
                    logger.info("Watchdog recovered %d stalled jobs", len(recovered))
            except Exception:
                logger.exception("Stalled-job recovery failed")
