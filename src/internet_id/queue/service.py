"""Verification queue service.

Ties the job record store, a queue backend and the verify/proof unit of work
together:

- enqueue_verify / enqueue_proof pick async or sync execution per call
- process_next runs one claim → execute → persist cycle for a worker
- retries are driven here (RetryPolicy), not by any backend feature
- recover_stalled requeues processing jobs that stopped reporting and
  re-delivers messages that were claimed or lost without being run
"""

import logging
import threading
from datetime import timedelta
from typing import TYPE_CHECKING, Callable, List, Optional

from ..api.db_models import utcnow
from ..errors import BackendUnavailableError, JobNotFoundError
from ..models import QueueConfig
from .backends import BackendHealth, QueueBackend
from .models import (
    EnqueueResult,
    ExecutionMode,
    JobFilter,
    JobKind,
    JobStatus,
    QueueMessage,
    QueueStats,
    VerificationInput,
    VerificationJob,
)
from .state import format_error, status_after_error
from .store import JobStore
from .worker import StalledJobWatchdog, WorkerPool

if TYPE_CHECKING:
    from ..verification import Verifier

logger = logging.getLogger(__name__)

# Verify requests are interactive; proof bundles can wait
PRIORITIES = {JobKind.VERIFY: 1, JobKind.PROOF: 0}

JobListener = Callable[[str, VerificationJob], None]


class VerificationQueueService:
    """Async verification jobs with inline fallback.

    Construct once per process and pass it to whatever needs it. start() and
    stop() control the worker threads; enqueue and read operations work
    whether or not workers are running.
    """

    def __init__(
        self,
        store: JobStore,
        verifier: "Verifier",
        backend: Optional[QueueBackend] = None,
        config: Optional[QueueConfig] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.backend = backend
        self.config = config or QueueConfig()
        self.health = BackendHealth(backend, ttl_s=self.config.health_ttl_s)
        self._listeners: List[JobListener] = []
        self._lifecycle_lock = threading.Lock()
        self._pool: Optional[WorkerPool] = None
        self._watchdog: Optional[StalledJobWatchdog] = None

    # --- lifecycle ------------------------------------------------------

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._pool is not None:
                return
            if self.backend is None:
                logger.info("No queue backend configured; verification jobs run inline")
                return

            self._pool = WorkerPool(
                self,
                size=self.config.workers,
                poll_timeout_s=self.config.poll_timeout_s,
                max_idle_backoff_s=self.config.max_idle_backoff_s,
            )
            self._pool.start()

            if self.config.stalled_job_timeout_s:
                self._watchdog = StalledJobWatchdog(
                    self,
                    timeout_s=self.config.stalled_job_timeout_s,
                    interval_s=self.config.watchdog_interval_s,
                )
                self._watchdog.start()

            logger.info(
                "Verification queue started with %d workers (mode: %s)",
                self.config.workers,
                self.health.check().value,
            )

    def stop(self, timeout_s: float = 10.0) -> None:
        with self._lifecycle_lock:
            if self._watchdog is not None:
                self._watchdog.stop(timeout_s)
                self._watchdog = None
            if self._pool is not None:
                self._pool.stop(timeout_s)
                self._pool = None
                logger.info("Verification queue stopped")

    def close(self) -> None:
        """Stop workers and release the backend and store connections."""
        self.stop()
        if self.backend is not None:
            self.backend.close()
        self.store.close()

    @property
    def running(self) -> bool:
        return self._pool is not None

    def add_listener(self, callback: JobListener) -> None:
        """Register callback(event, job) for completed, failed and retrying events."""
        self._listeners.append(callback)

    def _emit(self, event: str, job_id: str) -> None:
        if not self._listeners:
            return
        job = self.store.get(job_id)
        if job is None:
            return
        for callback in list(self._listeners):
            try:
                callback(event, job)
            except Exception:
                logger.exception("Job listener failed on %s for %s", event, job_id)

    # --- enqueue --------------------------------------------------------

    def enqueue_verify(self, data: VerificationInput) -> EnqueueResult:
        return self._enqueue(JobKind.VERIFY, data)

    def enqueue_proof(self, data: VerificationInput) -> EnqueueResult:
        return self._enqueue(JobKind.PROOF, data)

    def _enqueue(self, kind: JobKind, data: VerificationInput) -> EnqueueResult:
        if self.health.check() == ExecutionMode.ASYNC:
            job = self._enqueue_async(kind, data)
            if job is not None:
                return EnqueueResult(mode=ExecutionMode.ASYNC, job_id=job.id, status=job.status)

        logger.info("Running %s inline for %s", kind.value, data.content_hash)
        result = self.verifier.run(kind, data)
        return EnqueueResult(mode=ExecutionMode.SYNC, result=result)

    def _enqueue_async(self, kind: JobKind, data: VerificationInput) -> Optional[VerificationJob]:
        """Insert a queued record and hand it to the backend.

        Returns None when the backend is unavailable; the record is removed
        again so the caller can fall back to inline execution. Any other push
        error also removes the record before propagating.
        """
        job = VerificationJob(
            kind=kind,
            status=JobStatus.QUEUED,
            content_hash=data.content_hash,
            manifest_uri=data.manifest_uri,
            registry_address=data.registry_address,
            original_filename=data.original_filename,
            max_attempts=self.config.retry.max_attempts,
            created_at=utcnow(),
        )
        message = QueueMessage(job_id=job.id, kind=kind, priority=PRIORITIES[kind])
        job.external_job_id = message.message_id
        job = self.store.create(job)

        try:
            self.backend.push(message)
        except BackendUnavailableError as e:
            logger.warning("Queue push failed for job %s, falling back to inline: %s", job.id, e)
            self.store.discard(job.id)
            self.health.mark_unavailable()
            return None
        except Exception:
            self.store.discard(job.id)
            raise

        logger.info("Queued %s job %s for %s", kind.value, job.id, data.content_hash)
        return job

    # --- reads ----------------------------------------------------------

    def get_job_status(self, job_id: str) -> VerificationJob:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, job_filter: Optional[JobFilter] = None) -> List[VerificationJob]:
        return self.store.list(job_filter)

    def get_stats(self) -> QueueStats:
        counts = self.store.count_by_status()
        mode = self.health.check()

        depth = None
        if mode == ExecutionMode.ASYNC:
            try:
                depth = self.backend.depth()
            except BackendUnavailableError as e:
                logger.warning("Could not read queue depth: %s", e)

        return QueueStats(
            available=mode == ExecutionMode.ASYNC,
            mode=mode,
            queued=counts[JobStatus.QUEUED],
            processing=counts[JobStatus.PROCESSING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            total=sum(counts.values()),
            backend=depth,
        )

    # --- worker cycle ---------------------------------------------------

    def process_next(
        self, worker_id: str = "worker-0", timeout_s: Optional[float] = None
    ) -> Optional[VerificationJob]:
        """Claim one message, run its job and persist the outcome.

        Returns the job record after this cycle, or None when nothing was
        ready or the message pointed at a job that could not be run.

        Raises:
            BackendUnavailableError: If the backend cannot be reached
        """
        if self.backend is None:
            return None

        if timeout_s is None:
            timeout_s = self.config.poll_timeout_s
        message = self.backend.pop(worker_id, timeout_s)
        if message is None:
            return None

        job = self.store.get(message.job_id)
        if job is None:
            logger.error("Dropping message %s: job %s does not exist", message.message_id, message.job_id)
            self.backend.ack(message)
            return None

        if job.external_job_id and job.external_job_id != message.message_id:
            # A newer message was issued for this job; it alone may run it
            logger.info("Dropping superseded message %s for job %s", message.message_id, job.id)
            self.backend.ack(message)
            return None

        claimed = self.store.mark_processing(job.id)
        if claimed is None:
            # Redelivery of a job that is finished, running elsewhere or out of attempts
            logger.info(
                "Skipping message %s for job %s (status %s, attempt %d)",
                message.message_id,
                job.id,
                job.status.value,
                job.attempt,
            )
            self.backend.ack(message)
            return None

        self._execute(claimed, worker_id)
        self.backend.ack(message)
        return self.store.get(job.id)

    def _execute(self, job: VerificationJob, worker_id: str) -> None:
        attempt = job.attempt
        logger.info(
            "%s processing %s job %s (attempt %d/%d)",
            worker_id,
            job.kind.value,
            job.id,
            attempt,
            job.max_attempts,
        )

        def report(value: int) -> None:
            logger.debug("Job %s progress %d%%", job.id, value)
            self.store.report_progress(job.id, value, attempt)

        try:
            result = self.verifier.run(job.kind, job.to_input(), report)
        except Exception as e:
            self._handle_failure(job, e)
            return

        if self.store.mark_completed(job.id, result, attempt):
            logger.info("Job %s completed (%s)", job.id, result.get("status", "done"))
            self._emit("completed", job.id)
        else:
            logger.warning("Job %s changed while running; result of attempt %d discarded", job.id, attempt)

    def _handle_failure(self, job: VerificationJob, exc: Exception) -> None:
        attempt = job.attempt
        error = format_error(exc)
        policy = self.config.retry.model_copy(update={"max_attempts": job.max_attempts})

        if status_after_error(attempt, policy) == JobStatus.FAILED:
            if self.store.mark_failed(job.id, error, attempt):
                logger.error("Job %s failed after %d attempts: %s", job.id, attempt, error)
                self._emit("failed", job.id)
            return

        delay = policy.delay_for(attempt)
        retry = QueueMessage(job_id=job.id, kind=job.kind, priority=PRIORITIES[job.kind])
        if not self.store.mark_requeued(job.id, external_id=retry.message_id, attempt=attempt):
            logger.warning("Job %s changed while running; retry not scheduled", job.id)
            return

        logger.warning(
            "Job %s attempt %d/%d failed (%s); retrying in %.1fs",
            job.id,
            attempt,
            job.max_attempts,
            error,
            delay,
        )
        try:
            self.backend.push(retry, delay_s=delay)
        except BackendUnavailableError as e:
            # Record stays queued and visible; recover with the CLI once the backend is back
            logger.error("Could not schedule retry for job %s: %s", job.id, e)
            return
        self._emit("retrying", job.id)

    # --- stalled jobs ---------------------------------------------------

    def recover_stalled(self, timeout_s: float) -> List[VerificationJob]:
        """Put work that stopped moving for timeout_s seconds back in flight.

        Three cases, in order:

        - processing jobs with no update are requeued with a fresh message,
          or failed if that was their last attempt (the attempt count is kept)
        - messages claimed but never acked are released by the backend
        - queued jobs whose message is no longer anywhere in the backend get
          a new one (a push that failed after the record was written)

        Returns:
            Records that were requeued, failed or re-sent
        """
        if self.backend is None:
            logger.warning("Stalled-job recovery needs a queue backend; nothing done")
            return []

        cutoff = utcnow() - timedelta(seconds=timeout_s)
        touched: List[VerificationJob] = []

        for job in self.store.find_stalled(cutoff):
            if job.external_job_id:
                stale = QueueMessage(message_id=job.external_job_id, job_id=job.id, kind=job.kind)
                self.backend.ack(stale)

            if job.attempt >= job.max_attempts:
                error = f"Stalled: no update for {timeout_s:.0f}s on final attempt"
                if self.store.mark_failed(job.id, error, job.attempt):
                    logger.error("Job %s failed: %s", job.id, error)
                    self._emit("failed", job.id)
                    touched.append(self.store.get(job.id))
                continue

            message = QueueMessage(job_id=job.id, kind=job.kind, priority=PRIORITIES[job.kind])
            if not self.store.mark_requeued(job.id, external_id=message.message_id, attempt=job.attempt):
                continue
            self.backend.push(message)
            logger.warning("Requeued stalled job %s (attempt %d)", job.id, job.attempt)
            touched.append(self.store.get(job.id))

        self.backend.release_stale_claims(timeout_s)

        orphans = self.store.find_stalled(cutoff, status=JobStatus.QUEUED)
        if orphans:
            pending = self.backend.pending_ids()
            for job in orphans:
                if job.external_job_id in pending:
                    continue
                message = QueueMessage(job_id=job.id, kind=job.kind, priority=PRIORITIES[job.kind])
                if not self.store.repoint_queued(job.id, job.external_job_id, message.message_id):
                    continue
                self.backend.push(message)
                logger.warning("Re-sent queued job %s whose message was lost", job.id)
                touched.append(self.store.get(job.id))

        return touched
