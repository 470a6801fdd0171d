"""Job record store backed by SQLAlchemy Core.

Every state-changing write is conditional on the statuses the state machine
allows the target to be entered from (``UPDATE ... WHERE status IN (...)``).
A write that matches no row means another worker got there first, and the
caller is told so instead of overwriting.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, delete, func, insert, select, update
from sqlalchemy.pool import StaticPool

from ..api.db_models import Base, JobKindColumn, JobStatusColumn, VerificationJob as JobTable, utcnow
from .models import JobFilter, JobKind, JobStatus, VerificationJob
from .state import entry_states

logger = logging.getLogger(__name__)

_IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def _engine_for(database_url: str):
    if database_url in _IN_MEMORY_URLS:
        return create_engine(
            database_url, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def _row_to_job(row) -> VerificationJob:
    """Convert a VerificationJob table row to the queue model."""
    return VerificationJob(
        id=row.id,
        external_job_id=row.externalJobId,
        kind=JobKind(row.kind.value),
        status=JobStatus(row.status.value),
        progress=row.progress,
        content_hash=row.contentHash,
        manifest_uri=row.manifestUri,
        registry_address=row.registryAddress,
        original_filename=row.originalFilename,
        result=json.loads(row.result) if row.result else None,
        error_message=row.errorMessage,
        attempt=row.attempt,
        max_attempts=row.maxAttempts,
        created_at=row.createdAt,
        updated_at=row.updatedAt,
        started_at=row.startedAt,
        completed_at=row.completedAt,
    )


class JobStore:
    """Persistent table of VerificationJob records.

    Safe to share between worker threads: each call checks a connection out
    of the engine pool and commits before returning.
    """

    def __init__(self, database_url: str, create_tables: bool = True):
        self.database_url = database_url
        self.engine = _engine_for(database_url)
        if create_tables:
            Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    # --- creation -------------------------------------------------------

    def create(self, job: VerificationJob) -> VerificationJob:
        now = utcnow()
        values = {
            "id": job.id,
            "externalJobId": job.external_job_id,
            "kind": JobKindColumn(JobKind(job.kind).value),
            "status": JobStatusColumn(JobStatus(job.status).value),
            "progress": job.progress,
            "contentHash": job.content_hash,
            "manifestUri": job.manifest_uri,
            "registryAddress": job.registry_address,
            "originalFilename": job.original_filename,
            "attempt": job.attempt,
            "maxAttempts": job.max_attempts,
            "createdAt": job.created_at or now,
            "updatedAt": now,
        }
        with self.engine.begin() as conn:
            conn.execute(insert(JobTable).values(**values))
        return self.get(job.id)

    def discard(self, job_id: str) -> bool:
        """Remove a record that was never handed to the backend.

        Only used to roll back an enqueue whose push failed; anything that
        has been claimed (attempt > 0) is left alone.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(JobTable).where(
                    JobTable.id == job_id,
                    JobTable.status == JobStatusColumn.queued,
                    JobTable.attempt == 0,
                )
            )
        if result.rowcount == 1:
            logger.debug("Discarded unqueued job record %s", job_id)
        return result.rowcount == 1

    # --- reads ----------------------------------------------------------

    def get(self, job_id: str) -> Optional[VerificationJob]:
        with self.engine.connect() as conn:
            row = conn.execute(select(JobTable).where(JobTable.id == job_id)).first()
        return _row_to_job(row) if row else None

    def list(self, job_filter: Optional[JobFilter] = None) -> List[VerificationJob]:
        """Jobs matching the filter, newest first."""
        job_filter = job_filter or JobFilter()
        query = select(JobTable)

        if job_filter.status is not None:
            query = query.where(JobTable.status == JobStatusColumn(job_filter.status.value))
        if job_filter.kind is not None:
            query = query.where(JobTable.kind == JobKindColumn(job_filter.kind.value))
        if job_filter.created_after is not None:
            query = query.where(JobTable.createdAt >= job_filter.created_after)
        if job_filter.created_before is not None:
            query = query.where(JobTable.createdAt < job_filter.created_before)

        query = (
            query.order_by(JobTable.createdAt.desc(), JobTable.id.desc())
            .limit(job_filter.limit)
            .offset(job_filter.offset)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).all()
        return [_row_to_job(row) for row in rows]

    def count_by_status(self) -> Dict[JobStatus, int]:
        counts = {status: 0 for status in JobStatus}
        query = select(JobTable.status, func.count()).group_by(JobTable.status)
        with self.engine.connect() as conn:
            for status, count in conn.execute(query).all():
                counts[JobStatus(status.value)] = count
        return counts

    def find_stalled(
        self, older_than: datetime, status: JobStatus = JobStatus.PROCESSING
    ) -> List[VerificationJob]:
        """Jobs in status with no write since older_than."""
        query = select(JobTable).where(
            JobTable.status == JobStatusColumn(status.value),
            JobTable.updatedAt < older_than,
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).all()
        return [_row_to_job(row) for row in rows]

    # --- conditional writes ---------------------------------------------

    def _transition(
        self, job_id: str, target: JobStatus, attempt: Optional[int] = None, **values: Any
    ) -> bool:
        """Move the row to target only from a status the state machine allows.

        With attempt given, the write also requires that the row is still in
        that processing episode, so a worker whose claim was recovered cannot
        overwrite the episode that replaced it.
        """
        sources = [JobStatusColumn(s.value) for s in entry_states(target)]
        values["status"] = JobStatusColumn(target.value)
        values["updatedAt"] = utcnow()
        conditions = [JobTable.id == job_id, JobTable.status.in_(sources)]
        if attempt is not None:
            conditions.append(JobTable.attempt == attempt)
        query = update(JobTable).where(*conditions).values(**values)
        with self.engine.begin() as conn:
            result = conn.execute(query)
        return result.rowcount == 1

    def repoint_queued(
        self, job_id: str, expected_external_id: Optional[str], external_id: str
    ) -> bool:
        """Swap the message id of a queued job whose message was lost.

        Matches only while the job is still queued on expected_external_id, so
        a worker that claimed it meanwhile wins.
        """
        query = (
            update(JobTable)
            .where(
                JobTable.id == job_id,
                JobTable.status == JobStatusColumn.queued,
                JobTable.externalJobId == expected_external_id,
            )
            .values(externalJobId=external_id, updatedAt=utcnow())
        )
        with self.engine.begin() as conn:
            result = conn.execute(query)
        return result.rowcount == 1

    def mark_processing(self, job_id: str) -> Optional[VerificationJob]:
        """Claim a queued job: increment attempt, reset progress.

        Returns the updated record, or None when the job is not queued or has
        no attempts left.
        """
        sources = [JobStatusColumn(s.value) for s in entry_states(JobStatus.PROCESSING)]
        now = utcnow()
        query = (
            update(JobTable)
            .where(
                JobTable.id == job_id,
                JobTable.status.in_(sources),
                JobTable.attempt < JobTable.maxAttempts,
            )
            .values(
                status=JobStatusColumn.processing,
                attempt=JobTable.attempt + 1,
                progress=0,
                startedAt=func.coalesce(JobTable.startedAt, now),
                updatedAt=now,
            )
        )
        with self.engine.begin() as conn:
            result = conn.execute(query)
        if result.rowcount != 1:
            return None
        return self.get(job_id)

    def report_progress(self, job_id: str, value: int, attempt: Optional[int] = None) -> bool:
        """Raise progress of a processing job; lower values are ignored."""
        value = max(0, min(100, int(value)))
        conditions = [
            JobTable.id == job_id,
            JobTable.status == JobStatusColumn.processing,
            JobTable.progress < value,
        ]
        if attempt is not None:
            conditions.append(JobTable.attempt == attempt)
        query = update(JobTable).where(*conditions).values(progress=value, updatedAt=utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(query)
        return result.rowcount == 1

    def mark_completed(
        self, job_id: str, result: Dict[str, Any], attempt: Optional[int] = None
    ) -> bool:
        return self._transition(
            job_id,
            JobStatus.COMPLETED,
            attempt,
            progress=100,
            result=json.dumps(result, default=str),
            errorMessage=None,
            completedAt=utcnow(),
        )

    def mark_failed(
        self, job_id: str, error_message: str, attempt: Optional[int] = None
    ) -> bool:
        return self._transition(
            job_id,
            JobStatus.FAILED,
            attempt,
            result=None,
            errorMessage=error_message[:500],
            completedAt=utcnow(),
        )

    def mark_requeued(
        self, job_id: str, external_id: Optional[str] = None, attempt: Optional[int] = None
    ) -> bool:
        """processing → queued, for a retry or a stalled-job recovery."""
        values: Dict[str, Any] = {"progress": 0}
        if external_id is not None:
            values["externalJobId"] = external_id
        return self._transition(job_id, JobStatus.QUEUED, attempt, **values)
