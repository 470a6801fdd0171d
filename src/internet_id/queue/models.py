"""Pydantic models for verification job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator


class JobKind(str, Enum):
    """Which unit of work a job runs."""

    VERIFY = "verify"
    PROOF = "proof"


class JobStatus(str, Enum):
    """Job lifecycle states.

    State transitions:
        queued → processing      (worker claims the job)
        processing → completed   (unit of work returned a result)
        processing → queued      (execution error, retry scheduled; or stalled recovery)
        processing → failed      (execution error on the last allowed attempt)
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionMode(str, Enum):
    """How an enqueue request is served."""

    ASYNC = "async"
    SYNC = "sync"


class VerificationInput(BaseModel):
    """Inputs that reproduce a unit-of-work call.

    Callers validate formats before building this; nothing is re-checked here.
    """

    content_hash: str = Field(..., description="0x-prefixed SHA-256 of the content")
    manifest_uri: str = Field(..., description="ipfs:// or http(s):// manifest location")
    registry_address: Optional[str] = Field(default=None, description="Registry contract")
    original_filename: Optional[str] = Field(
        default=None, description="Reported in proof bundles"
    )


class VerificationJob(BaseModel):
    """Persisted job record.

    The input fields never change after creation; retries re-run them as-is.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Job identifier")
    external_job_id: Optional[str] = Field(default=None, description="Queue backend message id")
    kind: JobKind = Field(..., description="verify or proof")
    status: JobStatus = Field(default=JobStatus.QUEUED, description="Current job state")
    progress: int = Field(default=0, ge=0, le=100, description="Progress within the episode")
    content_hash: str
    manifest_uri: str
    registry_address: Optional[str] = None
    original_filename: Optional[str] = None
    result: Optional[Dict[str, Any]] = Field(default=None, description="Set on completion")
    error_message: Optional[str] = Field(default=None, description="Set on failure")
    attempt: int = Field(default=0, ge=0, description="Unit-of-work executions so far")
    max_attempts: int = Field(default=3, ge=1, description="Execution limit")
    created_at: datetime
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def to_input(self) -> VerificationInput:
        return VerificationInput(
            content_hash=self.content_hash,
            manifest_uri=self.manifest_uri,
            registry_address=self.registry_address,
            original_filename=self.original_filename,
        )


class QueueMessage(BaseModel):
    """Unit of delivery on a queue backend.

    Carries only the job id and kind; the job record holds everything else.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str
    kind: JobKind
    priority: int = Field(default=0, ge=0, description="Higher = served first")
    delivery_count: int = Field(default=0, ge=0)


class EnqueueResult(BaseModel):
    """Outcome of an enqueue call: an async acknowledgement or an inline result."""

    mode: ExecutionMode
    job_id: Optional[str] = None
    status: Optional[JobStatus] = None
    result: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def one_shape_only(self) -> "EnqueueResult":
        if self.mode == ExecutionMode.ASYNC:
            if not self.job_id or self.result is not None:
                raise ValueError("async results carry a job_id and no inline result")
        else:
            if self.job_id is not None or self.result is None:
                raise ValueError("sync results carry an inline result and no job_id")
        return self


class JobFilter(BaseModel):
    """Filters for listing job records (newest first)."""

    status: Optional[JobStatus] = None
    kind: Optional[JobKind] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class QueueStats(BaseModel):
    """Aggregate counts per status plus backend depth when available."""

    available: bool = Field(..., description="Backend configured and reachable")
    mode: ExecutionMode
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
    backend: Optional[Dict[str, int]] = Field(
        default=None, description="waiting / delayed / active counts reported by the backend"
    )
