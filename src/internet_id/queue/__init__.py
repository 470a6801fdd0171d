"""Verification job queue with retry, progress tracking and inline fallback."""

from .backends import BackendHealth, QueueBackend, create_queue_backend
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
from .service import VerificationQueueService
from .sqlite_backend import SQLiteQueue
from .store import JobStore
from .worker import StalledJobWatchdog, WorkerPool

__all__ = [
    "BackendHealth",
    "QueueBackend",
    "create_queue_backend",
    "EnqueueResult",
    "ExecutionMode",
    "JobFilter",
    "JobKind",
    "JobStatus",
    "QueueMessage",
    "QueueStats",
    "VerificationInput",
    "VerificationJob",
    "VerificationQueueService",
    "SQLiteQueue",
    "JobStore",
    "StalledJobWatchdog",
    "WorkerPool",
]
