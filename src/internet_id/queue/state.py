"""Per-job state machine and retry decisions.

The rules here are pure functions of (status, attempt, policy). The store builds
the WHERE clause of every status write from ALLOWED_TRANSITIONS, and the
service decides retries here, so no backend-specific retry feature is involved.
"""

from typing import Dict, FrozenSet

from ..errors import InvalidTransitionError
from ..models import RetryPolicy
from .models import JobStatus

TERMINAL_STATES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.QUEUED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def is_terminal(status: JobStatus) -> bool:
    return JobStatus(status) in TERMINAL_STATES


def can_transition(from_state: JobStatus, to_state: JobStatus) -> bool:
    return JobStatus(to_state) in ALLOWED_TRANSITIONS[JobStatus(from_state)]


def entry_states(to_state: JobStatus) -> FrozenSet[JobStatus]:
    """States from which to_state may be entered."""
    return frozenset(
        src for src, targets in ALLOWED_TRANSITIONS.items() if JobStatus(to_state) in targets
    )


def check_transition(from_state: JobStatus, to_state: JobStatus) -> None:
    """Raise InvalidTransitionError unless from_state → to_state is allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(JobStatus(from_state).value, JobStatus(to_state).value)


def status_after_error(attempt: int, policy: RetryPolicy) -> JobStatus:
    """Next state for a job whose attempt-th execution raised.

    queued (retry) while attempts remain, failed once attempt reaches the limit.
    """
    if policy.should_retry(attempt):
        return JobStatus.QUEUED
    return JobStatus.FAILED


def format_error(exc: BaseException, limit: int = 500) -> str:
    """Human-readable failure description, truncated for storage."""
    message = f"{type(exc).__name__}: {exc}"
    return message[:limit]
