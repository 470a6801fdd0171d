"""Unit tests for the job state machine and retry policy."""

import pytest
from pydantic import ValidationError

from internet_id.errors import InvalidTransitionError
from internet_id.models import RetryPolicy
from internet_id.queue.models import JobStatus
from internet_id.queue.state import (
    can_transition,
    check_transition,
    entry_states,
    format_error,
    is_terminal,
    status_after_error,
)


class TestTransitions:
    """Allowed and forbidden state changes."""

    @pytest.mark.parametrize(
        "src,dst",
        [
            (JobStatus.QUEUED, JobStatus.PROCESSING),
            (JobStatus.PROCESSING, JobStatus.COMPLETED),
            (JobStatus.PROCESSING, JobStatus.FAILED),
            (JobStatus.PROCESSING, JobStatus.QUEUED),
        ],
    )
    def test_allowed(self, src, dst):
        """Every edge of the lifecycle is accepted."""
        assert can_transition(src, dst)
        check_transition(src, dst)

    @pytest.mark.parametrize(
        "src,dst",
        [
            (JobStatus.QUEUED, JobStatus.COMPLETED),
            (JobStatus.QUEUED, JobStatus.FAILED),
            (JobStatus.COMPLETED, JobStatus.QUEUED),
            (JobStatus.COMPLETED, JobStatus.PROCESSING),
            (JobStatus.FAILED, JobStatus.QUEUED),
            (JobStatus.FAILED, JobStatus.PROCESSING),
        ],
    )
    def test_forbidden(self, src, dst):
        """Skipping processing or leaving a terminal state raises."""
        assert not can_transition(src, dst)
        with pytest.raises(InvalidTransitionError) as exc_info:
            check_transition(src, dst)
        assert exc_info.value.from_state == src.value
        assert exc_info.value.to_state == dst.value

    def test_terminal_states(self):
        """Only completed and failed are terminal."""
        assert is_terminal(JobStatus.COMPLETED)
        assert is_terminal(JobStatus.FAILED)
        assert not is_terminal(JobStatus.QUEUED)
        assert not is_terminal(JobStatus.PROCESSING)

    @pytest.mark.parametrize(
        "dst,sources",
        [
            (JobStatus.QUEUED, {JobStatus.PROCESSING}),
            (JobStatus.PROCESSING, {JobStatus.QUEUED}),
            (JobStatus.COMPLETED, {JobStatus.PROCESSING}),
            (JobStatus.FAILED, {JobStatus.PROCESSING}),
        ],
    )
    def test_entry_states(self, dst, sources):
        """Store writes are guarded by exactly these source states."""
        assert entry_states(dst) == sources

    def test_accepts_plain_strings(self):
        """Raw column values work as well as enum members."""
        assert can_transition("queued", "processing")


class TestRetryPolicy:
    """Backoff schedule and retry decisions."""

    def test_default_schedule(self):
        """5s base doubling per attempt."""
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [5.0, 10.0, 20.0, 40.0]

    def test_delay_is_capped(self):
        """Large attempt numbers stop at max_delay_s."""
        policy = RetryPolicy(base_delay_s=5, multiplier=2, max_delay_s=300)
        assert policy.delay_for(7) == 300.0
        assert policy.delay_for(50) == 300.0

    def test_delay_before_first_attempt(self):
        """Attempt 0 never waited on anything."""
        assert RetryPolicy().delay_for(0) == 0.0

    def test_should_retry(self):
        """Retries stop once attempt reaches max_attempts."""
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)

    def test_cap_below_base_rejected(self):
        """max_delay_s smaller than base_delay_s is a configuration error."""
        with pytest.raises(ValidationError):
            RetryPolicy(base_delay_s=10, max_delay_s=5)

    def test_status_after_error(self):
        """Requeue while attempts remain, fail on the last one."""
        policy = RetryPolicy(max_attempts=3)
        assert status_after_error(1, policy) == JobStatus.QUEUED
        assert status_after_error(2, policy) == JobStatus.QUEUED
        assert status_after_error(3, policy) == JobStatus.FAILED


class TestFormatError:
    """Error messages stored on failed jobs."""

    def test_includes_type_name(self):
        assert format_error(TimeoutError("rpc timed out")) == "TimeoutError: rpc timed out"

    def test_truncated(self):
        """Stored messages never exceed 500 characters."""
        message = format_error(RuntimeError("x" * 2000))
        assert len(message) == 500
        assert message.startswith("RuntimeError: ")
