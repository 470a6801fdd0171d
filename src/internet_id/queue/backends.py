"""Abstract queue backend interface, reachability check and backend factory.

This module defines the contract every queue backend implements (durable
FIFO/priority channel with delayed delivery) and the health check that picks
between async and sync execution. Backends never raise driver-specific
connection errors: they translate them to BackendUnavailableError so the
service can degrade to inline execution.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Set

from ..errors import BackendUnavailableError
from .models import ExecutionMode, QueueMessage

logger = logging.getLogger(__name__)


class QueueBackend(ABC):
    """Abstract queue interface for local/distributed backends.

    Implementations must provide:
    - Atomic claim (one delivery is handed to exactly one caller of pop())
    - Delayed delivery for retries (push with delay_s > 0)
    - Priority (higher first) then FIFO ordering among ready messages
    - At-least-once delivery: a popped message stays in flight until ack(),
      and release_stale_claims() hands abandoned claims out again
    """

    @abstractmethod
    def ping(self) -> bool:
        """Check connectivity.

        Returns:
            True when reachable

        Raises:
            BackendUnavailableError: If the backend cannot be reached
        """

    @abstractmethod
    def push(self, message: QueueMessage, delay_s: float = 0.0) -> str:
        """Submit a message, optionally delayed.

        Args:
            message: Message to deliver
            delay_s: Seconds before the message becomes claimable

        Returns:
            The backend message id (stored as the job's external id)
        """

    @abstractmethod
    def pop(self, worker_id: str, timeout_s: float) -> Optional[QueueMessage]:
        """Block up to timeout_s for the next ready message and claim it.

        Args:
            worker_id: Identifier of the claiming worker
            timeout_s: Maximum time to wait

        Returns:
            QueueMessage with delivery_count incremented, or None on timeout
        """

    @abstractmethod
    def ack(self, message: QueueMessage) -> None:
        """Remove a claimed message for good."""

    @abstractmethod
    def release_stale_claims(self, older_than_s: float) -> int:
        """Make messages popped more than older_than_s ago and never acked deliverable again.

        Returns:
            Number of messages released
        """

    @abstractmethod
    def pending_ids(self) -> Set[str]:
        """Ids of every message not yet acked: waiting, delayed or claimed."""

    @abstractmethod
    def depth(self) -> Dict[str, int]:
        """Backend-level metrics: waiting, delayed and active message counts."""

    @abstractmethod
    def close(self) -> None:
        """Release connections."""


class BackendHealth:
    """Chooses the execution mode for each enqueue call.

    The check result is cached for ttl_s seconds so a burst of requests does
    not ping the backend once each. No backend configured is always SYNC.
    """

    def __init__(
        self,
        backend: Optional[QueueBackend],
        ttl_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.ttl_s = ttl_s
        self._clock = clock
        self._lock = threading.Lock()
        self._mode: Optional[ExecutionMode] = None
        self._checked_at = 0.0

    def check(self) -> ExecutionMode:
        if self.backend is None:
            return ExecutionMode.SYNC

        with self._lock:
            now = self._clock()
            if self._mode is not None and now - self._checked_at < self.ttl_s:
                return self._mode

            try:
                reachable = self.backend.ping()
            except BackendUnavailableError as e:
                logger.warning("Queue backend unreachable, running jobs inline: %s", e)
                reachable = False

            mode = ExecutionMode.ASYNC if reachable else ExecutionMode.SYNC
            if mode != self._mode:
                logger.info("Verification queue execution mode: %s", mode.value)
            self._mode = mode
            self._checked_at = now
            return mode

    def mark_unavailable(self) -> None:
        """Force SYNC until the TTL lapses (called after a failed push)."""
        with self._lock:
            self._mode = ExecutionMode.SYNC
            self._checked_at = self._clock()


def create_queue_backend(url: Optional[str], **kwargs) -> Optional[QueueBackend]:
    """Build a backend from its location setting.

    Args:
        url: redis://, rediss:// or sqlite:///path; empty means no backend

    Returns:
        QueueBackend instance, or None for synchronous mode

    Raises:
        ValueError: If the scheme is not recognised
    """
    if not url:
        return None

    if url.startswith(("redis://", "rediss://", "unix://")):
        from .redis_backend import RedisQueue

        return RedisQueue.from_url(url, **kwargs)

    if url.startswith("sqlite:///"):
        from .sqlite_backend import SQLiteQueue

        return SQLiteQueue(url[len("sqlite:///"):], **kwargs)

    raise ValueError(f"Unsupported queue backend URL: {url}")
