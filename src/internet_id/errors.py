"""Exception taxonomy for the verification job queue."""


class InternetIdError(Exception):
    """Base class for errors raised by this package."""


class BackendUnavailableError(InternetIdError):
    """The queue backend cannot be reached (connection refused, timeout, closed)."""


class JobNotFoundError(InternetIdError):
    """No job record exists for the requested identifier."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(InternetIdError):
    """A job state change that the state machine does not allow."""

    def __init__(self, from_state: str, to_state: str):
        super().__init__(f"Invalid job transition: {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class UnsupportedManifestUriError(InternetIdError, ValueError):
    """Manifest URI scheme is neither ipfs:// nor http(s)://."""
