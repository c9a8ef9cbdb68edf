"""Orchestrator error taxonomy.

Synchronous errors (ValidationError, NotFoundError) are raised to the caller.
Background errors (JobCallError subclasses, RemoteJobFailed) are captured on
the JobRecord and only surface through get_status/stats.
"""


class OrchestratorError(Exception):
    """Base error for the job orchestrator."""


class ValidationError(OrchestratorError):
    """Submit input rejected; the job was never enqueued."""

    def __init__(self, message: str, kind: str | None = None):
        self.kind = kind
        super().__init__(message)


class NotFoundError(OrchestratorError):
    """Unknown job id (never submitted, or already swept)."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidTransitionError(OrchestratorError):
    """A JobRecord mutation would break the forward-only lifecycle."""


# ===========================================
# Call errors - executors map provider failures to these
# ===========================================


class JobCallError(OrchestratorError):
    """Base error from an external API call."""

    retryable: bool = False

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimitedError(JobCallError):
    """Remote API signalled a rate limit (HTTP 429 or equivalent)."""

    retryable = True

    def __init__(
        self,
        message: str = "Rate limited by remote API",
        status_code: int | None = 429,
        retry_after_seconds: float | None = None,
    ):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, status_code)


class TransientNetworkError(JobCallError):
    """Timeout, connection failure or 5xx; worth retrying with a short backoff."""

    retryable = True


class TerminalCallError(JobCallError):
    """Validation or other non-retryable rejection from the remote API."""


class RemoteJobFailed(OrchestratorError):
    """Remote API reported a terminal failure for an asynchronous job."""

    def __init__(self, remote_handle: str, message: str):
        self.remote_handle = remote_handle
        super().__init__(message)
