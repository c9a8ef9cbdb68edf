"""Executor registry - maps job kinds to the client that performs the work."""

from typing import Any, Protocol, runtime_checkable

from jobrelay.jobs.models import ExecutionOutcome, RemoteStatus
from jobrelay.jobs.types import JobKind


@runtime_checkable
class JobExecutor(Protocol):
    """Adapter between a job kind and its external processing API.

    Executors classify failures by raising RateLimitedError,
    TransientNetworkError or TerminalCallError.
    """

    kind: JobKind
    is_async: bool

    async def execute(self, payload: Any) -> ExecutionOutcome:
        """Perform (or submit) the work for one payload."""
        ...

    async def fetch_status(self, remote_handle: str) -> RemoteStatus:
        """Fetch remote status for an asynchronous job."""
        ...


class ExecutorRegistry:
    """Registry mapping job kinds to their executors."""

    def __init__(self):
        self._executors: dict[JobKind, JobExecutor] = {}

    def register(self, executor: JobExecutor) -> None:
        """Register an executor under its kind (replaces any previous one)."""
        self._executors[executor.kind] = executor

    def get(self, kind: JobKind) -> JobExecutor:
        """Get the executor for a kind. Raises KeyError if not found."""
        if kind not in self._executors:
            raise KeyError(f"No executor registered for job kind: {kind}")
        return self._executors[kind]

    def kinds(self) -> list[JobKind]:
        return list(self._executors)

    def __contains__(self, kind: object) -> bool:
        return kind in self._executors

    def __len__(self) -> int:
        return len(self._executors)
