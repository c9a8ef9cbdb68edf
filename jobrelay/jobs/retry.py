"""Retry policy and retrying client for external API calls.

Wraps a single executor call with bounded retries and linear backoff:
rate-limit responses back off on a long base, transient network failures on
a short base, and terminal errors are raised immediately.

Usage:
    client = RetryingClient(registry, clock)
    outcome = await client.call(JobKind.TEXT_GENERATION, payload, policy)
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog
from prometheus_client import Counter

from jobrelay.jobs.clock import Clock, SystemClock
from jobrelay.jobs.errors import (
    JobCallError,
    RateLimitedError,
    TerminalCallError,
    TransientNetworkError,
)
from jobrelay.jobs.models import ExecutionOutcome
from jobrelay.jobs.registry import ExecutorRegistry
from jobrelay.jobs.types import JobKind

logger = structlog.get_logger(__name__)

CALL_ATTEMPTS_TOTAL = Counter(
    "jobrelay_call_attempts_total",
    "External API call attempts",
    ["kind", "outcome"],  # success, rate_limited, transient, terminal
)


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    rate_limit_delay_seconds: float = 60.0
    transient_delay_seconds: float = 2.0
    # Per-attempt timeout; None disables it
    timeout_seconds: Optional[float] = 60.0
    jitter_factor: float = 0.0  # Add up to this fraction of random jitter

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def is_retryable(self, error: Exception) -> bool:
        """Rate limits and transient network errors are retried."""
        return isinstance(error, JobCallError) and error.retryable

    def backoff(self, attempt: int, error: Exception) -> float:
        """Delay before the attempt after `attempt` (1-indexed).

        Linear: base * attempt, where base depends on the error class.
        """
        if isinstance(error, RateLimitedError):
            delay = self.rate_limit_delay_seconds * attempt
            if error.retry_after_seconds:
                delay = max(delay, error.retry_after_seconds)
        else:
            delay = self.transient_delay_seconds * attempt

        if self.jitter_factor:
            delay += delay * self.jitter_factor * random.random()

        return delay


def classify_error(error: Exception) -> JobCallError:
    """Map an arbitrary exception from an executor onto the call error taxonomy."""
    if isinstance(error, JobCallError):
        return error
    if isinstance(error, asyncio.TimeoutError):
        return TransientNetworkError("Request timed out")
    if isinstance(error, (ConnectionError, OSError)):
        return TransientNetworkError(f"Network error: {error}")
    return TerminalCallError(f"{type(error).__name__}: {error}")


def _outcome_label(error: JobCallError) -> str:
    if isinstance(error, RateLimitedError):
        return "rate_limited"
    if isinstance(error, TransientNetworkError):
        return "transient"
    return "terminal"


class RetryingClient:
    """Calls executors with retry, backoff and a per-attempt timeout.

    Holds no per-call state, so scheduler slots can share one instance.
    """

    def __init__(self, registry: ExecutorRegistry, clock: Optional[Clock] = None):
        self._registry = registry
        self._clock = clock or SystemClock()

    async def call(
        self,
        kind: JobKind,
        payload: Any,
        policy: Optional[RetryPolicy] = None,
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> ExecutionOutcome:
        """
        Execute payload against the kind's executor with retries.

        Args:
            kind: Job kind, selects the executor
            payload: Validated payload model
            policy: Retry policy (defaults to RetryPolicy())
            on_attempt: Called with the 1-indexed attempt number before each attempt

        Returns:
            ExecutionOutcome from the executor

        Raises:
            JobCallError: Terminal error, or the last error once retries are exhausted
        """
        if policy is None:
            policy = RetryPolicy()

        executor = self._registry.get(kind)
        log = logger.bind(kind=kind.value)
        last_error: Optional[JobCallError] = None

        for attempt in range(1, policy.max_attempts + 1):
            if on_attempt is not None:
                on_attempt(attempt)

            try:
                if policy.timeout_seconds:
                    outcome = await asyncio.wait_for(
                        executor.execute(payload), timeout=policy.timeout_seconds
                    )
                else:
                    outcome = await executor.execute(payload)
                CALL_ATTEMPTS_TOTAL.labels(kind=kind.value, outcome="success").inc()
                return outcome

            except asyncio.CancelledError:
                raise

            except Exception as e:
                error = classify_error(e)
                if error is not e:
                    error.__cause__ = e
                last_error = error
                CALL_ATTEMPTS_TOTAL.labels(
                    kind=kind.value, outcome=_outcome_label(error)
                ).inc()

                if not policy.is_retryable(error):
                    log.warning(
                        "call_non_retryable_error",
                        attempt=attempt,
                        error=str(error),
                        error_type=type(error).__name__,
                    )
                    raise error

                if attempt < policy.max_attempts:
                    delay = policy.backoff(attempt, error)
                    log.warning(
                        "call_retry_attempt",
                        attempt=attempt,
                        max_attempts=policy.max_attempts,
                        delay_seconds=round(delay, 2),
                        error=str(error),
                        error_type=type(error).__name__,
                    )
                    await self._clock.sleep(delay)

        # All retries exhausted
        log.error(
            "call_retries_exhausted",
            attempts=policy.max_attempts,
            error=str(last_error),
        )
        raise last_error  # type: ignore[misc]
