"""Engine configuration."""

from __future__ import annotations

from dataclasses import dataclass, field

__all__ = ["EngineConfig", "RetryPolicy"]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff applied between service task attempts.

    Attributes:
        base_delay: Delay in seconds before the second attempt.
        multiplier: Growth factor applied per further attempt.
        max_delay: Upper bound for any single delay.
    """

    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Return the delay to wait after a failed attempt.

        Args:
            attempt: The 1-based number of the attempt that failed.

        Returns:
            Seconds to sleep before the next attempt.
        """
        return min(self.base_delay * self.multiplier ** max(attempt - 1, 0), self.max_delay)


@dataclass
class EngineConfig:
    """Configuration for :class:`~litestar_bpm.engine.orchestrator.ProcessEngine`.

    Attributes:
        worker_count: Number of workers consuming the continuation queue.
        queue_size: Capacity of the continuation queue. Submitters wait when full.
        job_max_attempts: Attempts for a continuation whose worker crashed.
        job_retry_delay: Seconds before a crashed continuation is re-queued.
        retry: Backoff policy for service tasks with ``errorHandling: retry``.
        default_priority: Instance priority when the caller gives none.
        http_timeout: Timeout in seconds for the built-in HTTP handler.
    """

    worker_count: int = 4
    queue_size: int = 1000
    job_max_attempts: int = 3
    job_retry_delay: float = 0.5
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    default_priority: int = 50
    http_timeout: float = 30.0
