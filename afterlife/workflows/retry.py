"""
Per-step retry with exponential backoff for durable workflows.

Unlike an in-process retry loop, nothing here sleeps: a failed attempt
yields the instant the next attempt is due, and the engine persists it.
The attempt number is checkpointed before the step body runs, so a crash
mid-attempt still consumes that attempt on restart.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from afterlife.config import settings
from afterlife.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

StepBody = Callable[[], Awaitable[None]]
Checkpoint = Callable[[int], Awaitable[bool]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    attempt_limit: int = 3
    base_delay_seconds: float = 180.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.attempt_limit < 1:
            raise ValueError("attempt_limit must be at least 1")
        if self.base_delay_seconds < 0 or self.multiplier < 1:
            raise ValueError("backoff must be non-negative and non-shrinking")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            attempt_limit=settings.STEP_ATTEMPT_LIMIT,
            base_delay_seconds=settings.STEP_BASE_DELAY_SECONDS,
            multiplier=settings.STEP_BACKOFF_MULTIPLIER,
        )

    def delay_after(self, attempt: int) -> timedelta:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        return timedelta(seconds=self.base_delay_seconds * (self.multiplier ** (attempt - 1)))


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY = "retry"
    EXHAUSTED = "exhausted"
    PREEMPTED = "preempted"  # instance changed state before the body could start


@dataclass(slots=True)
class StepOutcome:
    status: StepStatus
    attempt: int
    retry_at: datetime | None = None
    error: str | None = None


async def run_step(
    name: str,
    body: StepBody,
    policy: RetryPolicy,
    attempts_used: int,
    checkpoint: Checkpoint,
    now: datetime,
) -> StepOutcome:
    """
    Run one attempt of a retried step.

    Args:
        name: Step name for logging
        body: The side-effecting step; must tolerate re-execution
        policy: Attempt limit and backoff
        attempts_used: Attempts already persisted for this step
        checkpoint: Persists the new attempt number; False means the
            instance moved on (e.g. cancelled) and the body must not run
        now: Current instant, used to compute the next attempt time

    Returns:
        StepOutcome describing what the engine should persist next
    """
    attempt = attempts_used + 1
    if attempt > policy.attempt_limit:
        # Budget already spent before a restart
        return StepOutcome(StepStatus.EXHAUSTED, attempts_used, error="attempt budget spent")

    if not await checkpoint(attempt):
        return StepOutcome(StepStatus.PREEMPTED, attempt)

    try:
        await body()
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        if attempt >= policy.attempt_limit:
            logger.error(
                "Step failed after all attempts",
                step=name,
                attempts=attempt,
                error=error,
            )
            return StepOutcome(StepStatus.EXHAUSTED, attempt, error=error)

        retry_at = now + policy.delay_after(attempt)
        logger.warning(
            "Step failed, retry scheduled",
            step=name,
            attempt=attempt,
            attempt_limit=policy.attempt_limit,
            retry_at=retry_at.isoformat(),
            error=error,
        )
        return StepOutcome(StepStatus.RETRY, attempt, retry_at=retry_at, error=error)

    return StepOutcome(StepStatus.SUCCEEDED, attempt)
