"""
Countdown workflow domain model.
ENHANCED: per-step attempt counters are part of the persisted record so a
restart resumes the same retry budget.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class WorkflowState(str, Enum):
    CREATED = "created"
    NOTIFYING = "notifying"
    SLEEPING = "sleeping"
    RELEASING = "releasing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {WorkflowState.COMPLETED, WorkflowState.CANCELLED, WorkflowState.FAILED}
)
# Releasing is deliberately absent: once release has begun it cannot be cancelled
CANCELLABLE_STATES = frozenset(
    {WorkflowState.CREATED, WorkflowState.NOTIFYING, WorkflowState.SLEEPING}
)

STEP_NOTIFY = "notify"
STEP_RELEASE = "release"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WorkflowInstance(BaseModel):
    """Durable record of one countdown, owned by the workflow engine."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    identity: str
    domain: str
    state: WorkflowState = WorkflowState.CREATED
    wait_days: float
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    resume_at: datetime | None = None
    attempts: dict[str, int] = Field(default_factory=dict)
    last_error: str | None = None

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_due(self, now: datetime) -> bool:
        if self.is_terminal():
            return False
        return self.resume_at is None or self.resume_at <= now

    def attempt_count(self, step: str) -> int:
        return self.attempts.get(step, 0)

    def transition(self, state: WorkflowState, now: datetime, **changes) -> "WorkflowInstance":
        """Copy of this instance moved to ``state``; the caller persists it."""
        return self.model_copy(update={"state": state, "updated_at": now, **changes})


@dataclass(slots=True)
class CancelResult:
    """Outcome of an owner Cancel command. Non-cancellable states are a no-op."""

    instance_id: str
    cancelled: bool
    state: WorkflowState
    reason: str | None = None
