"""
Countdown workflow: notify the owner, wait, release the vault content.

    created -> notifying -> sleeping -> releasing -> completed
    cancelled from created/notifying/sleeping
    failed when notifying exhausts its attempts (or releasing, under the
    "fail" release policy)

Each call to ``advance`` runs the instance forward until it has to wait
(backoff or the countdown itself) or reaches a terminal state. Every state
change is a compare-and-set against the durable record, so progress
survives restarts and an owner Cancel wins over any step that has not yet
moved the instance into releasing.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Protocol

from afterlife.config import settings
from afterlife.infrastructure.observability.logging import get_logger, log_workflow_transition
from afterlife.models.domain.workflow_domain import (
    CANCELLABLE_STATES,
    STEP_NOTIFY,
    STEP_RELEASE,
    CancelResult,
    WorkflowInstance,
    WorkflowState,
)
from afterlife.workflows.errors import InstanceNotFound, StepExhausted
from afterlife.workflows.repository import WorkflowRepository
from afterlife.workflows.retry import RetryPolicy, StepStatus, run_step

logger = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
# Upper bound on checkpointed steps per advance call; a full run needs 5
MAX_STEPS_PER_ADVANCE = 8
# Cancel re-reads after a lost race; the state can only move forward 4 times
MAX_CANCEL_RACES = 5


class ReleaseExhaustionPolicy(str, Enum):
    """What happens when the release step runs out of attempts."""

    COMPLETE = "complete"  # log the loss and finish as completed
    FAIL = "fail"  # finish as failed


class WorkflowMessenger(Protocol):
    async def notify_owner(self, instance: WorkflowInstance) -> None: ...

    async def release_content(self, instance: WorkflowInstance) -> None: ...


class CountdownWorkflow:
    """
    Engine driving WorkflowInstance records through the countdown.

    The engine never sleeps in-process: waiting is expressed as the
    instance's ``resume_at`` and an external scheduler calls ``advance``
    once it has passed.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        messenger: WorkflowMessenger,
        *,
        retry_policy: RetryPolicy | None = None,
        release_policy: ReleaseExhaustionPolicy | str | None = None,
        wait_days: float | None = None,
        lock_ttl_seconds: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._repository = repository
        self._messenger = messenger
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._release_policy = ReleaseExhaustionPolicy(
            release_policy or settings.RELEASE_EXHAUSTION_POLICY
        )
        self._wait_days = wait_days
        self._lock_ttl_seconds = lock_ttl_seconds or settings.WORKFLOW_LOCK_TTL_SECONDS
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def wait_days(self) -> float:
        return self._wait_days or settings.wait_days()

    async def start(
        self, identity: str, domain: str, *, now: datetime | None = None
    ) -> WorkflowInstance:
        """Create a new instance for a verified trigger request. Never deduplicates."""
        now = now or self._clock()
        instance = WorkflowInstance(
            identity=identity,
            domain=domain,
            wait_days=self.wait_days,
            created_at=now,
            updated_at=now,
            resume_at=now,
        )
        await self._repository.create(instance)

        logger.info(
            "Countdown workflow created",
            workflow_id=instance.id,
            identity=identity,
            domain=domain,
            wait_days=instance.wait_days,
        )
        return instance

    async def get(self, instance_id: str) -> WorkflowInstance:
        instance = await self._repository.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def cancel(self, instance_id: str, *, now: datetime | None = None) -> CancelResult:
        """
        Owner Cancel. Applies only while the instance is created, notifying
        or sleeping; anything else is a no-op, never an error.

        Raises:
            InstanceNotFound: If the id is unknown
        """
        now = now or self._clock()
        instance = await self.get(instance_id)

        for _ in range(MAX_CANCEL_RACES):
            if instance.state not in CANCELLABLE_STATES:
                logger.info(
                    "Cancel ignored",
                    workflow_id=instance_id,
                    state=instance.state.value,
                )
                return CancelResult(
                    instance_id=instance_id,
                    cancelled=False,
                    state=instance.state,
                    reason=f"instance is {instance.state.value}",
                )

            cancelled = instance.transition(WorkflowState.CANCELLED, now, resume_at=None)
            applied = await self._repository.compare_and_set(cancelled, instance.state)
            log_workflow_transition(
                instance_id, instance.state.value, WorkflowState.CANCELLED.value, applied
            )
            if applied:
                return CancelResult(
                    instance_id=instance_id, cancelled=True, state=WorkflowState.CANCELLED
                )
            # Lost a race with the engine; look again
            instance = await self.get(instance_id)

        return CancelResult(
            instance_id=instance_id,
            cancelled=False,
            state=instance.state,
            reason="state kept changing",
        )

    async def advance(self, instance_id: str, *, now: datetime | None = None) -> WorkflowInstance:
        """
        Run the instance forward as far as it can go at ``now``.

        Holds the per-instance execution lease for the duration; if another
        execution holds it, returns the stored instance untouched.
        """
        now = now or self._clock()
        lease = await self._repository.acquire_lock(instance_id, self._lock_ttl_seconds)
        if lease is None:
            logger.debug("Workflow already running elsewhere", workflow_id=instance_id)
            return await self.get(instance_id)

        try:
            instance = await self.get(instance_id)
            for _ in range(MAX_STEPS_PER_ADVANCE):
                if not instance.is_due(now):
                    break
                instance = await self._step(instance, now)
            return instance
        finally:
            await self._repository.release_lock(instance_id, lease)

    async def _step(self, instance: WorkflowInstance, now: datetime) -> WorkflowInstance:
        if instance.state == WorkflowState.CREATED:
            return await self._swap(
                instance, instance.transition(WorkflowState.NOTIFYING, now, resume_at=now)
            )

        if instance.state == WorkflowState.NOTIFYING:
            return await self._run_notify(instance, now)

        if instance.state == WorkflowState.SLEEPING:
            return await self._swap(
                instance, instance.transition(WorkflowState.RELEASING, now, resume_at=now)
            )

        if instance.state == WorkflowState.RELEASING:
            return await self._run_release(instance, now)

        return instance

    async def _run_notify(self, instance: WorkflowInstance, now: datetime) -> WorkflowInstance:
        instance, outcome = await self._attempt(
            instance, STEP_NOTIFY, self._messenger.notify_owner, now
        )

        if outcome.status == StepStatus.SUCCEEDED:
            wake_at = now + timedelta(seconds=instance.wait_days * SECONDS_PER_DAY)
            return await self._swap(
                instance,
                instance.transition(WorkflowState.SLEEPING, now, resume_at=wake_at, last_error=None),
            )

        if outcome.status == StepStatus.EXHAUSTED:
            # An owner who was never told cannot cancel, so stop here
            exhausted = StepExhausted(STEP_NOTIFY, outcome.attempt, outcome.error)
            return await self._swap(
                instance,
                instance.transition(
                    WorkflowState.FAILED, now, resume_at=None, last_error=str(exhausted)
                ),
            )

        return await self._after_attempt(instance, outcome, now)

    async def _run_release(self, instance: WorkflowInstance, now: datetime) -> WorkflowInstance:
        instance, outcome = await self._attempt(
            instance, STEP_RELEASE, self._messenger.release_content, now
        )

        if outcome.status == StepStatus.SUCCEEDED:
            return await self._swap(
                instance,
                instance.transition(
                    WorkflowState.COMPLETED, now, resume_at=None, last_error=None
                ),
            )

        if outcome.status == StepStatus.EXHAUSTED:
            exhausted = StepExhausted(STEP_RELEASE, outcome.attempt, outcome.error)
            final_state = (
                WorkflowState.FAILED
                if self._release_policy == ReleaseExhaustionPolicy.FAIL
                else WorkflowState.COMPLETED
            )
            logger.error(
                "Release undeliverable",
                workflow_id=instance.id,
                identity=instance.identity,
                policy=self._release_policy.value,
                final_state=final_state.value,
                error=str(exhausted),
            )
            return await self._swap(
                instance,
                instance.transition(final_state, now, resume_at=None, last_error=str(exhausted)),
            )

        return await self._after_attempt(instance, outcome, now)

    async def _attempt(self, instance: WorkflowInstance, step: str, send, now: datetime):
        """Run one attempt of ``step`` with the attempt number checkpointed first."""
        current = instance

        async def checkpoint(attempt: int) -> bool:
            nonlocal current
            marked = current.transition(
                current.state, now, attempts={**current.attempts, step: attempt}
            )
            if await self._repository.compare_and_set(marked, current.state):
                current = marked
                return True
            return False

        outcome = await run_step(
            step,
            lambda: send(current),
            self._retry_policy,
            instance.attempt_count(step),
            checkpoint,
            now,
        )
        return current, outcome

    async def _after_attempt(self, instance: WorkflowInstance, outcome, now: datetime):
        if outcome.status == StepStatus.PREEMPTED:
            logger.info(
                "Step skipped, instance changed state",
                workflow_id=instance.id,
                expected_state=instance.state.value,
            )
            return await self.get(instance.id)

        # StepStatus.RETRY
        return await self._swap(
            instance,
            instance.transition(
                instance.state, now, resume_at=outcome.retry_at, last_error=outcome.error
            ),
        )

    async def _swap(self, current: WorkflowInstance, updated: WorkflowInstance) -> WorkflowInstance:
        """Compare-and-set ``updated`` over ``current``; on a lost race return the stored record."""
        applied = await self._repository.compare_and_set(updated, current.state)
        if current.state != updated.state:
            log_workflow_transition(
                current.id,
                current.state.value,
                updated.state.value,
                applied,
                attempts=updated.attempts,
            )
        if applied:
            return updated
        return await self.get(current.id)
