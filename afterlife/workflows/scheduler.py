"""
Timer service for countdown workflows.
Polls the durable due index and advances every instance whose resume_at
has passed. Runs in the worker process; any number of workers may run
because each instance is advanced under its own lease.
"""

import asyncio
from datetime import UTC, datetime

from afterlife.config import settings
from afterlife.infrastructure.observability.logging import get_logger
from afterlife.models.domain.workflow_domain import WorkflowState
from afterlife.workflows.countdown import CountdownWorkflow
from afterlife.workflows.repository import WorkflowRepository

logger = get_logger(__name__)

MAX_CONCURRENT_ADVANCES = 10


class SchedulerMetrics:
    """Metrics tracking for one scheduler pass."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.instances_due = 0
        self.instances_advanced = 0
        self.advance_errors = 0
        self.final_states: dict[str, int] = {}
        self.errors: list[dict] = []

    def record_advanced(self, state: WorkflowState):
        self.instances_advanced += 1
        self.final_states[state.value] = self.final_states.get(state.value, 0) + 1

    def record_error(self, instance_id: str, error: Exception):
        self.advance_errors += 1
        self.errors.append(
            {
                "workflow_id": instance_id,
                "error": str(error),
                "error_type": type(error).__name__,
            }
        )
        logger.error(
            "Workflow advance failed",
            workflow_id=instance_id,
            error=str(error),
            error_type=type(error).__name__,
        )

    def to_dict(self) -> dict:
        return {
            "job_run": "countdown_scheduler",
            "start_time": self.start_time.isoformat(),
            "instances_due": self.instances_due,
            "instances_advanced": self.instances_advanced,
            "advance_errors": self.advance_errors,
            "final_states": dict(self.final_states),
        }


class WorkflowScheduler:
    def __init__(
        self,
        workflow: CountdownWorkflow,
        repository: WorkflowRepository,
        *,
        batch_size: int | None = None,
        max_concurrency: int = MAX_CONCURRENT_ADVANCES,
    ):
        self._workflow = workflow
        self._repository = repository
        self._batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE
        self._max_concurrency = max_concurrency
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.metrics = SchedulerMetrics()

    async def run_once(self, now: datetime | None = None) -> dict:
        """
        Advance every due instance once.

        Returns:
            Dict: pass metrics
        """
        if self.is_running:
            logger.warning("Countdown scheduler already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        now = now or datetime.now(UTC)
        try:
            self.is_running = True
            self.metrics.reset()

            due = await self._repository.due_ids(now, self._batch_size)
            self.metrics.instances_due = len(due)
            if not due:
                return self.metrics.to_dict()

            semaphore = asyncio.Semaphore(self._max_concurrency)

            async def _advance(instance_id: str):
                async with semaphore:
                    try:
                        instance = await self._workflow.advance(instance_id, now=now)
                        self.metrics.record_advanced(instance.state)
                    except Exception as e:
                        self.metrics.record_error(instance_id, e)

            await asyncio.gather(*(_advance(instance_id) for instance_id in due))

            self.last_run_time = now
            metrics = self.metrics.to_dict()
            logger.info("Countdown scheduler pass completed", **metrics)
            return metrics

        finally:
            self.is_running = False


async def start_countdown_scheduler(scheduler: WorkflowScheduler | None = None) -> None:
    """
    Run the countdown timer loop forever.

    Meant for the worker process (``python -m afterlife.jobs.worker countdown``).
    """
    if scheduler is None:
        from afterlife.services.workflow_service import build_scheduler

        scheduler = build_scheduler()

    interval = settings.SCHEDULER_POLL_SECONDS
    logger.info("Starting countdown scheduler", poll_seconds=interval)

    while True:
        try:
            await scheduler.run_once()
        except Exception as e:
            logger.error(
                "Error in countdown scheduler", error=str(e), error_type=type(e).__name__
            )
        await asyncio.sleep(interval)
