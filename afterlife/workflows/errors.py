"""Error types for the countdown workflow and its collaborators."""


class DeliveryFailure(Exception):
    """Transient failure delivering an outbound message. Retryable."""

    def __init__(self, message: str, recipient: str | None = None):
        super().__init__(message)
        self.recipient = recipient


class StepExhausted(Exception):
    """A retried step used its whole attempt budget."""

    def __init__(self, step: str, attempts: int, last_error: str | None = None):
        super().__init__(f"Step '{step}' failed after {attempts} attempts: {last_error}")
        self.step = step
        self.attempts = attempts
        self.last_error = last_error


class InstanceNotFound(Exception):
    def __init__(self, instance_id: str):
        super().__init__(f"Workflow instance not found: {instance_id}")
        self.instance_id = instance_id


class WorkflowStoreError(Exception):
    """Custom exception for durable store operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable
