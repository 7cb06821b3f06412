"""
Wiring for the countdown workflow and the message router.
Builds the shared instances lazily so importing never touches Redis or SMTP.
"""

from functools import lru_cache

from afterlife.messaging.router import MessageRouter, WorkflowMailer
from afterlife.messaging.transport import smtp_transport
from afterlife.workflows.countdown import CountdownWorkflow
from afterlife.workflows.repository import workflow_repository
from afterlife.workflows.scheduler import WorkflowScheduler


@lru_cache(maxsize=1)
def get_workflow() -> CountdownWorkflow:
    return CountdownWorkflow(workflow_repository, WorkflowMailer(smtp_transport))


@lru_cache(maxsize=1)
def get_router() -> MessageRouter:
    return MessageRouter(get_workflow(), smtp_transport)


def build_scheduler() -> WorkflowScheduler:
    return WorkflowScheduler(get_workflow(), workflow_repository)
