"""Countdown workflow status and owner cancellation."""

from fastapi import APIRouter, Depends, HTTPException, status

from afterlife.auth.verify import owner_dependency
from afterlife.infrastructure.observability.logging import get_logger
from afterlife.models.api.vault_api import CancelResponse, WorkflowStatusResponse
from afterlife.services.workflow_service import get_workflow
from afterlife.workflows.countdown import CountdownWorkflow
from afterlife.workflows.errors import InstanceNotFound

logger = get_logger(__name__)

router = APIRouter(prefix="/workflows")


@router.get("/{workflow_id}", response_model=WorkflowStatusResponse)
async def get_workflow_status(
    workflow_id: str, workflow: CountdownWorkflow = Depends(get_workflow)
):
    try:
        instance = await workflow.get(workflow_id)
    except InstanceNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Workflow not found"
        ) from None
    return WorkflowStatusResponse.from_instance(instance)


@router.post("/{workflow_id}/cancel", response_model=CancelResponse)
async def cancel_workflow(
    workflow_id: str,
    owner: str = Depends(owner_dependency),
    workflow: CountdownWorkflow = Depends(get_workflow),
):
    """
    Owner Cancel. Cancelling a finished or releasing instance is a no-op
    reported with ``cancelled: false``.
    """
    try:
        result = await workflow.cancel(workflow_id)
    except InstanceNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Workflow not found"
        ) from None

    logger.info(
        "Owner cancel processed",
        workflow_id=workflow_id,
        owner=owner,
        cancelled=result.cancelled,
        state=result.state.value,
    )
    return CancelResponse(
        id=result.instance_id, cancelled=result.cancelled, state=result.state, reason=result.reason
    )
