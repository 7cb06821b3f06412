"""
Request/response models for the vault HTTP routes.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from afterlife.models.domain.token_domain import ANONYMOUS_IDENTITY
from afterlife.models.domain.workflow_domain import WorkflowInstance, WorkflowState


class TokenRequest(BaseModel):
    identity: str = Field(
        default=ANONYMOUS_IDENTITY, description="Requester the token is bound to"
    )


class TokenResponse(BaseModel):
    token: str = Field(..., description="Signed trigger token")
    not_before: datetime = Field(..., description="First instant the token is accepted")
    expires_at: datetime = Field(..., description="Instant the token stops being accepted")


class WorkflowStatusResponse(BaseModel):
    """Public view of a countdown; never exposes the requester identity."""

    id: str
    state: WorkflowState
    created_at: datetime
    updated_at: datetime
    resume_at: datetime | None = None
    wait_days: float

    @classmethod
    def from_instance(cls, instance: WorkflowInstance) -> "WorkflowStatusResponse":
        return cls(
            id=instance.id,
            state=instance.state,
            created_at=instance.created_at,
            updated_at=instance.updated_at,
            resume_at=instance.resume_at,
            wait_days=instance.wait_days,
        )


class CancelResponse(BaseModel):
    id: str
    cancelled: bool
    state: WorkflowState
    reason: str | None = None


class InboundResponse(BaseModel):
    ok: bool = True
    action: str
    workflow_id: str | None = None
    replies: int = 0
