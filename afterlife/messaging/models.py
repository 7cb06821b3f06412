"""Inbound and outbound message shapes exchanged with the mail gateway."""

from pydantic import BaseModel, Field


class InboundMessage(BaseModel):
    sender: str
    recipient: str
    subject: str = ""
    body: str = ""
    message_id: str | None = None
    in_reply_to: str | None = None

    @property
    def recipient_domain(self) -> str:
        return self.recipient.rsplit("@", 1)[-1]


class OutboundMessage(BaseModel):
    sender: str
    recipient: str
    subject: str
    body: str
    sender_name: str | None = None
    in_reply_to: str | None = None


class RouteResult(BaseModel):
    """What the router decided for one inbound message."""

    action: str
    replies: list[OutboundMessage] = Field(default_factory=list)
    workflow_id: str | None = None
    detail: str | None = None
