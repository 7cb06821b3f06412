"""
Message router: classifies inbound mail by sender role and dispatches it
to the invitation service, the token service or the countdown workflow.
Also implements the workflow's outbound notifications.
"""

from afterlife.config import settings
from afterlife.infrastructure.observability.logging import get_logger, preview
from afterlife.messaging import parsing, templates
from afterlife.messaging.models import InboundMessage, OutboundMessage, RouteResult
from afterlife.messaging.transport import MessageTransport
from afterlife.models.domain.token_domain import (
    ANONYMOUS_IDENTITY,
    InvitationToken,
    TriggerToken,
    VerifyError,
)
from afterlife.models.domain.workflow_domain import WorkflowInstance
from afterlife.services.invitation_service import InvitationService, invitation_service
from afterlife.services.token_service import TokenService, token_service
from afterlife.workflows.countdown import CountdownWorkflow
from afterlife.workflows.errors import DeliveryFailure, InstanceNotFound

logger = get_logger(__name__)

AUTO_REPLY_SUBJECT = f"{templates.PRODUCT_NAME} Auto-Reply"
TOKEN_UNAVAILABLE_TEXT = "We could not process your token request right now. Please try again later."


class WorkflowMailer:
    """Outbound side of the countdown workflow."""

    def __init__(self, transport: MessageTransport, owner_email: str | None = None):
        self._transport = transport
        self._owner_email = owner_email

    @property
    def owner_email(self) -> str:
        return self._owner_email or settings.OWNER_EMAIL

    async def notify_owner(self, instance: WorkflowInstance) -> None:
        await self._transport.send(
            OutboundMessage(
                sender=settings.sender_for(instance.domain),
                recipient=self.owner_email,
                subject=templates.NOTIFY_SUBJECT,
                body=templates.workflow_notification(
                    instance.identity, instance.id, instance.wait_days
                ),
            )
        )

    async def release_content(self, instance: WorkflowInstance) -> None:
        await self._transport.send(
            OutboundMessage(
                sender=settings.sender_for(instance.domain),
                recipient=instance.identity,
                subject=templates.RELEASE_SUBJECT,
                body=templates.release_body(settings.VAULT_CONTENT),
            )
        )


class MessageRouter:
    def __init__(
        self,
        workflow: CountdownWorkflow,
        transport: MessageTransport,
        *,
        tokens: TokenService | None = None,
        invitations: InvitationService | None = None,
        owner_email: str | None = None,
    ):
        self._workflow = workflow
        self._transport = transport
        self._tokens = tokens or token_service
        self._invitations = invitations or invitation_service
        self._owner_email = owner_email

    @property
    def owner_email(self) -> str:
        return self._owner_email or settings.OWNER_EMAIL

    async def dispatch(self, message: InboundMessage) -> RouteResult:
        """Route ``message`` and deliver its replies. Reply failures are logged, not raised."""
        result = await self.route(message)
        for reply in result.replies:
            try:
                await self._transport.send(reply)
            except DeliveryFailure as e:
                logger.error(
                    "Failed to deliver reply",
                    recipient=reply.recipient,
                    action=result.action,
                    error=str(e),
                )
        return result

    async def route(self, message: InboundMessage) -> RouteResult:
        if message.in_reply_to:
            # Never answer a reply; avoids mail loops
            return RouteResult(action="ignored", detail="reply")

        if message.sender == self.owner_email:
            return await self._handle_owner(message)
        return await self._handle_contact(message)

    async def request_trigger_token(self, identity: str, domain: str) -> TriggerToken:
        """
        Notify the owner, then issue a trigger token for ``identity``.

        Raises:
            DeliveryFailure: If the owner could not be notified; no token is issued
        """
        await self._transport.send(
            OutboundMessage(
                sender=settings.sender_for(domain),
                recipient=self.owner_email,
                subject=templates.NOTIFY_SUBJECT,
                body=templates.token_notification(identity, settings.not_before_days()),
            )
        )
        return self._tokens.issue(identity)

    # Owner mail

    async def _handle_owner(self, message: InboundMessage) -> RouteResult:
        if parsing.is_invitation_request(message.subject):
            return await self._handle_invitations(message)
        if parsing.is_cancel_request(message.subject):
            return await self._handle_cancel(message)
        return RouteResult(action="ignored", detail="unrecognized owner request")

    async def _handle_invitations(self, message: InboundMessage) -> RouteResult:
        contacts = parsing.extract_contacts(message.body)
        if not contacts:
            logger.warning("No contact email found in the email body")
            return RouteResult(action="ignored", detail="no contacts")

        bot = message.recipient
        owner = message.sender

        async def deliver(invitation: InvitationToken) -> None:
            await self._transport.send(
                OutboundMessage(
                    sender=bot,
                    recipient=invitation.contact,
                    subject=templates.INVITATION_SUBJECT.format(owner=owner),
                    body=templates.invitation_body(
                        owner,
                        invitation.contact,
                        templates.invitation_link(bot, invitation.reference),
                    ),
                )
            )

        results = await self._invitations.invite_contacts(owner, contacts, deliver)
        return RouteResult(
            action="invitations_sent",
            replies=[self._reply(message, templates.invitation_report(results))],
            detail=f"{sum(1 for r in results if r.ok)}/{len(results)} delivered",
        )

    async def _handle_cancel(self, message: InboundMessage) -> RouteResult:
        workflow_ids = parsing.extract_workflow_ids(f"{message.subject}\n{message.body}")
        if not workflow_ids:
            return RouteResult(action="ignored", detail="no workflow id")

        lines = []
        for workflow_id in dict.fromkeys(workflow_ids):
            try:
                result = await self._workflow.cancel(workflow_id)
            except InstanceNotFound:
                lines.append(f"{workflow_id}: not found")
                continue
            if result.cancelled:
                lines.append(f"{workflow_id}: cancelled")
            else:
                lines.append(f"{workflow_id}: not cancelled ({result.reason})")

        return RouteResult(
            action="cancel_processed",
            replies=[self._reply(message, "\n".join(lines) + f"\n\n{templates.PRODUCT_NAME}")],
        )

    # Contact mail

    async def _handle_contact(self, message: InboundMessage) -> RouteResult:
        whitelist = settings.contact_whitelist()
        if whitelist is not None and message.sender not in whitelist:
            logger.info("Sender not in contact whitelist", sender=message.sender)
            return RouteResult(action="ignored", detail="sender not allowed")

        signature = parsing.extract_invitation_signature(message.body)
        if signature:
            return await self._handle_trigger_request(message, signature)

        token = parsing.extract_trigger_token(message.body)
        if token:
            return self._handle_token_check(message, token)

        return await self._handle_token_request(message)

    async def _handle_trigger_request(self, message: InboundMessage, signature: str) -> RouteResult:
        if not self._invitations.verify(self.owner_email, message.sender, signature):
            logger.warning(
                "Invalid invitation signature",
                sender=message.sender,
                signature_preview=preview(signature),
            )
            return RouteResult(action="ignored", detail="invalid invitation")

        instance = await self._workflow.start(message.sender, message.recipient_domain)
        body = templates.scheduled_body(self.owner_email, instance.id, instance.wait_days)
        return RouteResult(
            action="workflow_started",
            workflow_id=instance.id,
            replies=[self._reply(message, body)],
        )

    def _handle_token_check(self, message: InboundMessage, token: str) -> RouteResult:
        verification = self._tokens.verify(token)
        if verification.ok and verification.identity not in (message.sender, ANONYMOUS_IDENTITY):
            logger.warning(
                "Trigger token presented by another sender",
                sender=message.sender,
                identity=verification.identity,
            )
            return RouteResult(
                action="token_rejected",
                replies=[self._reply(message, templates.INVALID_TOKEN_TEXT, auto=True)],
                detail="identity_mismatch",
            )

        if verification.ok:
            logger.info("Vault content released by token", identity=verification.identity)
            return RouteResult(
                action="token_accepted",
                replies=[self._reply(message, settings.VAULT_CONTENT, auto=True)],
            )

        if verification.error == VerifyError.NOT_YET_VALID:
            text = templates.not_yet_valid_text(verification.not_before)
        elif verification.error == VerifyError.EXPIRED:
            text = templates.EXPIRED_TOKEN_TEXT
        else:
            # Tampered and malformed tokens get the same answer
            text = templates.INVALID_TOKEN_TEXT
        return RouteResult(
            action="token_rejected",
            replies=[self._reply(message, text, auto=True)],
            detail=verification.error.value,
        )

    async def _handle_token_request(self, message: InboundMessage) -> RouteResult:
        try:
            token = await self.request_trigger_token(message.sender, message.recipient_domain)
        except DeliveryFailure as e:
            logger.error("Owner notification failed, token withheld", error=str(e))
            return RouteResult(
                action="token_refused",
                replies=[self._reply(message, TOKEN_UNAVAILABLE_TEXT, auto=True)],
            )
        return RouteResult(
            action="token_issued",
            replies=[self._reply(message, parsing.wrap_trigger_token(token.token), auto=True)],
        )

    def _reply(self, message: InboundMessage, body: str, auto: bool = False) -> OutboundMessage:
        if auto or not message.subject:
            subject = AUTO_REPLY_SUBJECT
        else:
            subject = f"Re: {message.subject}"
        return OutboundMessage(
            sender=message.recipient,
            recipient=message.sender,
            subject=subject,
            body=body,
            in_reply_to=message.message_id,
        )
