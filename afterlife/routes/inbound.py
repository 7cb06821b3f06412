"""
Inbound mail webhook.

The mail gateway posts each received message as JSON and signs the raw
body with the shared secret (hex HMAC-SHA256 in ``x-afterlife-signature``).
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from afterlife.infrastructure.observability.logging import get_logger
from afterlife.messaging.models import InboundMessage
from afterlife.messaging.router import MessageRouter
from afterlife.models.api.vault_api import InboundResponse
from afterlife.security.signing import SigningError, verify_hex
from afterlife.services.workflow_service import get_router

logger = get_logger(__name__)

router = APIRouter()
SIGNATURE_HEADER = "x-afterlife-signature"


def verify_webhook_signature(raw: bytes, signature: str | None) -> None:
    if not signature:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing signature")
    try:
        valid = verify_hex(raw, signature)
    except SigningError as e:
        logger.error("Webhook secret misconfigured", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Signing not configured"
        ) from None
    if not valid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")


@router.post("/inbound/email", response_model=InboundResponse)
async def inbound_email(request: Request, message_router: MessageRouter = Depends(get_router)):
    raw = await request.body()
    verify_webhook_signature(raw, request.headers.get(SIGNATURE_HEADER))

    try:
        message = InboundMessage.model_validate_json(raw)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid message payload"
        ) from e

    result = await message_router.dispatch(message)

    logger.info(
        "Inbound message routed",
        sender=message.sender,
        action=result.action,
        detail=result.detail,
    )
    return InboundResponse(
        action=result.action, workflow_id=result.workflow_id, replies=len(result.replies)
    )
