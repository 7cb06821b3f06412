"""Manual trigger-token requests."""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from afterlife.infrastructure.observability.logging import get_logger
from afterlife.messaging.router import MessageRouter
from afterlife.models.api.vault_api import TokenRequest, TokenResponse
from afterlife.services.workflow_service import get_router
from afterlife.workflows.errors import DeliveryFailure

logger = get_logger(__name__)

router = APIRouter()


@router.post("/tokens", response_model=TokenResponse)
async def request_token(
    request: Request,
    payload: TokenRequest | None = None,
    message_router: MessageRouter = Depends(get_router),
):
    """
    Issue a trigger token after notifying the owner.

    Raises:
        502: Owner notification could not be delivered; no token is issued
    """
    payload = payload or TokenRequest()
    domain = request.url.hostname or "localhost"

    try:
        token = await message_router.request_trigger_token(payload.identity, domain)
    except DeliveryFailure as e:
        logger.error("Token request refused, owner not notified", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Owner notification failed"
        ) from None

    return TokenResponse(token=token.token, not_before=token.not_before, expires_at=token.expires_at)
