"""
Invitation Service for trusted-contact credentials.

Signatures are deterministic HMACs over the canonical
{contact, owner, usage} payload: no nonce, no timestamp, no stored list.
The same (owner, contact) pair always yields the same signature, which
keeps verification stateless at the cost of unlimited replay until the
secret is rotated.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from afterlife.config import settings
from afterlife.infrastructure.observability.logging import get_logger, preview
from afterlife.models.domain.token_domain import INVITATION_USAGE, InvitationToken
from afterlife.security.signing import canonicalize, sign_hex, verify_hex

logger = get_logger(__name__)

InvitationDelivery = Callable[[InvitationToken], Awaitable[None]]


@dataclass(slots=True)
class InvitationResult:
    """Per-contact outcome of an invitation fan-out."""

    contact: str
    ok: bool
    error: str | None = None
    token: InvitationToken | None = None


def invitation_payload(owner: str, contact: str) -> bytes:
    return canonicalize({"contact": contact, "owner": owner, "usage": INVITATION_USAGE})


class InvitationService:
    def __init__(self, secret: str | None = None):
        self._secret = secret

    def issue(self, owner: str, contact: str) -> InvitationToken:
        """Sign an invitation for ``contact`` on behalf of ``owner``."""
        signature = sign_hex(invitation_payload(owner, contact), secret=self._secret)
        return InvitationToken(owner=owner, contact=contact, signature=signature)

    def verify(self, owner: str, contact: str, signature: str | None) -> bool:
        """Recompute the payload for the claimed pair and compare in constant time."""
        valid = verify_hex(invitation_payload(owner, contact), signature, secret=self._secret)
        if not valid:
            logger.warning(
                "Invitation signature rejected",
                contact=contact,
                signature_preview=preview(signature),
            )
        return valid

    async def invite_contacts(
        self,
        owner: str,
        contacts: Iterable[str],
        deliver: InvitationDelivery,
        *,
        stagger_seconds: float | None = None,
        max_concurrency: int | None = None,
    ) -> list[InvitationResult]:
        """
        Issue and deliver invitations to every contact.

        Sends start ``stagger_seconds`` apart and at most ``max_concurrency``
        run at once. One contact's failure never aborts the others; the
        result list follows the input order.
        """
        contacts = list(contacts)
        stagger = settings.INVITE_STAGGER_SECONDS if stagger_seconds is None else stagger_seconds
        limit = max_concurrency or settings.MAX_CONCURRENT_INVITES
        semaphore = asyncio.Semaphore(max(1, limit))

        async def _invite(index: int, contact: str) -> InvitationToken:
            if stagger > 0:
                await asyncio.sleep(index * stagger)
            async with semaphore:
                token = self.issue(owner, contact)
                await deliver(token)
                return token

        outcomes = await asyncio.gather(
            *(_invite(i, contact) for i, contact in enumerate(contacts)),
            return_exceptions=True,
        )

        results: list[InvitationResult] = []
        for contact, outcome in zip(contacts, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "Invitation delivery failed",
                    contact=contact,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                results.append(InvitationResult(contact=contact, ok=False, error=str(outcome)))
            else:
                results.append(InvitationResult(contact=contact, ok=True, token=outcome))

        logger.info(
            "Invitation fan-out finished",
            owner=owner,
            contacts=len(contacts),
            delivered=sum(1 for r in results if r.ok),
        )
        return results


# Singleton instance for application use
invitation_service = InvitationService()
