"""
Trigger-token and invitation domain models.
Verification outcomes are values so callers can explain each failure.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel

INVITATION_USAGE = "invitation"
SIGNATURE_PREFIX = "iem-"
# Identity of tokens requested through the web form; not bound to a sender
ANONYMOUS_IDENTITY = "anonymous"


class VerifyError(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED = "malformed"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"


class TriggerToken(BaseModel):
    """Signed, self-contained trigger credential. Never persisted."""

    identity: str
    not_before: datetime
    expires_at: datetime
    token: str  # compact encoded form, carries the signature

    def is_valid_at(self, moment: datetime) -> bool:
        return self.not_before <= moment < self.expires_at


class TokenVerification(BaseModel):
    """Outcome of TokenService.verify."""

    ok: bool
    identity: str | None = None
    error: VerifyError | None = None
    not_before: datetime | None = None
    expires_at: datetime | None = None

    @classmethod
    def success(cls, identity: str, not_before: datetime, expires_at: datetime) -> "TokenVerification":
        return cls(ok=True, identity=identity, not_before=not_before, expires_at=expires_at)

    @classmethod
    def failure(
        cls,
        error: VerifyError,
        not_before: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> "TokenVerification":
        return cls(ok=False, error=error, not_before=not_before, expires_at=expires_at)


class InvitationToken(BaseModel):
    """
    Owner consent for a contact to act as a trusted requester.

    There is no expiry: the signature stays valid until the secret is
    rotated and can be replayed any number of times.
    """

    owner: str
    contact: str
    usage: Literal["invitation"] = INVITATION_USAGE
    signature: str  # hex HMAC-SHA256

    @property
    def reference(self) -> str:
        """Prefixed form embedded in the invitation link."""
        return f"{SIGNATURE_PREFIX}{self.signature}"
