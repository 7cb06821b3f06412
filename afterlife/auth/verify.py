"""
verify.py
---------
Purpose:
    Owner authentication for the HTTP surface.

Notes:
    - The owner presents OWNER_API_KEY as a bearer token.
    - Inbound mail webhooks are authenticated separately by an HMAC
      signature over the raw body (see routes/inbound.py).
"""

import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from afterlife.config import settings

_security = HTTPBearer()


def verify_owner_key(token: str) -> bool:
    expected = settings.OWNER_API_KEY
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Owner API key is not configured",
        )
    return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


def owner_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> str:
    if not verify_owner_key(credentials.credentials):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid owner credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return settings.OWNER_EMAIL
