"""
HMAC-SHA256 signing primitives shared by the token and invitation services.

The canonical encoding is a wire contract: compact JSON with keys sorted
alphabetically and non-ASCII characters left unescaped. Signing and
verifying must go through ``canonicalize`` or every verification fails.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Mapping

from afterlife.config import settings

SECRET_MIN_LENGTH = 16  # keep configurable but catch obvious misconfiguration
CANONICAL_VERSION = 1

__all__ = [
    "SigningError",
    "canonicalize",
    "secret_bytes",
    "sign",
    "sign_hex",
    "verify",
    "verify_hex",
]


class SigningError(RuntimeError):
    """Raised when signing prerequisites are not satisfied."""


def secret_bytes(secret: str | bytes | None = None) -> bytes:
    """Resolve the shared secret, defaulting to ``settings.SECRET``."""
    if secret is None:
        secret = settings.SECRET
    if not secret:
        raise SigningError("SECRET is not configured")
    if len(secret) < SECRET_MIN_LENGTH:
        raise SigningError("SECRET is too short; please rotate it")
    if isinstance(secret, str):
        return secret.encode("utf-8")
    return secret


def canonicalize(fields: Mapping[str, Any]) -> bytes:
    """
    Deterministically encode ``fields`` for signing.

    Keys are sorted alphabetically, separators carry no whitespace.
    """
    return json.dumps(
        dict(fields), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def sign(payload: bytes, *, secret: str | bytes | None = None) -> bytes:
    """Raw HMAC-SHA256 signature of ``payload``."""
    return hmac.new(secret_bytes(secret), payload, hashlib.sha256).digest()


def sign_hex(payload: bytes, *, secret: str | bytes | None = None) -> str:
    return sign(payload, secret=secret).hex()


def verify(payload: bytes, signature: bytes, *, secret: str | bytes | None = None) -> bool:
    """Constant-time check of a raw signature."""
    expected = sign(payload, secret=secret)
    return hmac.compare_digest(expected, signature)


def verify_hex(payload: bytes, signature: str | None, *, secret: str | bytes | None = None) -> bool:
    """
    Constant-time check of a hex signature.

    Malformed hex is treated as a mismatch rather than an error.
    """
    if not signature:
        return False
    try:
        raw = bytes.fromhex(signature)
    except ValueError:
        return False
    return verify(payload, raw, secret=secret)
