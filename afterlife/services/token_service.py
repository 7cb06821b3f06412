"""
Token Service for time-bound trigger tokens.
Tokens are HS256 JWTs keyed by the shared secret; nothing is stored.
"""

from datetime import UTC, datetime

import jwt

from afterlife.config import MAX_TOKEN_DAYS, parse_days, settings
from afterlife.infrastructure.observability.logging import get_logger, preview
from afterlife.models.domain.token_domain import TokenVerification, TriggerToken, VerifyError
from afterlife.security.signing import secret_bytes

logger = get_logger(__name__)

TOKEN_ALGORITHM = "HS256"
SECONDS_PER_DAY = 24 * 60 * 60
# Smallest validity window; keeps not_before < expires_at for any inputs
MIN_VALIDITY_DAYS = 0.03
REQUIRED_CLAIMS = ["identity", "nbf", "exp"]


def _is_number(value) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


class TokenService:
    """
    Issues and verifies trigger tokens.

    Verification checks the signature before the time bounds and never
    raises for bad input: every outcome is a TokenVerification.
    """

    def __init__(
        self,
        secret: str | None = None,
        not_before_days: float | None = None,
        expiration_days: float | None = None,
    ):
        self._secret = secret
        self._not_before_days = not_before_days
        self._expiration_days = expiration_days

    def _default_not_before_days(self) -> float:
        return parse_days(self._not_before_days) or settings.not_before_days()

    def _default_expiration_days(self) -> float:
        return parse_days(self._expiration_days) or settings.expiration_days()

    def issue(
        self,
        identity: str,
        not_before_days: float | None = None,
        expiration_days: float | None = None,
        *,
        now: datetime | None = None,
    ) -> TriggerToken:
        """
        Issue a trigger token for ``identity``.

        Args:
            identity: Requester the token is bound to
            not_before_days: Days until the token opens (default from config)
            expiration_days: Days until the token closes; always at least
                not_before_days + MIN_VALIDITY_DAYS
            now: Issuance instant (defaults to the current time)

        Returns:
            TriggerToken: Signed token with its validity window
        """
        now = now or datetime.now(UTC)
        nb_days = parse_days(not_before_days, MAX_TOKEN_DAYS) or self._default_not_before_days()
        exp_days = max(
            parse_days(expiration_days, MAX_TOKEN_DAYS) or self._default_expiration_days(),
            nb_days + MIN_VALIDITY_DAYS,
        )

        issued_at = int(now.timestamp())
        nbf = issued_at + int(nb_days * SECONDS_PER_DAY)
        exp = issued_at + int(exp_days * SECONDS_PER_DAY)

        encoded = jwt.encode(
            {"identity": identity, "nbf": nbf, "exp": exp},
            secret_bytes(self._secret),
            algorithm=TOKEN_ALGORITHM,
        )

        logger.info(
            "Trigger token issued",
            identity=identity,
            not_before_days=nb_days,
            expiration_days=exp_days,
        )

        return TriggerToken(
            identity=identity,
            not_before=datetime.fromtimestamp(nbf, UTC),
            expires_at=datetime.fromtimestamp(exp, UTC),
            token=encoded,
        )

    def verify(self, token: str | None, *, now: datetime | None = None) -> TokenVerification:
        """
        Verify a trigger token.

        Returns:
            TokenVerification: ok with identity, or one of InvalidSignature,
            Malformed, NotYetValid (with not_before) or Expired (with expires_at)
        """
        if not token or not isinstance(token, str):
            return TokenVerification.failure(VerifyError.MALFORMED)

        key = secret_bytes(self._secret)
        try:
            # Signature only; time bounds are checked below against ``now``
            claims = jwt.decode(
                token,
                key,
                algorithms=[TOKEN_ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_nbf": False,
                    "require": REQUIRED_CLAIMS,
                },
            )
        except jwt.InvalidSignatureError:
            logger.warning("Trigger token signature mismatch", token_preview=preview(token))
            return TokenVerification.failure(VerifyError.INVALID_SIGNATURE)
        except jwt.InvalidTokenError as e:
            logger.warning(
                "Malformed trigger token",
                token_preview=preview(token),
                error_type=type(e).__name__,
            )
            return TokenVerification.failure(VerifyError.MALFORMED)

        identity = claims.get("identity")
        nbf = claims.get("nbf")
        exp = claims.get("exp")
        if not isinstance(identity, str) or not _is_number(nbf) or not _is_number(exp):
            return TokenVerification.failure(VerifyError.MALFORMED)

        not_before = datetime.fromtimestamp(nbf, UTC)
        expires_at = datetime.fromtimestamp(exp, UTC)
        now = now or datetime.now(UTC)

        if now < not_before:
            return TokenVerification.failure(
                VerifyError.NOT_YET_VALID, not_before=not_before, expires_at=expires_at
            )
        if now >= expires_at:
            return TokenVerification.failure(
                VerifyError.EXPIRED, not_before=not_before, expires_at=expires_at
            )

        logger.info("Trigger token verified", identity=identity)
        return TokenVerification.success(identity, not_before, expires_at)


# Singleton instance for application use
token_service = TokenService()
