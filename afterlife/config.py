import math
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"

DEFAULT_NOT_BEFORE_DAYS = 7.0
DEFAULT_EXPIRATION_DAYS = 14.0

# Sanity ceilings for day-based configuration
MAX_TOKEN_DAYS = 3650.0
MAX_WAIT_DAYS = 365.0


def parse_days(value: str | float | int | None, ceiling: float = MAX_TOKEN_DAYS) -> float:
    """
    Parse a day count from configuration.

    Anything that is not a finite, non-negative number no greater than
    ``ceiling`` parses as 0; callers substitute their default for 0.
    """
    if value is None:
        return 0.0
    try:
        days = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(days) or math.isinf(days):
        return 0.0
    if days < 0 or days > ceiling:
        return 0.0
    return days


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Vault settings
    SECRET: str = ""
    OWNER_EMAIL: str = ""
    SENDER_EMAIL: str | None = None
    SENDER_NAME: str = "Afterlife Vault"
    VAULT_CONTENT: str = ""
    NOT_BEFORE_DAYS: str | None = None
    EXPIRATION_DAYS: str | None = None
    CONTACT_WHITELIST: str | None = None
    OWNER_API_KEY: str | None = None

    # Redis settings
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20

    # =================================================================
    # COUNTDOWN WORKFLOW SETTINGS
    # =================================================================
    STEP_ATTEMPT_LIMIT: int = 3
    STEP_BASE_DELAY_SECONDS: float = 180.0  # 3 minutes
    STEP_BACKOFF_MULTIPLIER: float = 2.0
    RELEASE_EXHAUSTION_POLICY: Literal["complete", "fail"] = "complete"
    SCHEDULER_POLL_SECONDS: float = 30.0
    SCHEDULER_BATCH_SIZE: int = 50
    WORKFLOW_LOCK_TTL_SECONDS: int = 300

    # Invitation fan-out
    INVITE_STAGGER_SECONDS: float = 1.0
    MAX_CONCURRENT_INVITES: int = 5

    # SMTP transport
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_STARTTLS: bool = True
    SMTP_TIMEOUT_SECONDS: float = 30.0

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def sender_for(self, domain: str) -> str:
        """Outbound sender address, falling back to noreply@<domain>."""
        if self.SENDER_EMAIL:
            return self.SENDER_EMAIL
        return f"noreply@{domain}"

    def contact_whitelist(self) -> list[str] | None:
        """Allowed contact senders, or None when every sender is allowed."""
        if not self.CONTACT_WHITELIST:
            return None
        entries = [entry.strip() for entry in self.CONTACT_WHITELIST.split(",")]
        return [entry for entry in entries if entry]

    def not_before_days(self) -> float:
        return parse_days(self.NOT_BEFORE_DAYS, MAX_TOKEN_DAYS) or DEFAULT_NOT_BEFORE_DAYS

    def expiration_days(self) -> float:
        return parse_days(self.EXPIRATION_DAYS, MAX_TOKEN_DAYS) or DEFAULT_EXPIRATION_DAYS

    def wait_days(self) -> float:
        """Countdown waiting period; shares NOT_BEFORE_DAYS with trigger tokens."""
        return parse_days(self.NOT_BEFORE_DAYS, MAX_WAIT_DAYS) or DEFAULT_NOT_BEFORE_DAYS


settings = Settings()
