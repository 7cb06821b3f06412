"""
Structured logging setup for the vault service.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

SERVICE_NAME = "afterlife-vault"


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_service_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _add_service_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag every entry with the service name."""
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def preview(value: str | None, length: int = 8) -> str:
    """Shorten a secret-ish value (signature, token) for log output."""
    if not value:
        return ""
    return value[:length] + "..."


def log_workflow_transition(
    workflow_id: str, from_state: str, to_state: str, applied: bool, **extra: Any
) -> None:
    """Log a workflow state transition with consistent fields."""
    logger = get_logger("workflow")

    log_data = {
        "workflow_id": workflow_id,
        "from_state": from_state,
        "to_state": to_state,
        "applied": applied,
        "event_type": "workflow_transition",
        **extra,
    }

    if applied:
        logger.info("Workflow transition applied", **log_data)
    else:
        logger.warning("Workflow transition rejected", **log_data)
