"""
Extraction of addresses and credentials from free-form message text.
"""

import re

from afterlife.models.domain.token_domain import SIGNATURE_PREFIX

INVITE_SUBJECT_PATTERN = re.compile(r"(invite|invitation)", re.IGNORECASE)
ADDRESS_PATTERN = re.compile(r"[\w.-]+@[\w.-]+")
INVITATION_SIGNATURE_PATTERN = re.compile(re.escape(SIGNATURE_PREFIX) + r"([0-9a-f]{12,})")
TRIGGER_TOKEN_PATTERN = re.compile(r"\[ ([a-zA-Z0-9._-]+) \]")


def is_invitation_request(subject: str | None) -> bool:
    return bool(subject and INVITE_SUBJECT_PATTERN.search(subject))


def extract_contacts(text: str | None) -> list[str]:
    """Address-like substrings in order of appearance."""
    return ADDRESS_PATTERN.findall(text or "")


def extract_invitation_signature(text: str | None) -> str | None:
    match = INVITATION_SIGNATURE_PATTERN.search(text or "")
    return match.group(1) if match else None


def extract_trigger_token(text: str | None) -> str | None:
    # HTML mail clients turn the marker's spaces into &nbsp;
    normalized = (text or "").replace("&nbsp;", " ").replace("\u00a0", " ")
    match = TRIGGER_TOKEN_PATTERN.search(normalized)
    return match.group(1) if match else None


def wrap_trigger_token(token: str) -> str:
    return f"[ {token} ]"


CANCEL_SUBJECT_PATTERN = re.compile(r"\bcancel\b", re.IGNORECASE)
WORKFLOW_ID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)


def is_cancel_request(subject: str | None) -> bool:
    return bool(subject and CANCEL_SUBJECT_PATTERN.search(subject))


def extract_workflow_ids(text: str | None) -> list[str]:
    return [match.lower() for match in WORKFLOW_ID_PATTERN.findall(text or "")]
