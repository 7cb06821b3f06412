"""Plain-text bodies for every message the vault sends."""

from datetime import datetime
from email.utils import format_datetime
from urllib.parse import quote

from afterlife.services.invitation_service import InvitationResult

PRODUCT_NAME = "Afterlife Vault"

NOTIFY_SUBJECT = f"{PRODUCT_NAME} Token Request Notification"
RELEASE_SUBJECT = "Secret Message from Your Contact"
INVITATION_SUBJECT = f"{PRODUCT_NAME} Invitation from {{owner}}"
DATA_ACCESS_SUBJECT = "Data Access Request"

WORKFLOW_NOTIFY_TEMPLATE = """
{identity}

Your {product} instance received a token request from this email address.
This means this contact believes you are no longer able to handle this email.
If this is not the case, please immediately cancel the following workflow to invalidate
the request:

{workflow_id}

Otherwise, this request will be granted in {wait_days} days
and the contact will receive the SECRET you have stored in your instance.

{product}
"""

TOKEN_NOTIFY_TEMPLATE = """
{identity}

Your {product} instance issued a token to this requester.
If this is not expected, please immediately rotate your {product} secret
to invalidate the token. Otherwise, this token will be valid in {not_before_days} days
and the requester will be able to access the SECRET you have stored in your instance.

{product}
"""

INVITATION_TEMPLATE = """
To {contact},

Your contact {owner} has invited you to join {product}.
When you are sure they can no longer handle their email account, you can use the link
at the end of this email to create a message requesting access to their account data.
Note:
Please keep your email account secure to prevent malicious use by others.
Please do not use this service while your contact can still access their email account,
otherwise your account will be banned.

{link}

{product}
"""

SCHEDULED_TEMPLATE = """
Your request has been received. However, to confirm that {owner}'s email is no longer
in use, we have sent them a confirmation email. If they do not respond within
{wait_days} days, we will send you an email containing a secret message they left.
A new workflow has been created for this request. You can check the status with this ID:
{workflow_id}
We understand your urgency, but please be patient.

{product}
"""

RELEASE_TEMPLATE = "Here is the secret message you requested:\n\n{content}"

INVITATION_REPORT_TEMPLATE = (
    "We've tried to send out the invitation emails to the contacts you provided.\n"
    "Email status:\n{report}\n{product}"
)

INVALID_TOKEN_TEXT = "Invalid token."
EXPIRED_TOKEN_TEXT = "Token has expired."
NOT_YET_VALID_TEMPLATE = "Token is not yet valid. It will be valid after {not_before}"


def format_days(days: float) -> str:
    """7.0 -> '7', 0.5 -> '0.5'."""
    return f"{days:g}"


def format_instant(moment: datetime) -> str:
    """RFC 1123 form, e.g. 'Sun, 25 Oct 2026 12:00:00 GMT'."""
    return format_datetime(moment, usegmt=True)


def workflow_notification(identity: str, workflow_id: str, wait_days: float) -> str:
    return WORKFLOW_NOTIFY_TEMPLATE.format(
        identity=identity,
        workflow_id=workflow_id,
        wait_days=format_days(wait_days),
        product=PRODUCT_NAME,
    )


def token_notification(identity: str, not_before_days: float) -> str:
    return TOKEN_NOTIFY_TEMPLATE.format(
        identity=identity,
        not_before_days=format_days(not_before_days),
        product=PRODUCT_NAME,
    )


def invitation_body(owner: str, contact: str, link: str) -> str:
    return INVITATION_TEMPLATE.format(
        owner=owner, contact=contact, link=link, product=PRODUCT_NAME
    )


def invitation_link(bot_address: str, reference: str) -> str:
    return f"mailto:{bot_address}?subject={quote(DATA_ACCESS_SUBJECT)}&body={reference}"


def scheduled_body(owner: str, workflow_id: str, wait_days: float) -> str:
    return SCHEDULED_TEMPLATE.format(
        owner=owner,
        workflow_id=workflow_id,
        wait_days=format_days(wait_days),
        product=PRODUCT_NAME,
    )


def release_body(content: str) -> str:
    return RELEASE_TEMPLATE.format(content=content)


def invitation_report(results: list[InvitationResult]) -> str:
    report = "".join(
        f"{result.contact}: {'success' if result.ok else result.error}\n" for result in results
    )
    return INVITATION_REPORT_TEMPLATE.format(report=report, product=PRODUCT_NAME)


def not_yet_valid_text(not_before: datetime) -> str:
    return NOT_YET_VALID_TEMPLATE.format(not_before=format_instant(not_before))
