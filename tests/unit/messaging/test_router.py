from datetime import UTC, datetime, timedelta

import pytest

from afterlife.messaging import parsing
from afterlife.messaging.models import InboundMessage
from afterlife.messaging.router import AUTO_REPLY_SUBJECT, TOKEN_UNAVAILABLE_TEXT, MessageRouter
from afterlife.models.domain.token_domain import ANONYMOUS_IDENTITY
from afterlife.models.domain.workflow_domain import WorkflowState
from afterlife.services.invitation_service import InvitationService
from afterlife.services.token_service import TokenService
from conftest import OWNER, VAULT_CONTENT

BOT = "vault@y.com"
CONTACT = "friend@x.com"


@pytest.fixture
def router(workflow, transport):
    return MessageRouter(workflow, transport)


def _mail(sender=CONTACT, subject="hello", body="", **kwargs):
    return InboundMessage(
        sender=sender, recipient=BOT, subject=subject, body=body, message_id="<m1@x.com>", **kwargs
    )


@pytest.mark.asyncio
async def test_owner_invitation_fan_out(router, transport):
    transport.failing.add("c2@x.com")
    message = _mail(sender=OWNER, subject="Invite", body="c1@x.com\nc2@x.com\nc3@x.com")

    result = await router.route(message)

    assert result.action == "invitations_sent"
    assert result.detail == "2/3 delivered"
    assert len(transport.attempts) == 3
    invitation = transport.sent_to("c1@x.com")[0]
    assert invitation.sender == BOT
    assert OWNER in invitation.subject
    expected = InvitationService().issue(OWNER, "c1@x.com").reference
    assert expected in invitation.body

    report = result.replies[0]
    assert report.recipient == OWNER
    assert report.subject == "Re: Invite"
    assert "c1@x.com: success" in report.body
    assert "c2@x.com: mailbox unavailable" in report.body
    assert "c3@x.com: success" in report.body


@pytest.mark.asyncio
async def test_owner_invitation_without_contacts(router, transport):
    result = await router.route(_mail(sender=OWNER, subject="invitation", body="nobody"))

    assert result.action == "ignored"
    assert transport.attempts == []


@pytest.mark.asyncio
async def test_invited_contact_starts_countdown(router, fake_repository):
    reference = InvitationService().issue(OWNER, CONTACT).reference

    result = await router.route(_mail(subject="Data Access Request", body=reference))

    assert result.action == "workflow_started"
    instance = await fake_repository.get(result.workflow_id)
    assert instance.state == WorkflowState.CREATED
    assert instance.identity == CONTACT
    assert instance.domain == "y.com"
    assert result.workflow_id in result.replies[0].body


@pytest.mark.asyncio
async def test_signature_for_another_contact_is_ignored(router, fake_repository):
    reference = InvitationService().issue(OWNER, "someone-else@x.com").reference

    result = await router.route(_mail(body=reference))

    assert result.action == "ignored"
    assert result.replies == []
    assert fake_repository.records == {}


@pytest.mark.asyncio
async def test_sender_outside_whitelist_is_ignored(router, transport, vault_settings, monkeypatch):
    monkeypatch.setattr(vault_settings, "CONTACT_WHITELIST", "trusted@x.com, other@x.com")

    result = await router.route(_mail())

    assert result.action == "ignored"
    assert transport.attempts == []


@pytest.mark.asyncio
async def test_token_request_notifies_owner_first(router, transport):
    result = await router.route(_mail())

    assert result.action == "token_issued"
    assert transport.sent[0].recipient == OWNER
    assert CONTACT in transport.sent[0].body
    reply = result.replies[0]
    assert reply.subject == AUTO_REPLY_SUBJECT
    token = parsing.extract_trigger_token(reply.body)
    assert TokenService().verify(token, now=datetime.now(UTC) + timedelta(days=8)).identity == (
        CONTACT
    )


@pytest.mark.asyncio
async def test_token_withheld_when_owner_unreachable(router, transport):
    transport.failing.add(OWNER)

    result = await router.route(_mail())

    assert result.action == "token_refused"
    assert result.replies[0].body == TOKEN_UNAVAILABLE_TEXT


@pytest.mark.asyncio
async def test_valid_token_releases_content(router):
    token = TokenService().issue(CONTACT, 7, 14, now=datetime.now(UTC) - timedelta(days=10))

    result = await router.route(_mail(body=parsing.wrap_trigger_token(token.token)))

    assert result.action == "token_accepted"
    assert result.replies[0].body == VAULT_CONTENT


@pytest.mark.asyncio
async def test_token_bound_to_another_sender_is_rejected(router):
    token = TokenService().issue(
        "someone-else@x.com", 7, 14, now=datetime.now(UTC) - timedelta(days=10)
    )

    result = await router.route(_mail(body=parsing.wrap_trigger_token(token.token)))

    assert result.action == "token_rejected"
    assert result.detail == "identity_mismatch"
    assert result.replies[0].body == "Invalid token."
    assert VAULT_CONTENT not in result.replies[0].body


@pytest.mark.asyncio
async def test_anonymous_token_is_accepted_from_any_sender(router):
    token = TokenService().issue(
        ANONYMOUS_IDENTITY, 7, 14, now=datetime.now(UTC) - timedelta(days=10)
    )

    result = await router.route(_mail(body=parsing.wrap_trigger_token(token.token)))

    assert result.action == "token_accepted"
    assert result.replies[0].body == VAULT_CONTENT


@pytest.mark.asyncio
async def test_early_token_reports_opening_time(router):
    token = TokenService().issue(CONTACT, 7, 14)

    result = await router.route(_mail(body=parsing.wrap_trigger_token(token.token)))

    assert result.action == "token_rejected"
    assert result.detail == "not_yet_valid"
    assert result.replies[0].body.startswith("Token is not yet valid.")
    assert "GMT" in result.replies[0].body


@pytest.mark.asyncio
async def test_expired_token(router):
    token = TokenService().issue(CONTACT, 1, 2, now=datetime.now(UTC) - timedelta(days=20))

    result = await router.route(_mail(body=parsing.wrap_trigger_token(token.token)))

    assert result.detail == "expired"
    assert result.replies[0].body == "Token has expired."


@pytest.mark.asyncio
async def test_garbage_token(router):
    result = await router.route(_mail(body="[ not.a.token ]"))

    assert result.detail in ("malformed", "invalid_signature")
    assert result.replies[0].body == "Invalid token."


@pytest.mark.asyncio
async def test_owner_cancel_by_mail(router, workflow):
    instance = await workflow.start(CONTACT, "y.com")
    missing = "00000000-0000-4000-8000-000000000000"

    result = await router.route(
        _mail(sender=OWNER, subject="Re: cancel", body=f"{instance.id}\n{missing}")
    )

    assert result.action == "cancel_processed"
    assert f"{instance.id}: cancelled" in result.replies[0].body
    assert f"{missing}: not found" in result.replies[0].body
    assert (await workflow.get(instance.id)).state == WorkflowState.CANCELLED


@pytest.mark.asyncio
async def test_replies_are_never_answered(router, transport):
    result = await router.route(_mail(in_reply_to="<earlier@y.com>"))

    assert result.action == "ignored"
    assert transport.attempts == []


@pytest.mark.asyncio
async def test_dispatch_sends_replies_and_tolerates_failures(router, transport):
    transport.failing.add(CONTACT)

    result = await router.dispatch(_mail())

    assert result.action == "token_issued"
    assert len(transport.attempts_to(CONTACT)) == 1
    assert transport.attempts_to(CONTACT)[0].in_reply_to == "<m1@x.com>"
