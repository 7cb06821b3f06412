from datetime import timedelta

import pytest

from afterlife.messaging.router import WorkflowMailer
from afterlife.models.domain.workflow_domain import WorkflowState
from afterlife.workflows.countdown import ReleaseExhaustionPolicy
from afterlife.workflows.errors import InstanceNotFound
from conftest import OWNER, T0, VAULT_CONTENT

REQUESTER = "b@y.com"


@pytest.mark.asyncio
async def test_start_persists_created_instance(workflow, fake_repository):
    instance = await workflow.start(REQUESTER, "y.com")

    stored = await fake_repository.get(instance.id)
    assert stored.state == WorkflowState.CREATED
    assert stored.identity == REQUESTER
    assert stored.domain == "y.com"
    assert stored.wait_days == 7
    assert stored.resume_at == T0


@pytest.mark.asyncio
async def test_each_trigger_request_gets_its_own_instance(workflow):
    first = await workflow.start(REQUESTER, "y.com")
    second = await workflow.start(REQUESTER, "y.com")
    assert first.id != second.id


@pytest.mark.asyncio
async def test_successful_notify_moves_to_sleeping(workflow, transport):
    instance = await workflow.start(REQUESTER, "y.com")

    advanced = await workflow.advance(instance.id, now=T0)

    assert advanced.state == WorkflowState.SLEEPING
    assert advanced.resume_at == T0 + timedelta(days=7)
    assert advanced.attempt_count("notify") == 1
    notices = transport.sent_to(OWNER)
    assert len(notices) == 1
    assert instance.id in notices[0].body
    assert REQUESTER in notices[0].body
    assert notices[0].sender == "noreply@y.com"


@pytest.mark.asyncio
async def test_cancel_while_sleeping_prevents_release(workflow, transport):
    instance = await workflow.start(REQUESTER, "y.com")
    await workflow.advance(instance.id, now=T0)

    result = await workflow.cancel(instance.id, now=T0 + timedelta(days=1))
    assert result.cancelled is True
    assert result.state == WorkflowState.CANCELLED

    final = await workflow.advance(instance.id, now=T0 + timedelta(days=8))
    assert final.state == WorkflowState.CANCELLED
    assert transport.sent_to(REQUESTER) == []


@pytest.mark.asyncio
async def test_release_waits_for_full_period(workflow, transport):
    instance = await workflow.start(REQUESTER, "y.com")
    await workflow.advance(instance.id, now=T0)

    early = await workflow.advance(instance.id, now=T0 + timedelta(days=6, hours=23))

    assert early.state == WorkflowState.SLEEPING
    assert transport.sent_to(REQUESTER) == []


@pytest.mark.asyncio
async def test_release_after_wait_happens_exactly_once(workflow, transport):
    instance = await workflow.start(REQUESTER, "y.com")
    await workflow.advance(instance.id, now=T0)

    done = await workflow.advance(instance.id, now=T0 + timedelta(days=7))
    again = await workflow.advance(instance.id, now=T0 + timedelta(days=9))

    assert done.state == WorkflowState.COMPLETED
    assert again.state == WorkflowState.COMPLETED
    released = transport.sent_to(REQUESTER)
    assert len(released) == 1
    assert VAULT_CONTENT in released[0].body


@pytest.mark.asyncio
async def test_notify_exhaustion_fails_instance(workflow, transport):
    transport.failing.add(OWNER)
    instance = await workflow.start(REQUESTER, "y.com")

    first = await workflow.advance(instance.id, now=T0)
    assert first.state == WorkflowState.NOTIFYING
    assert first.attempt_count("notify") == 1
    assert first.resume_at == T0 + timedelta(seconds=180)

    second = await workflow.advance(instance.id, now=first.resume_at)
    assert second.state == WorkflowState.NOTIFYING
    assert second.resume_at == first.resume_at + timedelta(seconds=360)

    third = await workflow.advance(instance.id, now=second.resume_at)
    assert third.state == WorkflowState.FAILED
    assert "notify" in third.last_error

    later = await workflow.advance(instance.id, now=T0 + timedelta(days=30))
    assert later.state == WorkflowState.FAILED
    assert len(transport.attempts_to(OWNER)) == 3
    assert transport.attempts_to(REQUESTER) == []


@pytest.mark.asyncio
async def test_backoff_is_not_retried_early(workflow, transport):
    transport.failing.add(OWNER)
    instance = await workflow.start(REQUESTER, "y.com")
    await workflow.advance(instance.id, now=T0)

    early = await workflow.advance(instance.id, now=T0 + timedelta(seconds=60))

    assert early.attempt_count("notify") == 1
    assert len(transport.attempts_to(OWNER)) == 1


@pytest.mark.asyncio
async def test_restart_resumes_retry_budget(make_workflow, transport):
    transport.failing.add(OWNER)
    before_crash = make_workflow()
    instance = await before_crash.start(REQUESTER, "y.com")
    await before_crash.advance(instance.id, now=T0)
    second = await before_crash.advance(instance.id, now=T0 + timedelta(minutes=3))
    assert second.attempt_count("notify") == 2

    # New engine over the same durable records, as after a process restart
    after_restart = make_workflow()
    final = await after_restart.advance(instance.id, now=T0 + timedelta(hours=1))

    assert final.state == WorkflowState.FAILED
    assert len(transport.attempts_to(OWNER)) == 3


@pytest.mark.asyncio
async def test_release_exhaustion_completes_under_default_policy(workflow, transport):
    instance = await workflow.start(REQUESTER, "y.com")
    await workflow.advance(instance.id, now=T0)
    transport.failing.add(REQUESTER)

    now = T0 + timedelta(days=7)
    state = await workflow.advance(instance.id, now=now)
    while not state.is_terminal():
        state = await workflow.advance(instance.id, now=state.resume_at)

    assert state.state == WorkflowState.COMPLETED
    assert "release" in state.last_error
    assert len(transport.attempts_to(REQUESTER)) == 3


@pytest.mark.asyncio
async def test_release_exhaustion_fails_under_fail_policy(make_workflow, transport):
    workflow = make_workflow(release_policy=ReleaseExhaustionPolicy.FAIL)
    instance = await workflow.start(REQUESTER, "y.com")
    await workflow.advance(instance.id, now=T0)
    transport.failing.add(REQUESTER)

    state = await workflow.advance(instance.id, now=T0 + timedelta(days=7))
    while not state.is_terminal():
        state = await workflow.advance(instance.id, now=state.resume_at)

    assert state.state == WorkflowState.FAILED


@pytest.mark.asyncio
async def test_release_retry_recovers(workflow, transport):
    instance = await workflow.start(REQUESTER, "y.com")
    await workflow.advance(instance.id, now=T0)
    transport.failing.add(REQUESTER)

    retrying = await workflow.advance(instance.id, now=T0 + timedelta(days=7))
    assert retrying.state == WorkflowState.RELEASING

    transport.failing.clear()
    done = await workflow.advance(instance.id, now=retrying.resume_at)

    assert done.state == WorkflowState.COMPLETED
    assert done.last_error is None
    assert len(transport.sent_to(REQUESTER)) == 1


@pytest.mark.asyncio
async def test_cancel_on_terminal_instance_is_noop(workflow):
    instance = await workflow.start(REQUESTER, "y.com")
    await workflow.advance(instance.id, now=T0)
    await workflow.advance(instance.id, now=T0 + timedelta(days=7))

    result = await workflow.cancel(instance.id)

    assert result.cancelled is False
    assert result.state == WorkflowState.COMPLETED
    assert (await workflow.get(instance.id)).state == WorkflowState.COMPLETED


@pytest.mark.asyncio
async def test_cancel_unknown_instance_raises(workflow):
    with pytest.raises(InstanceNotFound):
        await workflow.cancel("does-not-exist")


@pytest.mark.asyncio
async def test_cancel_before_first_step(workflow, transport):
    instance = await workflow.start(REQUESTER, "y.com")

    result = await workflow.cancel(instance.id)
    final = await workflow.advance(instance.id, now=T0)

    assert result.cancelled is True
    assert final.state == WorkflowState.CANCELLED
    assert transport.attempts == []


class _CancellingMessenger:
    """Fires an owner Cancel while a step is in flight."""

    def __init__(self, transport, cancel_during: str):
        self.mailer = WorkflowMailer(transport)
        self.cancel_during = cancel_during
        self.workflow = None
        self.cancel_results = []

    async def notify_owner(self, instance):
        if self.cancel_during == "notify":
            self.cancel_results.append(await self.workflow.cancel(instance.id))
        await self.mailer.notify_owner(instance)

    async def release_content(self, instance):
        if self.cancel_during == "release":
            self.cancel_results.append(await self.workflow.cancel(instance.id))
        await self.mailer.release_content(instance)


@pytest.mark.asyncio
async def test_cancel_during_notify_wins(make_workflow, transport):
    messenger = _CancellingMessenger(transport, cancel_during="notify")
    workflow = make_workflow(messenger=messenger)
    messenger.workflow = workflow
    instance = await workflow.start(REQUESTER, "y.com")

    after = await workflow.advance(instance.id, now=T0)
    final = await workflow.advance(instance.id, now=T0 + timedelta(days=8))

    assert messenger.cancel_results[0].cancelled is True
    assert after.state == WorkflowState.CANCELLED
    assert final.state == WorkflowState.CANCELLED
    assert transport.sent_to(REQUESTER) == []


@pytest.mark.asyncio
async def test_late_cancel_never_reverses_release(make_workflow, transport):
    messenger = _CancellingMessenger(transport, cancel_during="release")
    workflow = make_workflow(messenger=messenger)
    messenger.workflow = workflow
    instance = await workflow.start(REQUESTER, "y.com")
    await workflow.advance(instance.id, now=T0)

    final = await workflow.advance(instance.id, now=T0 + timedelta(days=7))

    assert messenger.cancel_results[0].cancelled is False
    assert messenger.cancel_results[0].state == WorkflowState.RELEASING
    assert final.state == WorkflowState.COMPLETED
    assert len(transport.sent_to(REQUESTER)) == 1


@pytest.mark.asyncio
async def test_advance_skips_instance_held_by_other_execution(workflow, fake_repository, transport):
    instance = await workflow.start(REQUESTER, "y.com")
    fake_repository.locks[instance.id] = "held-elsewhere"

    result = await workflow.advance(instance.id, now=T0)

    assert result.state == WorkflowState.CREATED
    assert transport.attempts == []
