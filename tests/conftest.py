import secrets
from datetime import UTC, datetime

import pytest

from afterlife.config import settings
from afterlife.messaging.router import WorkflowMailer
from afterlife.models.domain.workflow_domain import WorkflowInstance, WorkflowState
from afterlife.workflows.countdown import CountdownWorkflow
from afterlife.workflows.errors import DeliveryFailure, InstanceNotFound, WorkflowStoreError
from afterlife.workflows.retry import RetryPolicy

TEST_SECRET = "test-secret-0123456789-abcdefghijklmnopqrstuvwxyz"
OWNER = "owner@vault.test"
VAULT_CONTENT = "the combination is 12-34-56"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def vault_settings(monkeypatch):
    monkeypatch.setattr(settings, "SECRET", TEST_SECRET)
    monkeypatch.setattr(settings, "OWNER_EMAIL", OWNER)
    monkeypatch.setattr(settings, "VAULT_CONTENT", VAULT_CONTENT)
    monkeypatch.setattr(settings, "SENDER_EMAIL", None)
    monkeypatch.setattr(settings, "NOT_BEFORE_DAYS", None)
    monkeypatch.setattr(settings, "EXPIRATION_DAYS", None)
    monkeypatch.setattr(settings, "CONTACT_WHITELIST", None)
    monkeypatch.setattr(settings, "OWNER_API_KEY", "owner-api-key")
    monkeypatch.setattr(settings, "INVITE_STAGGER_SECONDS", 0.0)
    monkeypatch.setattr(settings, "RELEASE_EXHAUSTION_POLICY", "complete")
    return settings


class FakeWorkflowRepository:
    """In-memory WorkflowRepository with the same compare-and-set semantics."""

    def __init__(self):
        self.records: dict[str, str] = {}
        self.locks: dict[str, str] = {}

    async def get(self, instance_id: str) -> WorkflowInstance | None:
        raw = self.records.get(instance_id)
        return WorkflowInstance.model_validate_json(raw) if raw else None

    async def create(self, instance: WorkflowInstance) -> None:
        if instance.id in self.records:
            raise WorkflowStoreError("exists", operation="create")
        self.records[instance.id] = instance.model_dump_json()

    async def compare_and_set(
        self, instance: WorkflowInstance, expected_state: WorkflowState
    ) -> bool:
        stored = await self.get(instance.id)
        if stored is None:
            raise InstanceNotFound(instance.id)
        if stored.state != expected_state:
            return False
        self.records[instance.id] = instance.model_dump_json()
        return True

    async def due_ids(self, now: datetime, limit: int) -> list[str]:
        instances = [await self.get(i) for i in list(self.records)]
        due = [instance for instance in instances if instance.is_due(now)]
        due.sort(key=lambda instance: instance.resume_at or instance.created_at)
        return [instance.id for instance in due[:limit]]

    async def acquire_lock(self, instance_id: str, ttl_seconds: int) -> str | None:
        if instance_id in self.locks:
            return None
        token = secrets.token_hex(8)
        self.locks[instance_id] = token
        return token

    async def release_lock(self, instance_id: str, token: str) -> None:
        if self.locks.get(instance_id) == token:
            del self.locks[instance_id]


class RecordingTransport:
    """MessageTransport that records deliveries and fails for chosen recipients."""

    def __init__(self):
        self.sent = []
        self.attempts = []
        self.failing: set[str] = set()

    async def send(self, message) -> None:
        self.attempts.append(message)
        if message.recipient in self.failing:
            raise DeliveryFailure("mailbox unavailable", recipient=message.recipient)
        self.sent.append(message)

    def sent_to(self, recipient: str) -> list:
        return [message for message in self.sent if message.recipient == recipient]

    def attempts_to(self, recipient: str) -> list:
        return [message for message in self.attempts if message.recipient == recipient]


@pytest.fixture
def fake_repository():
    return FakeWorkflowRepository()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def retry_policy():
    return RetryPolicy(attempt_limit=3, base_delay_seconds=180.0, multiplier=2.0)


@pytest.fixture
def make_workflow(fake_repository, transport, retry_policy):
    def _make(messenger=None, **kwargs):
        kwargs.setdefault("retry_policy", retry_policy)
        kwargs.setdefault("wait_days", 7)
        return CountdownWorkflow(
            fake_repository,
            messenger or WorkflowMailer(transport),
            clock=lambda: T0,
            **kwargs,
        )

    return _make


@pytest.fixture
def workflow(make_workflow):
    return make_workflow()
